"""Command Channel Protocol.

Decodes the textual commands written into the command channel by the
build hook, and encodes them for producers.

Message Format:
- ``<command-name> [<json-payload>]`` followed by a NUL terminator
- Encoding: UTF-8
- Command names are case-sensitive

Commands:
- ``set {"state": ..., "category": ..., "package": ...}``
- ``unset`` (any trailing payload is ignored)

Usage:
    from buildpresence.daemon.commands import parse_command, format_set_message

    command = parse_command(b'set {"state": "compiling", ...}')
    wire_data = format_set_message("compiling", "dev-lang", "rust-1.70")
"""

from dataclasses import dataclass
from enum import StrEnum
import json
import re
from typing import Union

from buildpresence.core.exceptions import (
    MissingFieldError,
    ParseError,
    UnknownCommandError,
)


MESSAGE_TERMINATOR = b"\0"

# Leading whitespace, command token, separating whitespace, payload
_MESSAGE_RE = re.compile(rb"\s*(\S*)\s*(.*)", re.DOTALL)


class CommandName(StrEnum):
    """Command names accepted on the channel."""

    SET = "set"
    UNSET = "unset"


@dataclass(frozen=True)
class SetCommand:
    """Report a package entering a build phase.

    Attributes:
        state: Build phase (e.g. 'preparing', 'compiling', 'installing').
        category: Package category (e.g. 'dev-lang').
        package: Package name with version (e.g. 'rust-1.70').
    """

    state: str
    category: str
    package: str


@dataclass(frozen=True)
class UnsetCommand:
    """Report that no package is being built."""


Command = Union[SetCommand, UnsetCommand]

SET_FIELDS = ("state", "category", "package")


def parse_command(data: bytes) -> Command:
    """Parse one channel message (without its terminator).

    Parsing is total: every byte sequence either produces a Command or
    raises ParseError.

    Args:
        data: Raw message bytes.

    Returns:
        SetCommand or UnsetCommand.

    Raises:
        MissingFieldError: If a ``set`` payload lacks a required field.
        UnknownCommandError: If the command name is not recognized.
        ParseError: If the message is otherwise malformed.
    """
    match = _MESSAGE_RE.fullmatch(data)
    # The pattern accepts any byte string, so match is never None
    name = match.group(1).decode("utf-8", errors="replace")

    if name == CommandName.SET:
        return _parse_set(match.group(2))
    if name == CommandName.UNSET:
        return UnsetCommand()
    raise UnknownCommandError(command=name)


def _parse_set(payload: bytes) -> SetCommand:
    try:
        text = payload.decode("utf-8")
    except UnicodeDecodeError as e:
        raise ParseError(f"payload is not valid UTF-8: {e}") from e

    if not text.strip():
        raise ParseError("'set' requires a JSON payload")

    try:
        parsed = json.loads(text)
    except (ValueError, RecursionError) as e:
        raise ParseError(f"invalid JSON payload: {e}") from e

    if not isinstance(parsed, dict):
        raise ParseError("'set' payload must be a JSON object")

    values = {}
    for field in SET_FIELDS:
        if field not in parsed:
            raise MissingFieldError(field=field)
        value = parsed[field]
        if not isinstance(value, str):
            raise ParseError(
                f"field '{field}' must be a string, got {type(value).__name__}"
            )
        try:
            # JSON escapes can produce lone surrogates that UTF-8 cannot carry
            value.encode("utf-8")
        except UnicodeEncodeError as e:
            raise ParseError(f"field '{field}' is not encodable as UTF-8: {e}") from e
        values[field] = value

    return SetCommand(**values)


def format_set_message(state: str, category: str, package: str) -> bytes:
    """Encode a ``set`` command for the channel, including the terminator."""
    payload = json.dumps(
        {"state": state, "category": category, "package": package},
        ensure_ascii=False,
    )
    return f"{CommandName.SET} {payload}".encode("utf-8") + MESSAGE_TERMINATOR


def format_unset_message() -> bytes:
    """Encode an ``unset`` command for the channel, including the terminator."""
    return str(CommandName.UNSET).encode("utf-8") + MESSAGE_TERMINATOR
