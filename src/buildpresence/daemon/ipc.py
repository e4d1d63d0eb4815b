"""IPC Protocol for Presence Service Communication.

This module defines the binary frame format spoken over the presence
service's local Unix socket, socket discovery, and the payloads sent
by the session.

Frame Format (little-endian):
- opcode: int32
- length: int32
- body:   ``length`` bytes of UTF-8 JSON

Usage:
    from buildpresence.daemon.ipc import Opcode, encode_frame, read_frame

    wire_data = encode_frame(Opcode.HANDSHAKE, build_handshake("1234", 1))
    frame = await read_frame(reader)
"""

from dataclasses import dataclass
from enum import IntEnum
from pathlib import Path
from typing import Any, Mapping, Optional
import asyncio
import json
import os
import struct
import uuid

from buildpresence.core.exceptions import IPCProtocolError, SessionError


HEADER = struct.Struct("<ii")
MAX_FRAME_SIZE = 64 * 1024  # presence service frames are small

SOCKET_NAME = "discord-ipc-{index}"
SOCKET_SLOTS = 10
# Sandboxed installs place the socket in a subdirectory of the runtime dir
SANDBOX_SUBDIRS = ("", "app/com.discordapp.Discord", "snap.discord")
RUNTIME_DIR_VARS = ("XDG_RUNTIME_DIR", "TMPDIR", "TMP", "TEMP")

SET_ACTIVITY = "SET_ACTIVITY"
READY_EVENT = "READY"
ERROR_EVENT = "ERROR"


class Opcode(IntEnum):
    """Frame opcodes."""

    HANDSHAKE = 0
    FRAME = 1
    CLOSE = 2
    PING = 3
    PONG = 4


@dataclass(frozen=True)
class Frame:
    """A decoded frame.

    Attributes:
        opcode: Frame opcode (an Opcode member, or the raw int if unknown).
        body: Decoded JSON body.
    """

    opcode: int
    body: Any


def encode_frame(opcode: int, payload: Any) -> bytes:
    """Encode a frame for the wire.

    JSON is serialized compactly and non-ASCII characters are kept as
    UTF-8, so the length field is the body's byte length.
    """
    body = json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    return HEADER.pack(int(opcode), len(body)) + body


def decode_header(data: bytes) -> tuple[int, int]:
    """Decode a frame header into ``(opcode, length)``.

    Raises:
        IPCProtocolError: If the header is short or the length is invalid.
    """
    if len(data) != HEADER.size:
        raise IPCProtocolError(f"Frame header must be {HEADER.size} bytes, got {len(data)}")
    opcode, length = HEADER.unpack(data)
    if length < 0 or length > MAX_FRAME_SIZE:
        raise IPCProtocolError(f"Frame length {length} outside 0..{MAX_FRAME_SIZE}")
    return opcode, length


def decode_body(data: bytes) -> Any:
    """Decode a frame body.

    Raises:
        IPCProtocolError: If the body is not UTF-8 JSON.
    """
    if not data:
        return None
    try:
        return json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, ValueError, RecursionError) as e:
        raise IPCProtocolError(f"Failed to decode frame body: {e}") from e


async def read_frame(reader: asyncio.StreamReader) -> Frame:
    """Read one frame from the stream.

    Raises:
        SessionError: If the connection is closed mid-frame or fails.
        IPCProtocolError: If the frame is malformed.
    """
    try:
        header = await reader.readexactly(HEADER.size)
        opcode, length = decode_header(header)
        body = await reader.readexactly(length)
    except asyncio.IncompleteReadError as e:
        raise SessionError("Connection closed by presence service") from e
    except (ConnectionResetError, BrokenPipeError, OSError) as e:
        raise SessionError(f"Read failed: {e}") from e

    try:
        opcode = Opcode(opcode)
    except ValueError:
        pass  # unknown opcodes are passed through as int
    return Frame(opcode=opcode, body=decode_body(body))


def build_handshake(client_id: str, protocol_version: int) -> dict[str, Any]:
    """Build the handshake body."""
    return {"v": protocol_version, "client_id": client_id}


def build_set_activity(
    activity: Optional[Mapping[str, Any]],
    pid: Optional[int] = None,
    nonce: Optional[str] = None,
) -> dict[str, Any]:
    """Build a SET_ACTIVITY command body.

    Args:
        activity: Activity object, or None to clear the presence.
        pid: Process id the activity is attributed to. Defaults to ours.
        nonce: Request nonce. Defaults to a random UUID.
    """
    args: dict[str, Any] = {"pid": os.getpid() if pid is None else pid}
    if activity is not None:
        args["activity"] = dict(activity)
    return {
        "cmd": SET_ACTIVITY,
        "args": args,
        "nonce": nonce or str(uuid.uuid4()),
    }


def is_ready_ack(frame: Frame) -> bool:
    """Return True if the frame acknowledges a handshake."""
    return (
        frame.opcode == Opcode.FRAME
        and isinstance(frame.body, dict)
        and frame.body.get("evt") == READY_EVENT
    )


def get_runtime_dir(environ: Optional[Mapping[str, str]] = None) -> Path:
    """Return the directory the presence service places its sockets in."""
    if environ is None:
        environ = os.environ
    for var in RUNTIME_DIR_VARS:
        value = environ.get(var)
        if value:
            return Path(value)
    return Path("/tmp")


def candidate_socket_paths(environ: Optional[Mapping[str, str]] = None) -> list[Path]:
    """List every socket path the presence service may listen on, in order."""
    base = get_runtime_dir(environ)
    return [
        base / subdir / SOCKET_NAME.format(index=index)
        for subdir in SANDBOX_SUBDIRS
        for index in range(SOCKET_SLOTS)
    ]


def discover_socket_paths(environ: Optional[Mapping[str, str]] = None) -> list[Path]:
    """List candidate socket paths that currently exist, in priority order."""
    return [path for path in candidate_socket_paths(environ) if path.exists()]
