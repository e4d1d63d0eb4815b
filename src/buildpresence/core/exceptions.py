"""buildpresence Exception Hierarchy.

This module defines the structured exception hierarchy for buildpresence.
All custom exceptions inherit from BuildPresenceError, enabling consistent
error handling across the codebase.

Exception Categories:
- Recoverable errors (ChannelError, ParseError, SessionError) never escape
  the component that owns them. They are logged and the component recovers.
- FatalError is reserved for startup conditions that make continued
  operation impossible and is the only error that reaches the process
  boundary.

Usage:
    from buildpresence.core.exceptions import MissingFieldError, SessionError

    raise MissingFieldError(field="package")

    raise SessionError(reason="Handshake timed out", state="HANDSHAKING")
"""

from typing import Any, Optional


class BuildPresenceError(Exception):
    """Base exception for all buildpresence errors.

    Attributes:
        message: Human-readable error description.
    """

    def __init__(self, message: Optional[str] = None) -> None:
        """Initialize BuildPresenceError.

        Args:
            message: Optional custom message. Defaults to a generic message.
        """
        self.message = message or "A buildpresence error occurred."
        super().__init__(self.message)

    @property
    def context(self) -> dict[str, Any]:
        """Return context dictionary for structured logging.

        Returns:
            dict: Key-value pairs of exception context.
        """
        return {}

    def __repr__(self) -> str:
        """Return debug representation."""
        return f"{self.__class__.__name__}({self.message!r})"


class ConfigurationError(BuildPresenceError):
    """Configuration file or value is invalid.

    Raised when YAML configuration cannot be parsed or
    contains invalid values.

    Attributes:
        config_path: Path to the configuration file.
        key: The configuration key that caused the error.
        expected_type: The expected type for the value.
    """

    def __init__(
        self,
        config_path: str,
        key: Optional[str] = None,
        expected_type: Optional[str] = None,
        message: Optional[str] = None,
    ) -> None:
        """Initialize ConfigurationError.

        Args:
            config_path: Path to the config file.
            key: Optional key that caused the error.
            expected_type: Optional expected type.
            message: Optional custom message.
        """
        self.config_path = config_path
        self.key = key
        self.expected_type = expected_type

        if message is None:
            key_info = f" key '{key}'" if key else ""
            type_info = f" (expected {expected_type})" if expected_type else ""
            message = f"Configuration error in '{config_path}'{key_info}{type_info}."

        super().__init__(message)

    @property
    def context(self) -> dict[str, Any]:
        """Return context for configuration error."""
        return {
            "config_path": self.config_path,
            "key": self.key,
            "expected_type": self.expected_type,
        }

    def __repr__(self) -> str:
        """Return debug representation with attributes."""
        return (
            f"ConfigurationError(config_path={self.config_path!r}, "
            f"key={self.key!r}, expected_type={self.expected_type!r})"
        )


class ChannelError(BuildPresenceError):
    """I/O failure on the command channel.

    Recoverable: the channel listener logs it and reopens the channel.

    Attributes:
        path: Filesystem path of the channel.
        reason: Description of the failure.
    """

    def __init__(
        self,
        path: str,
        reason: str | None = None,
        message: str | None = None,
    ) -> None:
        self.path = path
        self.reason = reason

        if message is None:
            reason_info = f": {reason}" if reason else ""
            message = f"Channel error on '{path}'{reason_info}"

        super().__init__(message)

    @property
    def context(self) -> dict[str, Any]:
        """Return context for channel error."""
        return {
            "path": self.path,
            "reason": self.reason,
        }

    def __repr__(self) -> str:
        """Return debug representation with attributes."""
        return f"ChannelError(path={self.path!r}, reason={self.reason!r})"


class ParseError(BuildPresenceError):
    """Malformed command received over the channel.

    The offending message is discarded; parsing resumes at the
    next terminator.

    Attributes:
        reason: Description of why the command is invalid.
    """

    def __init__(
        self,
        reason: str | None = None,
        message: str | None = None,
    ) -> None:
        """Initialize ParseError.

        Args:
            reason: Description of failure cause.
            message: Optional custom message.
        """
        self.reason = reason

        if message is None:
            if reason:
                message = f"Command parse error: {reason}"
            else:
                message = "Command parse error - invalid or malformed command."

        super().__init__(message)

    @property
    def context(self) -> dict[str, Any]:
        """Return context for parse error."""
        return {
            "reason": self.reason,
        }

    def __repr__(self) -> str:
        """Return debug representation with attributes."""
        return f"{self.__class__.__name__}(reason={self.reason!r})"


class MissingFieldError(ParseError):
    """A required field is absent from a ``set`` payload.

    Attributes:
        field: Name of the missing field.
    """

    def __init__(self, field: str, message: str | None = None) -> None:
        self.field = field
        super().__init__(
            reason=f"missing required field '{field}'",
            message=message,
        )

    @property
    def context(self) -> dict[str, Any]:
        """Return context for missing field error."""
        return {
            "reason": self.reason,
            "field": self.field,
        }

    def __repr__(self) -> str:
        """Return debug representation with attributes."""
        return f"MissingFieldError(field={self.field!r})"


class UnknownCommandError(ParseError):
    """The leading token of a message is not a known command.

    Attributes:
        command: The unrecognized command name.
    """

    def __init__(self, command: str, message: str | None = None) -> None:
        self.command = command
        super().__init__(
            reason=f"unknown command '{command}'",
            message=message,
        )

    @property
    def context(self) -> dict[str, Any]:
        """Return context for unknown command error."""
        return {
            "reason": self.reason,
            "command": self.command,
        }

    def __repr__(self) -> str:
        """Return debug representation with attributes."""
        return f"UnknownCommandError(command={self.command!r})"


class SessionError(BuildPresenceError):
    """Connect, handshake, or frame I/O failure on the IPC session.

    Recoverable: the session regresses to DISCONNECTED and retries on
    its reconnect timer. Never escapes the session component.

    Attributes:
        reason: Description of the failure.
        state: Session state in which the failure happened.
    """

    def __init__(
        self,
        reason: str | None = None,
        state: str | None = None,
        message: str | None = None,
    ) -> None:
        """Initialize SessionError.

        Args:
            reason: Description of failure cause.
            state: Optional session state name.
            message: Optional custom message.
        """
        self.reason = reason
        self.state = state

        if message is None:
            if reason:
                message = f"Session error: {reason}"
            else:
                message = "Session error - connection to presence service failed."

        super().__init__(message)

    @property
    def context(self) -> dict[str, Any]:
        """Return context for session error."""
        return {
            "reason": self.reason,
            "state": self.state,
        }

    def __repr__(self) -> str:
        """Return debug representation with attributes."""
        return (
            f"{self.__class__.__name__}(reason={self.reason!r}, "
            f"state={self.state!r})"
        )


class HandshakeError(SessionError):
    """The presence service rejected or did not acknowledge the handshake."""


class IPCProtocolError(SessionError):
    """Invalid or malformed IPC frame.

    Raised when a frame header or body received from the presence
    service cannot be decoded or exceeds the size limit.
    """

    def __init__(
        self,
        reason: str | None = None,
        message: str | None = None,
    ) -> None:
        if message is None:
            if reason:
                message = f"IPC protocol error: {reason}"
            else:
                message = "IPC protocol error - invalid or malformed frame."

        super().__init__(reason=reason, message=message)


class InvalidStateTransition(BuildPresenceError):
    """Invalid session state transition attempted.

    Raised when code attempts a transition that violates the
    session state machine. Indicates a programming error.

    Attributes:
        from_state: Current state.
        to_state: Attempted target state.
    """

    def __init__(
        self,
        from_state: str,
        to_state: str,
        message: str | None = None,
    ) -> None:
        """Initialize InvalidStateTransition.

        Args:
            from_state: Current state.
            to_state: Attempted target state.
            message: Optional custom message.
        """
        self.from_state = from_state
        self.to_state = to_state

        if message is None:
            message = f"Invalid session state transition: {from_state} → {to_state}."

        super().__init__(message)

    @property
    def context(self) -> dict[str, Any]:
        """Return context for invalid state transition."""
        return {
            "from_state": self.from_state,
            "to_state": self.to_state,
        }

    def __repr__(self) -> str:
        """Return debug representation with attributes."""
        return (
            f"InvalidStateTransition(from_state={self.from_state!r}, "
            f"to_state={self.to_state!r})"
        )


class FatalError(BuildPresenceError):
    """Startup condition that makes continued operation impossible.

    Raised when the command channel cannot be created at all. This is
    the only error that terminates the process.

    Attributes:
        reason: Description of the failure.
    """

    def __init__(
        self,
        reason: str | None = None,
        message: str | None = None,
    ) -> None:
        self.reason = reason

        if message is None:
            if reason:
                message = f"Fatal error: {reason}"
            else:
                message = "Fatal error - cannot continue."

        super().__init__(message)

    @property
    def context(self) -> dict[str, Any]:
        """Return context for fatal error."""
        return {
            "reason": self.reason,
        }

    def __repr__(self) -> str:
        """Return debug representation with attributes."""
        return f"FatalError(reason={self.reason!r})"
