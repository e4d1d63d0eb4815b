"""Core module for buildpresence.

Exports the core components: exceptions and configuration.
"""

from buildpresence.core.exceptions import (
    BuildPresenceError,
    ChannelError,
    ConfigurationError,
    FatalError,
    HandshakeError,
    InvalidStateTransition,
    IPCProtocolError,
    MissingFieldError,
    ParseError,
    SessionError,
    UnknownCommandError,
)
from buildpresence.core.config import (
    ChannelConfig,
    LoggingConfig,
    PresenceConfig,
    SessionConfig,
    Settings,
    get_settings,
    reset_settings,
)

__all__ = [
    "BuildPresenceError",
    "ChannelError",
    "ConfigurationError",
    "FatalError",
    "HandshakeError",
    "InvalidStateTransition",
    "IPCProtocolError",
    "MissingFieldError",
    "ParseError",
    "SessionError",
    "UnknownCommandError",
    "ChannelConfig",
    "LoggingConfig",
    "PresenceConfig",
    "SessionConfig",
    "Settings",
    "get_settings",
    "reset_settings",
]
