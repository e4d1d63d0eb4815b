"""buildpresence Daemon Package.

This package contains the relay daemon components: the command channel
listener and parser, the presence translator, and the IPC session with
the presence service.

Components:
- commands: Channel command parsing and encoding
- presence: Command to activity translation
- ipc: Frame codec and socket discovery
- state_machine: Session lifecycle states and reconnect timer
- session: IPC session with the presence service
- channel: FIFO listener
- relay: Orchestration of the above
"""

from buildpresence.daemon.commands import (
    Command,
    SetCommand,
    UnsetCommand,
    format_set_message,
    format_unset_message,
    parse_command,
)
from buildpresence.daemon.presence import (
    ActivityPayload,
    ClearActivity,
    PresenceTranslator,
    SessionCommand,
    UpdateActivity,
    translate,
)
from buildpresence.daemon.session import PresenceSession
from buildpresence.daemon.state_machine import SessionState

__all__ = [
    "Command",
    "SetCommand",
    "UnsetCommand",
    "format_set_message",
    "format_unset_message",
    "parse_command",
    "ActivityPayload",
    "ClearActivity",
    "PresenceTranslator",
    "SessionCommand",
    "UpdateActivity",
    "translate",
    "PresenceSession",
    "SessionState",
]
