"""Session State Machine.

This module defines the IPC session lifecycle state machine and the
fixed-interval reconnect timer that drives it.

States:
    DISCONNECTED: No connection (initial state)
    CONNECTING: Opening the presence service socket
    HANDSHAKING: Handshake sent, waiting for the READY dispatch
    READY: Accepting session commands
    CLOSING: Shutting down

Valid Transitions:
    DISCONNECTED → CONNECTING
    CONNECTING → HANDSHAKING | DISCONNECTED
    HANDSHAKING → READY | DISCONNECTED
    READY → DISCONNECTED
    any non-closing state → CLOSING
    CLOSING → DISCONNECTED

Usage:
    from buildpresence.daemon.state_machine import SessionState, SessionStateMachine

    sm = SessionStateMachine()
    sm.transition(SessionState.CONNECTING)
"""

from enum import StrEnum
from typing import Callable, Optional
import time

import structlog

from buildpresence.core.exceptions import InvalidStateTransition


log = structlog.get_logger()


class SessionState(StrEnum):
    """IPC session states."""

    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    HANDSHAKING = "HANDSHAKING"
    READY = "READY"
    CLOSING = "CLOSING"


VALID_TRANSITIONS: frozenset[tuple[SessionState, SessionState]] = frozenset([
    (SessionState.DISCONNECTED, SessionState.CONNECTING),
    (SessionState.CONNECTING, SessionState.HANDSHAKING),
    (SessionState.CONNECTING, SessionState.DISCONNECTED),
    (SessionState.HANDSHAKING, SessionState.READY),
    (SessionState.HANDSHAKING, SessionState.DISCONNECTED),
    (SessionState.READY, SessionState.DISCONNECTED),
    (SessionState.DISCONNECTED, SessionState.CLOSING),
    (SessionState.CONNECTING, SessionState.CLOSING),
    (SessionState.HANDSHAKING, SessionState.CLOSING),
    (SessionState.READY, SessionState.CLOSING),
    (SessionState.CLOSING, SessionState.DISCONNECTED),
])


def is_valid_transition(from_state: SessionState, to_state: SessionState) -> bool:
    """Check if a state transition is valid."""
    return (from_state, to_state) in VALID_TRANSITIONS


StateChangeListener = Callable[[SessionState, SessionState], None]


class SessionStateMachine:
    """Strict session state machine.

    Invalid transitions raise InvalidStateTransition.

    Attributes:
        current_state: Current session state (read-only).
    """

    def __init__(self) -> None:
        """Initialize state machine in DISCONNECTED state."""
        self._current_state = SessionState.DISCONNECTED
        self._listeners: list[StateChangeListener] = []

    @property
    def current_state(self) -> SessionState:
        """Current session state."""
        return self._current_state

    def add_listener(self, callback: StateChangeListener) -> None:
        """Add a listener called with (old_state, new_state) on transitions."""
        self._listeners.append(callback)

    def transition(self, to_state: SessionState) -> None:
        """Transition to a new state.

        Args:
            to_state: Target state.

        Raises:
            InvalidStateTransition: If transition is not valid.
        """
        from_state = self._current_state

        if not is_valid_transition(from_state, to_state):
            raise InvalidStateTransition(
                from_state=str(from_state),
                to_state=str(to_state),
            )

        self._current_state = to_state
        log.debug(
            "session_state_changed",
            from_state=str(from_state),
            to_state=str(to_state),
        )

        self._notify_listeners(from_state, to_state)

    def _notify_listeners(self, from_state: SessionState, to_state: SessionState) -> None:
        """Notify listeners. Listener exceptions are logged, not propagated."""
        for listener in self._listeners:
            try:
                listener(from_state, to_state)
            except Exception as e:
                log.warning("state_listener_error", error=str(e))


class ReconnectTimer:
    """Fixed-interval gate for connection attempts.

    At most one attempt is due per interval, measured on a monotonic
    clock. The first attempt is due immediately.
    """

    def __init__(
        self,
        interval: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if interval <= 0:
            raise ValueError("ReconnectTimer.interval must be positive")
        self.interval = interval
        self._clock = clock
        self._last_attempt: Optional[float] = None

    @property
    def last_attempt(self) -> Optional[float]:
        return self._last_attempt

    def due(self) -> bool:
        """Return True if a connection attempt may be made now."""
        return self.remaining() == 0.0

    def remaining(self) -> float:
        """Seconds until the next attempt is due."""
        if self._last_attempt is None:
            return 0.0
        elapsed = self._clock() - self._last_attempt
        return max(self.interval - elapsed, 0.0)

    def mark_attempt(self) -> None:
        """Record that an attempt starts now."""
        self._last_attempt = self._clock()
