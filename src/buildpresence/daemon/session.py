"""Presence Service IPC Session.

Owns the single connection to the presence service: socket discovery,
handshake, frame I/O and fixed-interval reconnection.

Session commands submitted while the session is not READY are dropped
immediately and never replayed after a reconnect. ``submit()`` never
blocks: while READY it enqueues an encoded frame for the session's writer
coroutine, which is the only code that writes to the socket.

Usage:
    from buildpresence.daemon.session import PresenceSession

    session = PresenceSession(client_id="1007427345801556039")
    task = asyncio.create_task(session.run())
    session.submit(ClearActivity())
    ...
    task.cancel()
    await session.close()
"""

from __future__ import annotations

import asyncio
import time
from pathlib import Path
from typing import Awaitable, Callable, Optional

import structlog

from buildpresence.core.config import SessionConfig
from buildpresence.core.exceptions import HandshakeError, SessionError
from buildpresence.daemon.ipc import (
    ERROR_EVENT,
    Opcode,
    build_handshake,
    build_set_activity,
    discover_socket_paths,
    encode_frame,
    is_ready_ack,
    read_frame,
)
from buildpresence.daemon.presence import ClearActivity, SessionCommand, UpdateActivity
from buildpresence.daemon.state_machine import (
    ReconnectTimer,
    SessionState,
    SessionStateMachine,
    StateChangeListener,
)


log = structlog.get_logger()

CLOSE_TIMEOUT = 1.0  # seconds to wait for the socket to close

Connection = tuple[asyncio.StreamReader, asyncio.StreamWriter]
Connector = Callable[[Path], Awaitable[Connection]]
PathFinder = Callable[[], list[Path]]


async def open_connection(path: Path) -> Connection:
    """Open a Unix socket connection to the presence service."""
    return await asyncio.open_unix_connection(str(path))


class PresenceSession:
    """IPC session with the presence service.

    Attributes:
        state: Current SessionState.
        handshake_acked: Whether the current connection completed the handshake.
        socket_path: Socket of the current connection, if any.
    """

    def __init__(
        self,
        client_id: str,
        *,
        protocol_version: int = 1,
        reconnect_interval: float = 5.0,
        handshake_timeout: float = 5.0,
        queue_size: int = 16,
        connector: Optional[Connector] = None,
        path_finder: Optional[PathFinder] = None,
        clock: Callable[[], float] = time.monotonic,
        pid: Optional[int] = None,
    ) -> None:
        """Initialize PresenceSession in DISCONNECTED state.

        Args:
            client_id: Application id sent in the handshake.
            protocol_version: IPC protocol version sent in the handshake.
            reconnect_interval: Fixed seconds between connection attempts.
            handshake_timeout: Seconds to wait for the READY dispatch.
            queue_size: Maximum frames waiting to be written while READY.
            connector: Coroutine opening a connection to a socket path.
            path_finder: Callable listing candidate socket paths in order.
            clock: Monotonic clock for the reconnect timer.
            pid: Process id reported with activities. Defaults to ours.
        """
        self._client_id = client_id
        self._protocol_version = protocol_version
        self._handshake_timeout = handshake_timeout
        self._queue_size = queue_size
        self._connector = connector or open_connection
        self._path_finder = path_finder or discover_socket_paths
        self._pid = pid

        self._machine = SessionStateMachine()
        self._timer = ReconnectTimer(reconnect_interval, clock)

        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._socket_path: Optional[Path] = None
        self._outbox: Optional[asyncio.Queue[bytes]] = None
        self._handshake_acked = False
        self._closed = False

    @classmethod
    def from_config(cls, config: SessionConfig, **kwargs) -> "PresenceSession":
        return cls(
            config.client_id,
            protocol_version=config.protocol_version,
            reconnect_interval=config.reconnect_interval,
            handshake_timeout=config.handshake_timeout,
            queue_size=config.queue_size,
            **kwargs,
        )

    @property
    def state(self) -> SessionState:
        return self._machine.current_state

    @property
    def handshake_acked(self) -> bool:
        return self._handshake_acked

    @property
    def socket_path(self) -> Optional[Path]:
        return self._socket_path

    @property
    def timer(self) -> ReconnectTimer:
        return self._timer

    @property
    def closed(self) -> bool:
        return self._closed

    def add_listener(self, callback: StateChangeListener) -> None:
        """Register a callback for session state changes."""
        self._machine.add_listener(callback)

    # -------------------------------------------------------------------------
    # Submission
    # -------------------------------------------------------------------------

    def submit(self, command: SessionCommand) -> bool:
        """Hand a session command to the READY session, or drop it.

        Never blocks and never raises for connection problems.

        Returns:
            True if the command was queued for writing, False if dropped.
        """
        if self.state != SessionState.READY or self._outbox is None:
            log.info(
                "session_command_dropped",
                command=type(command).__name__,
                state=str(self.state),
            )
            return False

        if not self._enqueue(self._outbox, self.encode_command(command)):
            return False

        log.debug("session_command_queued", command=type(command).__name__)
        return True

    def encode_command(self, command: SessionCommand) -> bytes:
        """Encode a session command as a SET_ACTIVITY frame.

        Raises:
            TypeError: If command is not a known SessionCommand type.
        """
        if isinstance(command, UpdateActivity):
            activity = command.activity.to_dict()
        elif isinstance(command, ClearActivity):
            activity = None
        else:
            raise TypeError(f"Unsupported session command: {type(command).__name__}")
        return encode_frame(Opcode.FRAME, build_set_activity(activity, pid=self._pid))

    def _enqueue(self, outbox: asyncio.Queue[bytes], data: bytes) -> bool:
        try:
            outbox.put_nowait(data)
        except asyncio.QueueFull:
            log.warning("session_queue_full", limit=self._queue_size)
            return False
        return True

    # -------------------------------------------------------------------------
    # State machine progression
    # -------------------------------------------------------------------------

    async def step(self) -> SessionState:
        """Make at most one timed transition out of DISCONNECTED.

        When DISCONNECTED and the reconnect timer is due, connects and
        handshakes, ending in READY on success or DISCONNECTED on failure.
        In any other state, or before the timer is due, does nothing.

        Returns:
            The state after the step.
        """
        if self._closed or self.state != SessionState.DISCONNECTED:
            return self.state
        if not self._timer.due():
            return self.state

        self._timer.mark_attempt()
        self._machine.transition(SessionState.CONNECTING)

        try:
            reader, writer = await self._connect()
            self._machine.transition(SessionState.HANDSHAKING)
            await self._handshake(reader, writer)
        except SessionError as e:
            log.info(
                "session_connect_failed",
                error=str(e),
                state=str(self.state),
                retry_in=self._timer.interval,
            )
            await self._drop_connection()
            self._to_disconnected()
            return self.state

        self._outbox = asyncio.Queue(maxsize=self._queue_size)
        self._handshake_acked = True
        self._machine.transition(SessionState.READY)
        log.info("session_ready", socket=str(self._socket_path))
        return self.state

    async def serve(self) -> None:
        """Pump frames while READY; returns once the session is DISCONNECTED.

        Any read or write failure, or a close frame from the presence
        service, ends the connection.
        """
        if self.state != SessionState.READY:
            return
        reader, writer, outbox = self._reader, self._writer, self._outbox
        if reader is None or writer is None or outbox is None:
            raise SessionError("READY without an open connection", state=str(self.state))

        reader_task = asyncio.create_task(self._read_loop(reader, outbox))
        writer_task = asyncio.create_task(self._write_loop(writer, outbox))
        try:
            done, _ = await asyncio.wait(
                {reader_task, writer_task},
                return_when=asyncio.FIRST_COMPLETED,
            )
            for task in done:
                exc = task.exception()
                if isinstance(exc, SessionError):
                    log.info("session_lost", error=str(exc))
                elif exc is not None:
                    log.error("session_pump_failed", error=str(exc), exc_info=exc)
        finally:
            for task in (reader_task, writer_task):
                task.cancel()
            await asyncio.gather(reader_task, writer_task, return_exceptions=True)
            await self._drop_connection()
            self._to_disconnected()

    async def run(self) -> None:
        """Drive the session for the process lifetime.

        Returns only after close(). A run interrupted mid-connection can be
        restarted; the stale connection is dropped first.
        """
        if self.state not in (SessionState.DISCONNECTED, SessionState.CLOSING):
            await self._drop_connection()
            self._to_disconnected()
        while not self._closed:
            state = await self.step()
            if state == SessionState.READY:
                await self.serve()
            else:
                await asyncio.sleep(self._timer.remaining())

    async def close(self) -> None:
        """Close the connection. The session stays DISCONNECTED afterwards."""
        if self._closed:
            return
        self._closed = True
        self._machine.transition(SessionState.CLOSING)
        await self._drop_connection()
        self._machine.transition(SessionState.DISCONNECTED)
        log.info("session_closed")

    # -------------------------------------------------------------------------
    # Connection internals
    # -------------------------------------------------------------------------

    async def _connect(self) -> Connection:
        paths = self._path_finder()
        if not paths:
            raise SessionError("No presence service socket found", state=str(self.state))

        last_error: Optional[OSError] = None
        for path in paths:
            try:
                reader, writer = await self._connector(path)
            except OSError as e:
                log.debug("socket_connect_failed", path=str(path), error=str(e))
                last_error = e
                continue
            self._reader, self._writer = reader, writer
            self._socket_path = path
            log.info("session_connected", socket=str(path))
            return reader, writer

        raise SessionError(
            f"Could not connect to any presence service socket: {last_error}",
            state=str(self.state),
        )

    async def _handshake(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        writer.write(
            encode_frame(
                Opcode.HANDSHAKE,
                build_handshake(self._client_id, self._protocol_version),
            )
        )
        try:
            await writer.drain()
        except (ConnectionError, OSError) as e:
            raise SessionError(f"Handshake write failed: {e}", state=str(self.state)) from e

        try:
            frame = await asyncio.wait_for(
                read_frame(reader),
                timeout=self._handshake_timeout,
            )
        except asyncio.TimeoutError as e:
            raise HandshakeError("Handshake timed out", state=str(self.state)) from e

        if frame.opcode == Opcode.CLOSE:
            raise HandshakeError(f"Handshake rejected: {frame.body}", state=str(self.state))
        if not is_ready_ack(frame):
            raise HandshakeError("Malformed handshake acknowledgement", state=str(self.state))

        data = frame.body.get("data")
        user = data.get("user") if isinstance(data, dict) else None
        log.debug(
            "handshake_acknowledged",
            user=user.get("username") if isinstance(user, dict) else None,
        )

    async def _read_loop(
        self, reader: asyncio.StreamReader, outbox: asyncio.Queue[bytes]
    ) -> None:
        while True:
            frame = await read_frame(reader)

            if frame.opcode == Opcode.CLOSE:
                raise SessionError(
                    f"Presence service closed the connection: {frame.body}",
                    state=str(self.state),
                )
            if frame.opcode == Opcode.PING:
                self._enqueue(outbox, encode_frame(Opcode.PONG, frame.body))
            elif frame.opcode == Opcode.FRAME:
                body = frame.body if isinstance(frame.body, dict) else {}
                if body.get("evt") == ERROR_EVENT:
                    log.warning("presence_command_error", data=body.get("data"))
                else:
                    log.debug("presence_response", cmd=body.get("cmd"), evt=body.get("evt"))
            else:
                log.debug("unexpected_frame", opcode=int(frame.opcode))

    async def _write_loop(
        self, writer: asyncio.StreamWriter, outbox: asyncio.Queue[bytes]
    ) -> None:
        while True:
            data = await outbox.get()
            try:
                writer.write(data)
                await writer.drain()
            except (ConnectionError, OSError) as e:
                raise SessionError(f"Write failed: {e}", state=str(self.state)) from e
            log.debug("frame_sent", size=len(data))

    async def _drop_connection(self) -> None:
        writer = self._writer
        self._reader = None
        self._writer = None
        self._socket_path = None
        self._outbox = None
        self._handshake_acked = False

        if writer is None:
            return
        writer.close()
        try:
            await asyncio.wait_for(writer.wait_closed(), timeout=CLOSE_TIMEOUT)
        except (asyncio.TimeoutError, ConnectionError, OSError) as e:
            log.debug("socket_close_incomplete", error=str(e))

    def _to_disconnected(self) -> None:
        # close() owns the CLOSING → DISCONNECTED transition
        if self.state not in (SessionState.DISCONNECTED, SessionState.CLOSING):
            self._machine.transition(SessionState.DISCONNECTED)
