"""Command Channel Listener.

Owns the named FIFO the build hook writes commands into. Reads
continuously, splits the byte stream on NUL terminators and forwards each
message. When the last writer closes the FIFO the listener reopens it;
the listener never stops on channel closure.

Channel Path: /tmp/buildpresence.fifo (configurable)
Permissions: 0o666 so build hooks running as any user can write

Usage:
    from buildpresence.daemon.channel import ChannelListener

    listener = ChannelListener(path, on_message=handle_message)
    listener.ensure_channel()   # raises FatalError if impossible
    await listener.run()
"""

import asyncio
import os
import stat
from pathlib import Path
from typing import Awaitable, Callable, Optional

import structlog

from buildpresence.core.config import ChannelConfig
from buildpresence.core.exceptions import ChannelError, FatalError
from buildpresence.daemon.commands import MESSAGE_TERMINATOR


log = structlog.get_logger()

MessageHandler = Callable[[bytes], Awaitable[None]]


class MessageSplitter:
    """Splits a byte stream into NUL-terminated messages.

    Bytes after the last terminator are kept for the next feed. A message
    that grows past ``max_message_size`` without a terminator is discarded
    up to the next terminator.
    """

    def __init__(self, max_message_size: int = 64 * 1024) -> None:
        self._max_message_size = max_message_size
        self._buffer = bytearray()
        self._discarding = False

    @property
    def pending(self) -> bytes:
        """Bytes buffered after the last terminator."""
        return bytes(self._buffer)

    def feed(self, data: bytes) -> list[bytes]:
        """Add bytes and return every message completed by them."""
        self._buffer.extend(data)
        messages = []
        while True:
            index = self._buffer.find(MESSAGE_TERMINATOR)
            if index < 0:
                break
            message = bytes(self._buffer[:index])
            del self._buffer[:index + 1]
            if self._discarding:
                # Tail of an oversized message
                self._discarding = False
                continue
            messages.append(message)

        if len(self._buffer) > self._max_message_size:
            log.warning(
                "channel_message_too_large",
                size=len(self._buffer),
                limit=self._max_message_size,
            )
            self._buffer.clear()
            self._discarding = True

        return messages


class ChannelListener:
    """Reads commands from the FIFO for the process lifetime.

    Attributes:
        path: Filesystem path of the FIFO.
    """

    def __init__(
        self,
        path: Path,
        on_message: MessageHandler,
        *,
        mode: int = 0o666,
        read_size: int = 4096,
        reopen_delay: float = 0.1,
        max_message_size: int = 64 * 1024,
    ) -> None:
        """Initialize ChannelListener.

        Args:
            path: Filesystem path of the FIFO.
            on_message: Coroutine called with each complete message.
            mode: Permission bits for a newly created FIFO.
            read_size: Maximum bytes per read.
            reopen_delay: Seconds to wait before reopening after an error.
            max_message_size: Longest accepted message in bytes.
        """
        self.path = Path(path)
        self._on_message = on_message
        self._mode = mode
        self._read_size = read_size
        self._reopen_delay = reopen_delay
        self._splitter = MessageSplitter(max_message_size)
        self._opened = asyncio.Event()

    @classmethod
    def from_config(cls, config: ChannelConfig, on_message: MessageHandler) -> "ChannelListener":
        return cls(
            Path(config.path).expanduser(),
            on_message,
            mode=config.mode,
            read_size=config.read_size,
            reopen_delay=config.reopen_delay,
            max_message_size=config.max_message_size,
        )

    @property
    def opened(self) -> asyncio.Event:
        """Set while the FIFO is open for reading."""
        return self._opened

    def ensure_channel(self) -> None:
        """Create the FIFO at startup if it does not exist.

        Raises:
            FatalError: If the FIFO cannot be created or the path is not a FIFO.
        """
        try:
            self._create_fifo()
        except ChannelError as e:
            raise FatalError(reason=str(e)) from e

    def _create_fifo(self) -> None:
        try:
            st = os.stat(self.path)
        except FileNotFoundError:
            pass
        except OSError as e:
            raise ChannelError(str(self.path), reason=str(e)) from e
        else:
            if not stat.S_ISFIFO(st.st_mode):
                raise ChannelError(str(self.path), reason="path exists and is not a FIFO")
            return

        log.info("channel_creating", path=str(self.path))
        # Cleared so the requested mode is applied as-is
        previous_umask = os.umask(0)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            os.mkfifo(self.path, self._mode)
        except FileExistsError:
            pass  # created concurrently by a producer
        except OSError as e:
            raise ChannelError(str(self.path), reason=str(e)) from e
        finally:
            os.umask(previous_umask)

    async def run(self) -> None:
        """Read messages forever, reopening the FIFO whenever it closes."""
        while True:
            try:
                await self._read_until_closed()
            except ChannelError as e:
                log.warning("channel_error", **e.context)
                await asyncio.sleep(self._reopen_delay)
            else:
                log.debug("channel_writer_closed", path=str(self.path))

    async def _read_until_closed(self) -> None:
        self._create_fifo()
        loop = asyncio.get_running_loop()
        reader = asyncio.StreamReader()
        protocol = asyncio.StreamReaderProtocol(reader)

        try:
            # Non-blocking so opening does not wait for a writer
            fd = os.open(self.path, os.O_RDONLY | os.O_NONBLOCK)
        except OSError as e:
            raise ChannelError(str(self.path), reason=f"open failed: {e}") from e

        pipe = os.fdopen(fd, "rb", buffering=0)
        transport: Optional[asyncio.BaseTransport] = None
        try:
            try:
                transport, _ = await loop.connect_read_pipe(lambda: protocol, pipe)
            except ValueError as e:
                raise ChannelError(str(self.path), reason=str(e)) from e
            self._opened.set()
            log.debug("channel_opened", path=str(self.path))
            while True:
                try:
                    chunk = await reader.read(self._read_size)
                except OSError as e:
                    raise ChannelError(str(self.path), reason=f"read failed: {e}") from e
                if not chunk:
                    return
                for message in self._splitter.feed(chunk):
                    await self._dispatch(message)
        finally:
            self._opened.clear()
            if transport is not None:
                transport.close()
            else:
                pipe.close()

    async def _dispatch(self, message: bytes) -> None:
        # One bad message must not stop the listener
        try:
            await self._on_message(message)
        except Exception as e:
            log.error(
                "channel_handler_failed",
                error=str(e),
                size=len(message),
                exc_info=e,
            )
