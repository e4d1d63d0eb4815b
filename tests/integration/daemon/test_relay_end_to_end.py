"""
Integration tests for the full relay.

Runs run_daemon() against a real FIFO and a fake presence service
listening on a Unix socket in a temporary runtime directory.
"""

import asyncio
import errno
import json
import os
import signal
import struct
from pathlib import Path

import pytest

from buildpresence.core.config import ChannelConfig, PresenceConfig, SessionConfig, Settings
from buildpresence.daemon.commands import format_set_message, format_unset_message
from buildpresence.daemon.ipc import Opcode
from buildpresence.daemon.relay import run_daemon


class FakePresenceService:
    """Records every frame received and acknowledges handshakes."""

    def __init__(self, ready_frame: bytes) -> None:
        self.ready_frame = ready_frame
        self.frames: asyncio.Queue = asyncio.Queue()

    async def handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            while True:
                opcode, length = struct.unpack("<ii", await reader.readexactly(8))
                body = json.loads(await reader.readexactly(length))
                await self.frames.put((opcode, body))
                if opcode == Opcode.HANDSHAKE:
                    writer.write(self.ready_frame)
                    await writer.drain()
        except (asyncio.IncompleteReadError, ConnectionError):
            pass
        finally:
            writer.close()

    async def next_frame(self, timeout: float = 2.0) -> tuple[int, dict]:
        return await asyncio.wait_for(self.frames.get(), timeout=timeout)


async def send(path: Path, data: bytes, timeout: float = 2.0) -> None:
    """Write to the channel once the relay has it open."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        try:
            fd = os.open(path, os.O_WRONLY | os.O_NONBLOCK)
        except OSError as e:
            if e.errno not in (errno.ENXIO, errno.ENOENT) or loop.time() > deadline:
                raise
            await asyncio.sleep(0.01)
            continue
        try:
            os.write(fd, data)
        finally:
            os.close(fd)
        return


async def send_until_frame(
    service: FakePresenceService, path: Path, data: bytes, attempts: int = 20
) -> tuple[int, dict]:
    """Resend until the session is READY and forwards a frame."""
    for _ in range(attempts):
        await send(path, data)
        try:
            return await service.next_frame(timeout=0.1)
        except asyncio.TimeoutError:
            continue
    raise AssertionError("no frame forwarded")


@pytest.fixture
def runtime_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.setenv("XDG_RUNTIME_DIR", str(tmp_path))
    return tmp_path


@pytest.fixture
def settings(runtime_dir: Path) -> Settings:
    return Settings(
        channel=ChannelConfig(path=str(runtime_dir / "bp.fifo")),
        session=SessionConfig(client_id="1234", reconnect_interval=0.1, handshake_timeout=1.0),
        presence=PresenceConfig(
            large_image=None,
            show_timestamps=False,
            show_merge_progress=False,
        ),
    )


async def stop(task: asyncio.Task) -> None:
    os.kill(os.getpid(), signal.SIGTERM)
    await asyncio.wait_for(task, timeout=2.0)


@pytest.mark.integration
class TestRelayEndToEnd:
    """Channel commands reach the presence service as SET_ACTIVITY frames."""

    @pytest.mark.asyncio
    async def test_set_then_unset(
        self, runtime_dir: Path, settings: Settings, ready_frame: bytes
    ) -> None:
        service = FakePresenceService(ready_frame)
        server = await asyncio.start_unix_server(
            service.handle, path=str(runtime_dir / "discord-ipc-0")
        )
        channel = Path(settings.channel.path)
        task = asyncio.create_task(run_daemon(settings))
        try:
            opcode, body = await service.next_frame()
            assert opcode == Opcode.HANDSHAKE
            assert body == {"v": 1, "client_id": "1234"}

            opcode, body = await send_until_frame(
                service, channel, format_set_message("preparing", "dev-lang", "rust-1.70")
            )
            assert opcode == Opcode.FRAME
            assert body["cmd"] == "SET_ACTIVITY"
            assert body["args"]["pid"] == os.getpid()
            assert body["args"]["activity"] == {
                "details": "dev-lang/rust-1.70",
                "state": "preparing",
            }

            await send(channel, format_unset_message())
            while True:
                opcode, body = await service.next_frame()
                if "activity" not in body["args"]:
                    break
            assert opcode == Opcode.FRAME
            assert body["cmd"] == "SET_ACTIVITY"

            await stop(task)
        finally:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            server.close()
            await server.wait_closed()

    @pytest.mark.asyncio
    async def test_commands_before_connect_not_replayed(
        self, runtime_dir: Path, settings: Settings, ready_frame: bytes
    ) -> None:
        channel = Path(settings.channel.path)
        task = asyncio.create_task(run_daemon(settings))
        server = None
        try:
            # No presence service yet: this set is dropped
            await send(channel, format_set_message("compiling", "sys-devel", "gcc-13"))
            await asyncio.sleep(0.05)

            service = FakePresenceService(ready_frame)
            server = await asyncio.start_unix_server(
                service.handle, path=str(runtime_dir / "discord-ipc-0")
            )
            opcode, _ = await service.next_frame()
            assert opcode == Opcode.HANDSHAKE

            opcode, body = await send_until_frame(service, channel, format_unset_message())
            assert opcode == Opcode.FRAME
            assert "activity" not in body["args"]

            await stop(task)
        finally:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            if server is not None:
                server.close()
                await server.wait_closed()

    @pytest.mark.asyncio
    async def test_malformed_command_does_not_stop_relay(
        self, runtime_dir: Path, settings: Settings, ready_frame: bytes
    ) -> None:
        service = FakePresenceService(ready_frame)
        server = await asyncio.start_unix_server(
            service.handle, path=str(runtime_dir / "discord-ipc-0")
        )
        channel = Path(settings.channel.path)
        task = asyncio.create_task(run_daemon(settings))
        try:
            await service.next_frame()

            opcode, body = await send_until_frame(
                service,
                channel,
                b"set {not json\0frobnicate\0" + format_set_message("installing", "app-misc", "foo-1"),
            )
            assert body["args"]["activity"]["details"] == "app-misc/foo-1"
            assert not task.done()

            await stop(task)
        finally:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            server.close()
            await server.wait_closed()

    @pytest.mark.asyncio
    async def test_unencodable_command_does_not_stop_relay(
        self, runtime_dir: Path, settings: Settings, ready_frame: bytes
    ) -> None:
        service = FakePresenceService(ready_frame)
        server = await asyncio.start_unix_server(
            service.handle, path=str(runtime_dir / "discord-ipc-0")
        )
        channel = Path(settings.channel.path)
        task = asyncio.create_task(run_daemon(settings))
        try:
            await service.next_frame()
            await send_until_frame(
                service, channel, format_set_message("preparing", "app-misc", "foo-1")
            )

            # Lone surrogate escape, then a valid command
            await send(
                channel,
                b'set {"state": "\\ud800", "category": "a", "package": "b"}\0'
                + format_set_message("compiling", "app-misc", "bar-2"),
            )
            opcode, body = await service.next_frame()
            assert opcode == Opcode.FRAME
            assert body["args"]["activity"]["details"] == "app-misc/bar-2"
            assert body["args"]["activity"]["state"] == "compiling"
            assert not task.done()

            await stop(task)
        finally:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            server.close()
            await server.wait_closed()
