"""
buildpresence Test Configuration

Shared pytest fixtures for unit and integration tests.
"""

import asyncio
import json
import os
import struct
from typing import Any, Callable, Generator
from unittest.mock import AsyncMock, MagicMock

import pytest
import structlog

from buildpresence.core.config import reset_settings
from buildpresence.daemon.ipc import Opcode, encode_frame


READY_DISPATCH = {
    "cmd": "DISPATCH",
    "evt": "READY",
    "data": {"v": 1, "user": {"id": "42", "username": "builder"}},
}


@pytest.fixture(autouse=True)
def reset_settings_around_test() -> Generator[None, None, None]:
    """Reset settings, logging and BUILDPRESENCE_ env vars around each test."""
    reset_settings()
    for key in list(os.environ.keys()):
        if key.startswith("BUILDPRESENCE_"):
            del os.environ[key]
    yield
    reset_settings()
    structlog.reset_defaults()
    for key in list(os.environ.keys()):
        if key.startswith("BUILDPRESENCE_"):
            del os.environ[key]


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fake_clock() -> FakeClock:
    """Provide a manually advanced clock."""
    return FakeClock()


@pytest.fixture
def ready_frame() -> bytes:
    """Provide the handshake acknowledgement sent by the presence service."""
    return encode_frame(Opcode.FRAME, READY_DISPATCH)


def make_writer() -> MagicMock:
    """Build a StreamWriter double that records written bytes."""
    writer = MagicMock(spec=asyncio.StreamWriter)
    writer.written = bytearray()
    writer.write.side_effect = writer.written.extend
    writer.drain = AsyncMock()
    writer.wait_closed = AsyncMock()
    writer.is_closing.return_value = False
    return writer


@pytest.fixture
def fake_connection(ready_frame: bytes) -> Callable[..., tuple[asyncio.StreamReader, MagicMock]]:
    """Factory for a (reader, writer) pair connected to a scripted service.

    The reader is a real StreamReader pre-fed with ``incoming`` bytes
    (the READY acknowledgement by default).
    """
    def _make(incoming: bytes | None = None) -> tuple[asyncio.StreamReader, MagicMock]:
        reader = asyncio.StreamReader()
        reader.feed_data(ready_frame if incoming is None else incoming)
        return reader, make_writer()
    return _make


def split_frames(data: bytes) -> list[tuple[int, int, Any]]:
    """Split raw written bytes into ``(opcode, length, body)`` tuples."""
    frames = []
    offset = 0
    while offset < len(data):
        opcode, length = struct.unpack_from("<ii", data, offset)
        offset += 8
        body = json.loads(data[offset:offset + length].decode("utf-8"))
        offset += length
        frames.append((opcode, length, body))
    return frames


@pytest.fixture
def written_frames() -> Callable[[MagicMock], list[tuple[int, int, Any]]]:
    """Decode every frame written to a make_writer() double."""
    def _decode(writer: MagicMock) -> list[tuple[int, int, Any]]:
        return split_frames(bytes(writer.written))
    return _decode
