"""Presence Translation.

Maps channel commands to session-level instructions for the presence
service. ``translate()`` is pure; ``PresenceTranslator`` wraps it with the
state needed for activity decorations (start timestamps and merge-list
progress).

Usage:
    from buildpresence.daemon.presence import translate, UpdateActivity

    session_command = translate(SetCommand("compiling", "dev-lang", "rust-1.70"))
    assert isinstance(session_command, UpdateActivity)
    assert session_command.activity.details == "dev-lang/rust-1.70"
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Union

import structlog

from buildpresence.core.config import PresenceConfig
from buildpresence.daemon.commands import Command, SetCommand, UnsetCommand


log = structlog.get_logger()

# Prints the number of packages left in Portage's resume list
MERGE_LIST_SCRIPT = (
    "import portage\n"
    "l = portage.mtimedb.get('resume', {}).get('mergelist')\n"
    "print(0 if l is None else len(l), end='')\n"
)

PARTY_ID = "merge-list"


@dataclass(frozen=True)
class ActivityPayload:
    """Activity shown by the presence service.

    Attributes:
        details: First line, ``category/package``.
        state: Second line, the build phase.
        start: Start time in milliseconds since the epoch.
        large_image: Asset key of the large image.
        large_text: Hover text of the large image.
        party_size: ``(current, total)`` position in the merge list.
    """

    details: str
    state: str
    start: Optional[int] = None
    large_image: Optional[str] = None
    large_text: Optional[str] = None
    party_size: Optional[tuple[int, int]] = None

    def to_dict(self) -> dict[str, Any]:
        """Build the activity object sent in a SET_ACTIVITY frame."""
        activity: dict[str, Any] = {
            "details": self.details,
            "state": self.state,
        }
        if self.start is not None:
            activity["timestamps"] = {"start": self.start}
        assets = {}
        if self.large_image is not None:
            assets["large_image"] = self.large_image
        if self.large_text is not None:
            assets["large_text"] = self.large_text
        if assets:
            activity["assets"] = assets
        if self.party_size is not None:
            activity["party"] = {"id": PARTY_ID, "size": list(self.party_size)}
        return activity


@dataclass(frozen=True)
class UpdateActivity:
    """Replace the active presence."""

    activity: ActivityPayload


@dataclass(frozen=True)
class ClearActivity:
    """Remove the active presence."""


SessionCommand = Union[UpdateActivity, ClearActivity]


@dataclass(frozen=True)
class PresenceOptions:
    """Static asset references attached to every activity."""

    large_image: Optional[str] = None
    large_text: Optional[str] = None

    @classmethod
    def from_config(cls, config: PresenceConfig) -> "PresenceOptions":
        return cls(large_image=config.large_image, large_text=config.large_text)


def translate(
    command: Command,
    options: Optional[PresenceOptions] = None,
    *,
    started_at: Optional[int] = None,
    party: Optional[tuple[int, int]] = None,
) -> SessionCommand:
    """Translate a channel command into a session command.

    Pure and deterministic: the same arguments always produce an equal
    result. Input strings are reused unchanged.

    Args:
        command: Parsed channel command.
        options: Optional asset references.
        started_at: Optional start timestamp (ms since epoch).
        party: Optional ``(current, total)`` merge-list position.

    Returns:
        UpdateActivity for SetCommand, ClearActivity for UnsetCommand.

    Raises:
        TypeError: If command is not a known Command type.
    """
    if isinstance(command, UnsetCommand):
        return ClearActivity()
    if isinstance(command, SetCommand):
        options = options or PresenceOptions()
        return UpdateActivity(
            ActivityPayload(
                details=f"{command.category}/{command.package}",
                state=command.state,
                start=started_at,
                large_image=options.large_image,
                large_text=options.large_text,
                party_size=party,
            )
        )
    raise TypeError(f"Unsupported command type: {type(command).__name__}")


class MergeProgress:
    """Tracks the position of the current package in the merge list.

    The merge list shrinks as packages complete, so the largest length
    seen since the last reset is taken as the total. Between packages the
    hook sends ``unset``, so the total is kept across it and only dropped
    once the build has been idle for a while.
    """

    def __init__(self) -> None:
        self._total: Optional[int] = None

    @property
    def total(self) -> Optional[int]:
        return self._total

    def update(self, remaining: int) -> Optional[tuple[int, int]]:
        """Record the remaining count and return ``(current, total)``.

        Returns None when no merge list is active.
        """
        remaining = max(remaining, 0)
        total = max(self._total or 0, remaining)
        self._total = total
        if total == 0:
            return None
        # The list empties before the last package finishes
        return (min(total - remaining + 1, total), total)

    def reset(self) -> None:
        self._total = None


async def read_merge_list_length(python: str = "python3", timeout: float = 5.0) -> int:
    """Ask Portage how many packages are left in the resume list.

    Runs ``python`` as a subprocess so the daemon does not need Portage
    importable in its own interpreter. Any failure yields 0.
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            python,
            "-c",
            MERGE_LIST_SCRIPT,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
        )
    except OSError as e:
        log.debug("merge_list_unavailable", python=python, error=str(e))
        return 0

    try:
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        log.warning("merge_list_timeout", python=python, timeout=timeout)
        return 0

    try:
        return int(stdout.decode("utf-8", errors="replace").strip())
    except ValueError:
        log.debug("merge_list_unparseable", output=stdout[:64])
        return 0


MergeListReader = Callable[[], Awaitable[int]]


class PresenceTranslator:
    """Stateful wrapper around translate() supplying decorations.

    Attributes:
        options: Asset references attached to every activity.
    """

    def __init__(
        self,
        options: Optional[PresenceOptions] = None,
        merge_list_reader: Optional[MergeListReader] = None,
        show_timestamps: bool = True,
        clock: Callable[[], float] = time.time,
        idle_reset: float = 30.0,
    ) -> None:
        """Initialize PresenceTranslator.

        Args:
            options: Optional asset references.
            merge_list_reader: Optional coroutine returning the remaining
                merge list length. Merge progress is omitted when None.
            show_timestamps: Whether to attach start timestamps.
            clock: Wall clock in seconds, injectable for tests.
            idle_reset: Seconds after an unset with no further set before
                merge progress starts over.
        """
        self.options = options or PresenceOptions()
        self._merge_list_reader = merge_list_reader
        self._show_timestamps = show_timestamps
        self._clock = clock
        self._idle_reset = idle_reset
        self._progress = MergeProgress()
        self._unset_at: Optional[float] = None
        self._current_package: Optional[tuple[str, str]] = None
        self._started_at: Optional[int] = None

    @classmethod
    def from_config(cls, config: PresenceConfig) -> "PresenceTranslator":
        reader: Optional[MergeListReader] = None
        if config.show_merge_progress:
            async def reader() -> int:
                return await read_merge_list_length(
                    config.merge_list_python, config.merge_list_timeout
                )
        return cls(
            options=PresenceOptions.from_config(config),
            merge_list_reader=reader,
            show_timestamps=config.show_timestamps,
            idle_reset=config.merge_idle_reset,
        )

    async def translate(self, command: Command) -> SessionCommand:
        """Translate a command, updating decoration state."""
        if isinstance(command, UnsetCommand):
            self._unset_at = self._clock()
            self._current_package = None
            self._started_at = None
            return translate(command, self.options)
        if not isinstance(command, SetCommand):
            return translate(command, self.options)

        if self._unset_at is not None:
            idle = self._clock() - self._unset_at
            self._unset_at = None
            if idle > self._idle_reset:
                log.debug("merge_progress_reset", idle=idle)
                self._progress.reset()

        party = None
        if self._merge_list_reader is not None:
            party = self._progress.update(await self._merge_list_reader())

        started_at = None
        if self._show_timestamps:
            package = (command.category, command.package)
            if package != self._current_package:
                self._current_package = package
                self._started_at = int(self._clock() * 1000)
            started_at = self._started_at

        return translate(command, self.options, started_at=started_at, party=party)
