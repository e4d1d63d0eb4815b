"""Presence Relay Daemon.

Composes the channel listener, command parser, presence translator and
IPC session, and runs the listener and the session as two independent
asyncio tasks for the process lifetime.

Usage:
    from buildpresence.daemon.relay import run_daemon

    await run_daemon()
"""

import asyncio
import signal
from typing import Awaitable, Callable, Optional

import structlog

from buildpresence.core.config import Settings, get_settings
from buildpresence.core.exceptions import ParseError
from buildpresence.daemon.channel import ChannelListener
from buildpresence.daemon.commands import parse_command
from buildpresence.daemon.presence import PresenceTranslator
from buildpresence.daemon.session import PresenceSession


log = structlog.get_logger()

RESTART_DELAY = 1.0  # seconds before restarting a failed relay task


class PresenceRelay:
    """Forwards channel messages to the session.

    Attributes:
        session: The process's single PresenceSession.
        translator: Translator producing session commands.
    """

    def __init__(self, session: PresenceSession, translator: PresenceTranslator) -> None:
        self.session = session
        self.translator = translator

    async def handle_message(self, message: bytes) -> None:
        """Parse, translate and submit one channel message.

        Malformed messages are logged and discarded.
        """
        try:
            command = parse_command(message)
        except ParseError as e:
            log.warning("command_rejected", error=str(e), **e.context)
            return

        log.info("command_received", command=type(command).__name__)
        session_command = await self.translator.translate(command)
        self.session.submit(session_command)


async def _restart(run: Callable[[], Awaitable[None]], delay: float) -> None:
    await asyncio.sleep(delay)
    await run()


async def run_daemon(settings: Optional[Settings] = None) -> None:
    """Run the relay until SIGINT or SIGTERM.

    The channel listener and the presence session each run for the process
    lifetime. If either one ends early it is logged and restarted after
    RESTART_DELAY seconds.

    Raises:
        FatalError: If the command channel cannot be created.
    """
    if settings is None:
        settings = get_settings()

    session = PresenceSession.from_config(settings.session)
    relay = PresenceRelay(session, PresenceTranslator.from_config(settings.presence))
    listener = ChannelListener.from_config(settings.channel, relay.handle_message)

    listener.ensure_channel()

    loop = asyncio.get_running_loop()
    shutdown_event = asyncio.Event()

    def shutdown_handler(signum: int) -> None:
        sig_name = signal.Signals(signum).name
        log.info("shutdown_signal_received", signal=sig_name)
        shutdown_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: shutdown_handler(s))

    log.info(
        "relay_started",
        channel=str(listener.path),
        client_id=settings.session.client_id,
        reconnect_interval=settings.session.reconnect_interval,
    )

    activities = {
        "channel-listener": listener.run,
        "presence-session": session.run,
    }
    tasks = {
        name: asyncio.create_task(run(), name=name)
        for name, run in activities.items()
    }
    shutdown_task = asyncio.create_task(shutdown_event.wait())
    try:
        while True:
            done, _ = await asyncio.wait(
                [*tasks.values(), shutdown_task],
                return_when=asyncio.FIRST_COMPLETED,
            )
            if shutdown_task in done:
                break
            # Both activities run for the process lifetime; restart whichever ended
            for task in done:
                name = task.get_name()
                log.error(
                    "relay_task_failed",
                    task=name,
                    restart_in=RESTART_DELAY,
                    exc_info=None if task.cancelled() else task.exception(),
                )
                tasks[name] = asyncio.create_task(
                    _restart(activities[name], RESTART_DELAY),
                    name=name,
                )
    finally:
        for task in [*tasks.values(), shutdown_task]:
            task.cancel()
        await asyncio.gather(*tasks.values(), shutdown_task, return_exceptions=True)
        await session.close()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.remove_signal_handler(sig)
        log.info("relay_stopped")
