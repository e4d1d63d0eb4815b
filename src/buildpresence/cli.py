"""buildpresence CLI Entry Point.

This module provides the command-line interface for running the relay
daemon and writing commands into its channel.
"""

from __future__ import annotations

import asyncio
import errno
import logging
import os
import stat
import sys
from pathlib import Path
from typing import Optional

import structlog
import typer

from buildpresence.core.config import ConfigurationError, get_settings
from buildpresence.core.exceptions import FatalError
from buildpresence.daemon.commands import format_set_message, format_unset_message
from buildpresence.daemon.ipc import candidate_socket_paths, discover_socket_paths


log = structlog.get_logger()

# Main app
app = typer.Typer(
    name="buildpresence",
    help="buildpresence - relay package build phases to your desktop presence",
    no_args_is_help=True,
)

# Send subcommand group
send_app = typer.Typer(help="Write a command into the relay channel", no_args_is_help=True)
app.add_typer(send_app, name="send")


def get_channel_path() -> Path:
    """Get the command channel path from settings."""
    return Path(get_settings().channel.path).expanduser()


def configure_logging() -> None:
    """Configure structlog from the loaded logging settings."""
    cfg = get_settings().logging
    renderer = (
        structlog.processors.JSONRenderer()
        if cfg.format == "json"
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(cfg.level)
        ),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )


def load_config_callback(config: Optional[Path]) -> Optional[Path]:
    """Load configuration file if provided."""
    try:
        if config:
            if not config.exists():
                typer.echo(f"Error: Config file '{config}' not found", err=True)
                raise typer.Exit(code=1)
            get_settings(force_reload=True, system_config_path=config)
        else:
            get_settings()
    except ConfigurationError as e:
        typer.echo(f"Error loading config: {e}", err=True)
        raise typer.Exit(code=1)

    configure_logging()
    if config:
        log.info("config_loaded", path=str(config))
    return config


@app.callback()
def main(
    config: Optional[Path] = typer.Option(
        None, "--config", "-c",
        callback=load_config_callback,
        is_eager=True,
        help="Path to configuration file",
    ),
) -> None:
    """buildpresence CLI."""
    pass


@app.command()
def run() -> None:
    """Run the relay daemon in the foreground."""
    from buildpresence.daemon.relay import run_daemon

    log.info("relay_starting", pid=os.getpid())
    try:
        asyncio.run(run_daemon(get_settings()))
    except FatalError as e:
        log.error("relay_fatal_error", **e.context)
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1)


def write_to_channel(path: Path, data: bytes) -> None:
    """Write one framed command into the channel.

    Raises:
        typer.Exit: If the channel is missing or no relay is reading it.
    """
    try:
        # Non-blocking open fails with ENXIO instead of waiting for a reader
        fd = os.open(path, os.O_WRONLY | os.O_NONBLOCK)
    except FileNotFoundError:
        typer.echo(f"Error: Channel '{path}' not found", err=True)
        raise typer.Exit(code=1)
    except OSError as e:
        if e.errno == errno.ENXIO:
            typer.echo("Error: Relay not running", err=True)
        else:
            typer.echo(f"Error: Cannot open channel '{path}': {e}", err=True)
        raise typer.Exit(code=1)

    try:
        os.set_blocking(fd, True)
        view = memoryview(data)
        while view:
            written = os.write(fd, view)
            view = view[written:]
    except OSError as e:
        typer.echo(f"Error: Write to channel failed: {e}", err=True)
        raise typer.Exit(code=1)
    finally:
        os.close(fd)


@send_app.command("set")
def send_set(
    state: str = typer.Option(..., "--state", "-s", help="Build phase, e.g. compiling"),
    category: str = typer.Option(..., "--category", "-C", help="Package category"),
    package: str = typer.Option(..., "--package", "-p", help="Package name and version"),
) -> None:
    """Report a package entering a build phase."""
    write_to_channel(get_channel_path(), format_set_message(state, category, package))


@send_app.command("unset")
def send_unset() -> None:
    """Report that no package is being built."""
    write_to_channel(get_channel_path(), format_unset_message())


@app.command()
def status() -> None:
    """Show the channel and presence service sockets."""
    path = get_channel_path()
    try:
        is_fifo = stat.S_ISFIFO(os.stat(path).st_mode)
    except FileNotFoundError:
        typer.echo(f"Channel: {path} (missing)")
    else:
        typer.echo(f"Channel: {path} ({'fifo' if is_fifo else 'not a fifo'})")

    sockets = discover_socket_paths()
    if sockets:
        for socket_path in sockets:
            typer.echo(f"Presence socket: {socket_path}")
    else:
        searched = candidate_socket_paths()[0].parent
        typer.echo(f"Presence socket: none found (searched {searched})")


if __name__ == "__main__":
    app()
