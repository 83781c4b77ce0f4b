"""Shared CLI helpers: logging setup, error output, and the session run loop."""

from __future__ import annotations

import asyncio
import logging
import signal
from collections.abc import Sequence
from pathlib import Path
from typing import NoReturn

import click

from ghostpipe.core.config import GhostpipeConfig, InterfaceDeclaration
from ghostpipe.diff.git_reader import GitRepository
from ghostpipe.storage.fs import GhostpipeRootError, find_root
from ghostpipe.sync.session import Session, SessionManager

LOG_FORMAT = "%(levelname)s: %(message)s"


# ---------------------------------------------------------------------------
# Setup
# ---------------------------------------------------------------------------


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format=LOG_FORMAT,
        force=True,
    )
    # Frame-level chatter from the websocket library is never useful here.
    logging.getLogger("websockets").setLevel(logging.WARNING)


def require_root() -> Path:
    """Find the project root or exit with error."""
    try:
        return find_root()
    except GhostpipeRootError as e:
        output_error(str(e))


# ---------------------------------------------------------------------------
# Output helpers
# ---------------------------------------------------------------------------


def output_error(message: str, exit_code: int = 1) -> NoReturn:
    """Print error to stderr and exit."""
    click.echo(f"Error: {message}", err=True)
    raise SystemExit(exit_code)


def print_sessions(sessions: Sequence[Session]) -> None:
    click.echo("")
    for session in sessions:
        click.echo(
            click.style(f"{session.name}: ", fg="cyan")
            + click.style(session.url, underline=True)
        )
    click.echo("")


# ---------------------------------------------------------------------------
# Run loop
# ---------------------------------------------------------------------------


async def serve(
    root: Path,
    config: GhostpipeConfig,
    interfaces: Sequence[InterfaceDeclaration],
    *,
    git: GitRepository | None = None,
    diff: tuple[str, str] | None = None,
    diff_base: str | None = None,
    banner: str = "Pipes running. Press Ctrl+C to stop.",
) -> None:
    """Start every session and keep them running until SIGINT/SIGTERM."""
    loop = asyncio.get_running_loop()
    stop = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            # Windows: fall back to KeyboardInterrupt from asyncio.run().
            pass

    manager = SessionManager(root, config, git=git)
    try:
        sessions = manager.start(interfaces, diff=diff, diff_base=diff_base)
        print_sessions(sessions)
        click.echo(banner)
        await stop.wait()
        click.echo("\nShutting down...")
    finally:
        manager.shutdown()
        await manager.wait_closed()


def run_sessions(*args, **kwargs) -> None:
    """``asyncio.run(serve(...))``, treating Ctrl+C as a clean exit."""
    try:
        asyncio.run(serve(*args, **kwargs))
    except KeyboardInterrupt:
        click.echo("\nShutting down...")
