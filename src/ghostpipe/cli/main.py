"""CLI entry point.

``ghostpipe [url] [file]`` pipes files to interfaces; ``ghostpipe diff``
publishes a branch comparison.  Anything that is not a known subcommand
is handed to the default ``run`` command, so ``ghostpipe`` with no
arguments runs every configured interface.
"""

from __future__ import annotations

from pathlib import Path

import click

from ghostpipe import __version__
from ghostpipe.core.config import (
    default_inline_filename,
    inline_interface,
    load_config,
    normalize_interfaces,
)
from ghostpipe.core.errors import GhostpipeError, GitError
from ghostpipe.diff.git_reader import GitRepository
from ghostpipe.storage.fs import atomic_write

# ``--diff`` given without ``=branch``: use the configured base branch.
DIFF_CONFIGURED_BASE = "::configured::"


class DefaultCommandGroup(click.Group):
    """A group that runs ``default_command`` when no subcommand is named."""

    default_command = "run"

    def parse_args(self, ctx: click.Context, args: list[str]) -> list[str]:
        if args and args[0] in ("--help", "-h", "--version"):
            return super().parse_args(ctx, args)
        if not args or args[0] not in self.commands:
            args = [self.default_command, *args]
        return super().parse_args(ctx, args)


@click.group(cls=DefaultCommandGroup, context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(__version__, prog_name="ghostpipe")
def cli() -> None:
    """ghostpipe: interfaces for your codebase."""


@cli.command("run", hidden=True)
@click.argument("url", required=False)
@click.argument("file", required=False)
@click.option(
    "--diff",
    "diff_branch",
    is_flag=False,
    flag_value=DIFF_CONFIGURED_BASE,
    default=None,
    help="Also publish base/head content against a branch (--diff=<branch>).",
)
@click.option("--verbose", is_flag=True, help="Enable verbose logging.")
def run_cmd(url: str | None, file: str | None, diff_branch: str | None, verbose: bool) -> None:
    """Pipe local files to one or more interfaces."""
    from ghostpipe.cli.helpers import configure_logging, output_error, require_root, run_sessions

    configure_logging(verbose)
    root = require_root()

    try:
        config = load_config(root)
        if url:
            if not file:
                file = click.prompt("File", default=default_inline_filename(url))
            _ensure_file(root / file)
            interfaces = [inline_interface(url, file)]
        else:
            interfaces = normalize_interfaces(config, root)

        git = None
        diff_base = None
        if diff_branch is not None:
            git = GitRepository(root)
            git.require_repository()
            diff_base = (
                config.get("diffBaseBranch")
                if diff_branch == DIFF_CONFIGURED_BASE
                else diff_branch
            )
            if not diff_base or not git.branch_exists(diff_base):
                raise GitError(f"Branch '{diff_base}' does not exist")

        run_sessions(root, config, interfaces, git=git, diff_base=diff_base)
    except GhostpipeError as e:
        output_error(str(e))


def _ensure_file(path: Path) -> None:
    """Create an empty file (and its parents) unless it already exists."""
    if path.exists():
        return
    try:
        atomic_write(path, "", make_parents=True)
    except OSError as e:
        raise GhostpipeError(f"Cannot create {path}: {e}") from e


# ---------------------------------------------------------------------------
# Register subcommand modules (must be after cli group is defined)
# ---------------------------------------------------------------------------

from ghostpipe.cli import diff_cmd as _diff_cmd  # noqa: E402, F401
