"""``ghostpipe diff`` command."""

from __future__ import annotations

import click

from ghostpipe.cli.helpers import configure_logging, output_error, require_root, run_sessions
from ghostpipe.cli.main import cli
from ghostpipe.core.config import load_config, normalize_interfaces
from ghostpipe.core.errors import GhostpipeError, GitError
from ghostpipe.diff.git_reader import GitRepository
from ghostpipe.diff.snapshot import DiffSnapshotter


@cli.command("diff")
@click.argument("refs", nargs=-1)
@click.option("--verbose", is_flag=True, help="Enable verbose logging.")
def diff_cmd(refs: tuple[str, ...], verbose: bool) -> None:
    """Compare two branches in every configured interface.

    BASE defaults to main (or master); HEAD defaults to the current
    branch, in which case uncommitted changes are included and kept live.

    \b
    Usage: ghostpipe diff [BASE] [HEAD]
    """
    configure_logging(verbose)
    if len(refs) > 2:
        output_error("Too many arguments for diff command")

    root = require_root()
    try:
        config = load_config(root)
        interfaces = normalize_interfaces(config, root)

        git = GitRepository(root)
        git.require_repository()
        current = git.current_branch()

        base = refs[0] if refs else git.default_branch()
        if base is None:
            raise GitError("No main or master branch found")
        head = refs[1] if len(refs) > 1 else current
        if head is None:
            raise GitError("Cannot diff against a detached HEAD; name the head branch")
        for ref in (base, head):
            if not git.branch_exists(ref):
                raise GitError(f"Branch '{ref}' does not exist")

        working = head == current
        if not DiffSnapshotter(git, root).changed_files(base, head, working):
            click.echo("No files changed between branches")
            return

        click.echo(
            f"Comparing: {base} <-> {head}"
            + (" (with working changes)" if working else "")
        )
        run_sessions(
            root,
            config,
            interfaces,
            git=git,
            diff=(base, head),
            banner="Diff pipes running. Press Ctrl+C to stop.",
        )
    except GhostpipeError as e:
        output_error(str(e))
