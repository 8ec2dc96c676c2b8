"""Command-line interface for dirdiff."""

from __future__ import annotations

import io
import logging
from pathlib import Path
from typing import Iterable

import tomli_w
import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from .config import DEFAULT_CONFIG_FILENAME, ConfigError, load_config
from .errors import DirdiffError, PlanConflict, RevisionNotFound, StaleSourceError, StoreCorruption
from .manager import DirdiffManager
from .models import DiffResult, Operation, OperationKind, SkippedEntry, SyncOutcome, SyncPlan

app = typer.Typer(help="Track directory revisions and mirror them to remotes with minimal transfers")
console = Console()

ConfigOption = typer.Option(None, "--config", "-c", help="Path to dirdiff.toml")


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log progress messages"),
    debug: bool = typer.Option(False, "--debug", help="Log every scanned file and applied operation"),
) -> None:
    """Configure logging for all commands."""

    level = logging.DEBUG if debug else logging.INFO if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=debug)],
        force=True,
    )


def _load_manager(config: Path | None) -> DirdiffManager:
    config_obj = load_config(config)
    return DirdiffManager(config_obj)


def _handle_error(exc: Exception) -> None:
    if isinstance(exc, PermissionError):
        console.print("[red]Permission denied.[/red] Check access to the tracked tree and the store directory.")
        raise typer.Exit(code=1)
    if isinstance(exc, ConfigError):
        message = str(exc)
        console.print(f"[red]{message}[/red]")
        if "does not exist" in message:
            console.print("[yellow]Use 'dirdiff init --config <path>' to create a configuration file.[/yellow]")
        elif "Expected to find" in message:
            console.print(f"[yellow]Pass the {DEFAULT_CONFIG_FILENAME} file itself or the directory holding it.[/yellow]")
        elif "Unknown remote" in message:
            console.print("[yellow]Add the remote under \\[remotes.<name>] in the configuration file.[/yellow]")
        raise typer.Exit(code=1)
    if isinstance(exc, DirdiffError):
        console.print(f"[red]{exc}[/red]")
        if isinstance(exc, StoreCorruption):
            console.print("[yellow]Other revisions are unaffected; 'dirdiff log' lists what is readable.[/yellow]")
        elif isinstance(exc, PlanConflict):
            console.print("[yellow]No changes were made to the remote.[/yellow]")
        elif isinstance(exc, RevisionNotFound) and exc.revision_id is not None:
            console.print("[yellow]Run 'dirdiff log' to list the recorded revisions.[/yellow]")
        raise typer.Exit(code=1)
    raise exc


def _human_size(size: int) -> str:
    value = float(size)
    for unit in ("B", "KiB", "MiB", "GiB"):
        if value < 1024 or unit == "GiB":
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{size} B"


def _format_skipped(entries: Iterable[SkippedEntry]) -> None:
    table = Table(show_header=True, header_style="bold magenta", title="Skipped")
    table.add_column("Path")
    table.add_column("Reason", overflow="fold")

    for entry in entries:
        table.add_row(entry.path, entry.reason)

    console.print(table)


def _format_diff(result: DiffResult) -> None:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("State")
    table.add_column("Path")
    table.add_column("Details", overflow="fold")

    rows: list[tuple[str, str, str, str]] = []
    for record in result.added:
        rows.append((record.path, "added", "green", _human_size(record.size)))
    for record in result.removed:
        rows.append((record.path, "removed", "red", ""))
    for entry in result.modified:
        rows.append((entry.path, "modified", "yellow", f"{entry.old_fingerprint[:12]} -> {entry.new_fingerprint[:12]}"))
    for moved in result.moved:
        rows.append((moved.new_path, moved.kind.value, "cyan", f"from {moved.old_path}"))

    for path, state, style, details in sorted(rows):
        table.add_row(f"[{style}]{state}[/{style}]", path, details)

    console.print(table)


_ACTION_STYLES = {
    OperationKind.KEEP: "dim",
    OperationKind.MOVE: "cyan",
    OperationKind.COPY: "cyan",
    OperationKind.TRANSFER: "green",
    OperationKind.DELETE: "red",
}


def _format_operations(plan: SyncPlan, indices: Iterable[int]) -> None:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("#", justify="right")
    table.add_column("Action")
    table.add_column("Path")
    table.add_column("Source", overflow="fold")

    for index in indices:
        op: Operation = plan.operations[index]
        style = _ACTION_STYLES[op.kind]
        source = op.source if op.kind in (OperationKind.MOVE, OperationKind.COPY) else ""
        table.add_row(str(index + 1), f"[{style}]{op.kind.value}[/{style}]", op.path, source or "")

    console.print(table)


def _plan_summary(plan: SyncPlan) -> str:
    counts = plan.counts()
    parts = [f"{counts[kind]} {kind.value}" for kind in OperationKind if counts[kind]]
    return ", ".join(parts) or "nothing to do"


def _format_outcome(plan: SyncPlan, outcome: SyncOutcome) -> None:
    console.print(
        f"Applied {len(outcome.completed)} of {len(plan.operations)} operation(s); "
        f"{_human_size(outcome.bytes_transferred)} transferred."
    )
    if outcome.failed is not None:
        failure = outcome.failed
        console.print(
            f"[red]Operation {failure.index + 1} ({failure.operation.describe()}) failed: {failure.error}[/red]"
        )
        if isinstance(failure.error, StaleSourceError):
            console.print("[yellow]Run 'dirdiff sync --snapshot' to record the current tree first.[/yellow]")
    if outcome.cancelled:
        console.print("[yellow]Sync was cancelled.[/yellow]")
    if outcome.remaining:
        console.print("[yellow]Remaining operations (re-run 'dirdiff sync' to continue):[/yellow]")
        _format_operations(plan, outcome.remaining)
    if outcome.verification is not None:
        console.print(f"[red]{outcome.verification}[/red]")
        _format_diff(outcome.verification.mismatch)


def _render_init_config(*, root: str) -> str:
    data = {
        "settings": {
            "root": root,
            "store_dir": ".dirdiff",
            "include_hidden": False,
            "exclude": [],
        },
        "retry": {
            "max_attempts": 5,
            "initial_delay": 0.5,
            "max_delay": 8.0,
        },
    }

    buffer = io.StringIO()
    buffer.write("# dirdiff configuration\n\n")
    buffer.write(tomli_w.dumps(data))
    buffer.write(
        "\n# [remotes.mirror]\n"
        '# path = "/srv/mirror"\n'
        '# host = "mirror.example.org"   # omit to sync to a local directory\n'
        '# user = "me"\n'
    )
    return buffer.getvalue()


@app.command()
def init(
    config: Path = typer.Option(
        Path(DEFAULT_CONFIG_FILENAME),
        "--config",
        "-c",
        help="Path to write the configuration file",
        dir_okay=False,
        writable=True,
    ),
    root: str = typer.Option(".", "--root", help="Directory tree to track, relative to the config file"),
    force: bool = typer.Option(False, "--force", help="Overwrite existing config if present"),
) -> None:
    """Create a starter dirdiff configuration file."""

    config_path = config
    if config_path.exists() and not force:
        console.print(f"[red]Configuration '{config_path}' already exists. Use --force to overwrite.[/red]")
        raise typer.Exit(code=1)

    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(_render_init_config(root=root))
    console.print(f"[green]Created '{config_path}'.[/green]")


@app.command()
def snapshot(config: Path | None = ConfigOption) -> None:
    """Scan the tracked tree and record a new revision."""

    try:
        with _load_manager(config) as manager:
            committed, result = manager.snapshot()
        console.print(
            f"[green]Recorded revision {committed.revision_id}[/green] "
            f"({len(committed)} file(s), {_human_size(committed.total_size)})."
        )
        if result.skipped:
            _format_skipped(result.skipped)
    except Exception as exc:  # noqa: BLE001
        _handle_error(exc)


@app.command("log")
def log_(config: Path | None = ConfigOption) -> None:
    """List recorded revisions."""

    try:
        with _load_manager(config) as manager:
            revisions = manager.revisions()
        if not revisions:
            console.print("[yellow]No revisions recorded yet. Run 'dirdiff snapshot' first.[/yellow]")
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Revision", justify="right")
        table.add_column("Created (UTC)")
        table.add_column("Files", justify="right")
        table.add_column("Size", justify="right")
        for revision in revisions:
            table.add_row(
                str(revision.revision_id),
                revision.created_at.strftime("%Y-%m-%d %H:%M:%S"),
                str(len(revision)),
                _human_size(revision.total_size),
            )
        console.print(table)
    except Exception as exc:  # noqa: BLE001
        _handle_error(exc)


@app.command()
def diff(
    rev_a: int | None = typer.Argument(None, help="Older revision (default: the one before REV_B)"),
    rev_b: int | None = typer.Argument(None, help="Newer revision (default: latest)"),
    config: Path | None = ConfigOption,
) -> None:
    """Show what changed between two revisions."""

    try:
        with _load_manager(config) as manager:
            result = manager.diff(rev_a, rev_b)
        if result.is_empty:
            console.print("[green]No differences.[/green]")
            return
        _format_diff(result)
    except Exception as exc:  # noqa: BLE001
        _handle_error(exc)


@app.command()
def status(config: Path | None = ConfigOption) -> None:
    """Compare the working tree with the latest revision."""

    try:
        with _load_manager(config) as manager:
            result, scan = manager.status()
        if result.is_empty:
            console.print("[green]Working tree matches the latest revision.[/green]")
        else:
            _format_diff(result)
            console.print("[yellow]Run 'dirdiff snapshot' to record these changes.[/yellow]")
        if scan.skipped:
            _format_skipped(scan.skipped)
    except Exception as exc:  # noqa: BLE001
        _handle_error(exc)


@app.command()
def plan(
    remote: str = typer.Argument(..., help="Remote name from the configuration"),
    config: Path | None = ConfigOption,
) -> None:
    """Show the operations a sync would run, without changing anything."""

    try:
        with _load_manager(config) as manager:
            sync_plan = manager.plan(remote)
        if sync_plan.is_noop:
            console.print(f"[green]Remote '{remote}' is already up to date.[/green]")
            return
        _format_operations(
            sync_plan,
            (index for index, op in enumerate(sync_plan.operations) if op.kind is not OperationKind.KEEP),
        )
        console.print(f"{_plan_summary(sync_plan)}; {_human_size(sync_plan.transfer_bytes)} to transfer.")
    except Exception as exc:  # noqa: BLE001
        _handle_error(exc)


@app.command()
def sync(
    remote: str = typer.Argument(..., help="Remote name from the configuration"),
    fresh: bool = typer.Option(False, "--fresh", help="Discard any interrupted sync and plan from scratch"),
    take_snapshot: bool = typer.Option(False, "--snapshot", help="Record a new revision before syncing"),
    config: Path | None = ConfigOption,
) -> None:
    """Make a remote match the latest revision."""

    try:
        with _load_manager(config) as manager:
            if take_snapshot:
                committed, _ = manager.snapshot()
                console.print(f"[green]Recorded revision {committed.revision_id}.[/green]")
            sync_plan, outcome = manager.sync(remote, fresh=fresh)
        _format_outcome(sync_plan, outcome)
        if not outcome.succeeded:
            raise typer.Exit(code=1)
        console.print(f"[green]Remote '{remote}' matches revision {sync_plan.target.revision_id}.[/green]")
    except typer.Exit:
        raise
    except Exception as exc:  # noqa: BLE001
        _handle_error(exc)


@app.command()
def abandon(
    remote: str = typer.Argument(..., help="Remote name from the configuration"),
    config: Path | None = ConfigOption,
) -> None:
    """Forget an interrupted sync so the next one starts from a fresh plan."""

    try:
        with _load_manager(config) as manager:
            dropped = manager.abandon(remote)
        if dropped:
            console.print(f"[green]Dropped the interrupted sync for '{remote}'.[/green]")
        else:
            console.print(f"[yellow]No interrupted sync recorded for '{remote}'.[/yellow]")
    except Exception as exc:  # noqa: BLE001
        _handle_error(exc)


def run() -> None:
    """Entry point used for console_script bindings."""

    app()
