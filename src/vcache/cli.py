"""CLI commands for the validation cache and history."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, List, Optional, Tuple

import typer
import yaml

from .config import DEFAULT_CONFIG_NAME, ConfigError, Settings, load_config
from .errors import AddressingError, StorageError
from .flakiness import detect_flakiness
from .memory.history import ValidationHistoryStore
from .memory.notes import GitNoteStore
from .memory.run_cache import CacheMode, RunCache
from .memory.schema import ValidationResult, ValidationRun
from .tools.gates import phases_from_config, run_validation
from .tools.runner import run_command
from .tools.tree_address import TreeState, check_worktree_stability, compute_address, compute_tree_state
from .tools.vcs import GitError, GitRepository

APP_HELP = "Content-addressed validation cache backed by git notes."
DEFAULT_PRUNE_DAYS = 90

LOGGER = logging.getLogger(__name__)

app = typer.Typer(help=APP_HELP)
history_app = typer.Typer(help="Inspect and prune validation history.")
cache_app = typer.Typer(help="Inspect and prune the run cache.")
app.add_typer(history_app, name="history")
app.add_typer(cache_app, name="cache")


@app.callback()
def main(
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Show debug logging, including why caching or history was disabled.",
    ),
) -> None:
    """Configure logging for every subcommand."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )


# --------------------------------------------------------------------- helpers
def _config_option() -> Any:
    return typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the vcache configuration file.",
    )


def _load_settings(config: str) -> Settings:
    try:
        return load_config(Path(config))
    except ConfigError as error:
        typer.echo(str(error), err=True)
        raise typer.Exit(code=1) from error


def _open_repository(settings: Settings) -> Optional[GitRepository]:
    try:
        return GitRepository.discover(Path.cwd(), timeout=settings.cache.timeout_secs)
    except GitError as error:
        LOGGER.info("Caching disabled: %s", error)
        return None


def _require_repository(settings: Settings) -> GitRepository:
    repo = _open_repository(settings)
    if repo is None:
        typer.echo("Not inside a git repository.", err=True)
        raise typer.Exit(code=1)
    return repo


def _note_store(repo: GitRepository, settings: Settings) -> GitNoteStore:
    return GitNoteStore(
        repo,
        max_attempts=settings.cache.max_attempts,
        retry_delay=settings.cache.retry_delay_secs,
    )


def _history(repo: GitRepository, settings: Settings) -> ValidationHistoryStore:
    return ValidationHistoryStore.from_config(_note_store(repo, settings), settings.history)


def _run_cache(repo: GitRepository, settings: Settings) -> RunCache:
    return RunCache(
        _note_store(repo, settings),
        notes_ref=settings.cache.notes_ref,
        enabled=settings.cache.enabled,
    )


def _echo_yaml(payload: Any) -> None:
    typer.echo("---")
    typer.echo(yaml.safe_dump(payload, sort_keys=False, allow_unicode=True).rstrip())


def _format_run(address: str, run: ValidationRun) -> str:
    status = "PASS" if run.passed else "FAIL"
    timestamp = run.timestamp.strftime("%Y-%m-%d %H:%M:%S")
    return f"{timestamp}  {address[:12]}  {run.branch:<20}  {status}  ({run.duration_secs:.1f}s)"


def _record_validation(
    history: ValidationHistoryStore,
    repo: GitRepository,
    state: TreeState,
    result: ValidationResult,
    settings: Settings,
) -> None:
    try:
        stability = check_worktree_stability(
            state.address, repo.root, timeout=settings.cache.timeout_secs
        )
    except AddressingError as error:
        LOGGER.info("History disabled: %s", error)
        return
    if not stability.stable:
        typer.echo("Warning: files changed during validation; result not recorded.", err=True)
        return

    previous = history.read_history(state.address)
    recorded = history.record_validation(
        state.address, result, repo=repo, submodules=state.submodules
    )
    if not recorded.recorded:
        LOGGER.info("Validation history not recorded: %s", recorded.reason)
    warning = detect_flakiness(previous, result)
    if warning:
        typer.echo(warning, err=True)


# -------------------------------------------------------------------- commands
@app.command()
def address(
    submodules: bool = typer.Option(
        False,
        "--submodules",
        help="Include the addresses of initialised submodules.",
    ),
    config: str = _config_option(),
) -> None:
    """Print the content address of the current working copy."""
    settings = _load_settings(config)
    try:
        if submodules:
            state = compute_tree_state(Path.cwd(), timeout=settings.cache.timeout_secs)
            _echo_yaml({"tree_address": state.address, "submodules": dict(state.submodules)})
            return
        typer.echo(compute_address(Path.cwd(), timeout=settings.cache.timeout_secs))
    except AddressingError as error:
        typer.echo(str(error), err=True)
        raise typer.Exit(code=1) from error


@app.command()
def run(
    command: str = typer.Argument(..., help="Shell command to run (quote it)."),
    workdir: str = typer.Option(
        "",
        "--workdir",
        "-w",
        help="Directory relative to the repository root to run the command in.",
    ),
    force: bool = typer.Option(
        False,
        "--force",
        help="Ignore any cached result; still cache a successful run.",
    ),
    check: bool = typer.Option(
        False,
        "--check",
        help="Only report whether a cached result exists (exit 0 hit, 1 miss).",
    ),
    config: str = _config_option(),
) -> None:
    """Run a command, reusing the cached result for unchanged content."""
    if force and check:
        raise typer.BadParameter("--force and --check cannot be combined.")
    settings = _load_settings(config)
    mode = CacheMode.FORCE if force else CacheMode.CHECK if check else CacheMode.NORMAL

    repo = _open_repository(settings)
    root = repo.root if repo is not None else Path.cwd()
    tree_address: Optional[str] = None
    if repo is not None:
        try:
            tree_address = compute_address(root, timeout=settings.cache.timeout_secs)
        except AddressingError as error:
            LOGGER.info("Caching disabled: %s", error)

    if repo is None:
        if check:
            typer.echo("Cache miss (no repository).")
            raise typer.Exit(code=1)
        execution = run_command(command, workdir, root=root)
        _echo_yaml({"cached": False, **execution.model_dump(mode="json", exclude_none=True)})
        raise typer.Exit(code=execution.exit_code)

    outcome = _run_cache(repo, settings).execute(
        tree_address,
        command,
        workdir,
        lambda: run_command(command, workdir, root=root),
        mode=mode,
    )
    if outcome.cached and outcome.entry is not None:
        _echo_yaml({"cached": True, **outcome.entry.model_dump(mode="json", exclude_none=True)})
        return
    if outcome.execution is None:
        typer.echo("Cache miss.")
        raise typer.Exit(code=1)
    _echo_yaml(
        {
            "cached": False,
            "tree_address": tree_address,
            **outcome.execution.model_dump(mode="json", exclude_none=True),
        }
    )
    raise typer.Exit(code=outcome.execution.exit_code)


@app.command()
def validate(
    force: bool = typer.Option(
        False,
        "--force",
        help="Run validation even when this content already passed.",
    ),
    as_yaml: bool = typer.Option(
        False,
        "--yaml",
        help="Print the full validation result as YAML.",
    ),
    config: str = _config_option(),
) -> None:
    """Run the configured validation phases and record the result in history."""
    settings = _load_settings(config)
    phases = phases_from_config(settings.validation)
    if not phases:
        typer.echo("No validation phases configured.", err=True)
        raise typer.Exit(code=1)

    repo = _require_repository(settings)
    history = _history(repo, settings)
    state: Optional[TreeState] = None
    try:
        state = compute_tree_state(repo.root, timeout=settings.cache.timeout_secs)
    except AddressingError as error:
        LOGGER.info("History disabled: %s", error)

    if state is not None and not force:
        cached = history.find_cached_run(state)
        if cached is not None and cached.passed:
            typer.echo(f"Validation passed (cached for tree {state.address[:12]}, run {cached.id}).")
            if as_yaml:
                _echo_yaml(cached.result.model_dump(mode="json", exclude_none=True))
            return

    result = run_validation(
        phases,
        repo.root,
        tree_address=state.address if state else "",
        fail_fast=settings.validation.fail_fast,
    )

    if state is not None:
        _record_validation(history, repo, state, result, settings)

    typer.echo(result.summary or ("Validation passed" if result.passed else "Validation failed"))
    if not result.passed and result.rerun_command:
        typer.echo(f"Rerun: {result.rerun_command}")
    if as_yaml:
        _echo_yaml(result.model_dump(mode="json", exclude_none=True))
    if not result.passed:
        raise typer.Exit(code=1)


# --------------------------------------------------------------------- history
@history_app.command("list")
def history_list(
    limit: int = typer.Option(20, "--limit", "-l", min=1, help="Maximum number of runs to show."),
    branch: Optional[str] = typer.Option(None, "--branch", "-b", help="Only show runs on this branch."),
    as_yaml: bool = typer.Option(False, "--yaml", help="Output YAML instead of a table."),
    config: str = _config_option(),
) -> None:
    """List recent validation runs across all tree addresses."""
    settings = _load_settings(config)
    history = _history(_require_repository(settings), settings)

    try:
        records = list(history.iter_records())
    except StorageError as error:
        typer.echo(f"Warning: validation history unavailable: {error}", err=True)
        records = []
    runs: List[Tuple[str, ValidationRun]] = [
        (record.tree_address, run) for record in records for run in record.runs
    ]
    if branch:
        runs = [item for item in runs if item[1].branch == branch]
    if not runs:
        typer.echo(f"No validation history found for branch: {branch}" if branch else "No validation history found")
        return
    runs.sort(key=lambda item: item[1].timestamp, reverse=True)
    shown = runs[:limit]

    if as_yaml:
        _echo_yaml(
            [
                {
                    "tree_address": tree_address,
                    **run.model_dump(mode="json", exclude_none=True, exclude={"result"}),
                }
                for tree_address, run in shown
            ]
        )
        return

    typer.echo(f"Validation History (showing {len(shown)} most recent)")
    for tree_address, run in shown:
        typer.echo(_format_run(tree_address, run))
    typer.echo(f"Total validation runs: {len(runs)}")
    typer.echo(f"Tree addresses tracked: {len(records)}")


@history_app.command("show")
def history_show(
    tree_address: Optional[str] = typer.Argument(
        None, help="Tree address to show (defaults to the current working copy)."
    ),
    as_yaml: bool = typer.Option(False, "--yaml", help="Output the full record as YAML."),
    config: str = _config_option(),
) -> None:
    """Show every retained run for one tree address."""
    settings = _load_settings(config)
    repo = _require_repository(settings)
    if tree_address is None:
        try:
            tree_address = compute_address(repo.root, timeout=settings.cache.timeout_secs)
        except AddressingError as error:
            typer.echo(str(error), err=True)
            raise typer.Exit(code=1) from error

    record = _history(repo, settings).read_history(tree_address)
    if not record.runs:
        typer.echo(f"No validation history for tree {tree_address}")
        return
    if as_yaml:
        _echo_yaml(record.model_dump(mode="json", exclude_none=True))
        return

    typer.echo(f"Validation History for Tree: {record.tree_address}")
    typer.echo(f"Total Runs: {len(record.runs)}")
    for index, item in enumerate(record.runs, start=1):
        typer.echo(f"Run #{index} ({item.id}):")
        typer.echo(f"  Timestamp: {item.timestamp.isoformat()}")
        typer.echo(f"  Status: {'PASSED' if item.passed else 'FAILED'}")
        typer.echo(f"  Duration: {item.duration_secs:.1f}s")
        typer.echo(f"  Branch: {item.branch}")
        typer.echo(f"  Commit: {item.head_commit}")
        typer.echo(f"  Uncommitted Changes: {'yes' if item.dirty else 'no'}")
        for phase in item.result.phases or []:
            mark = "ok" if phase.passed else "FAILED"
            typer.echo(f"    [{mark}] {phase.name} ({phase.duration_secs:.1f}s)")


@history_app.command("prune")
def history_prune(
    older_than: float = typer.Option(
        DEFAULT_PRUNE_DAYS,
        "--older-than",
        min=0,
        help="Remove tree addresses whose newest run is older than N days.",
    ),
    prune_everything: bool = typer.Option(False, "--all", help="Remove all history."),
    dry_run: bool = typer.Option(False, "--dry-run", help="Report without deleting."),
    config: str = _config_option(),
) -> None:
    """Remove old validation history."""
    settings = _load_settings(config)
    history = _history(_require_repository(settings), settings)

    if prune_everything:
        result = history.prune_all(dry_run=dry_run)
    else:
        result = history.prune_by_age(older_than, dry_run=dry_run)

    if result.notes_pruned == 0:
        typer.echo("No history to prune" if prune_everything else f"No history older than {older_than:g} days found")
        return
    typer.echo(f"{'Would prune' if dry_run else 'Pruned'} {result.notes_pruned} tree addresses")
    typer.echo(f"{'Would remove' if dry_run else 'Removed'} {result.runs_pruned} validation runs")
    if not prune_everything:
        typer.echo(f"Remaining: {result.notes_remaining} tree addresses")
    if dry_run:
        typer.echo("Run without --dry-run to delete.")


@history_app.command("health")
def history_health(config: str = _config_option()) -> None:
    """Check whether the history should be pruned."""
    settings = _load_settings(config)
    report = _history(_require_repository(settings), settings).check_health()
    typer.echo(f"Total tree addresses: {report.total_notes}")
    typer.echo(
        f"Old notes (>{settings.history.retention.warn_after_days} days): {report.old_notes_count}"
    )
    if report.should_warn and report.warning_message:
        typer.echo(report.warning_message)
    else:
        typer.echo("History is healthy")


# ----------------------------------------------------------------------- cache
@cache_app.command("list")
def cache_list(
    tree_address: Optional[str] = typer.Option(
        None, "--address", help="Only list entries for this tree address."
    ),
    config: str = _config_option(),
) -> None:
    """List cached command results, newest first."""
    settings = _load_settings(config)
    entries = _run_cache(_require_repository(settings), settings).list_entries(tree_address)
    if not entries:
        typer.echo("Run cache is empty")
        return
    _echo_yaml([entry.model_dump(mode="json", exclude_none=True) for entry in entries])


@cache_app.command("prune")
def cache_prune(
    dry_run: bool = typer.Option(False, "--dry-run", help="Report without deleting."),
    config: str = _config_option(),
) -> None:
    """Remove every cached command result."""
    settings = _load_settings(config)
    result = _run_cache(_require_repository(settings), settings).prune_all(dry_run=dry_run)
    if result.notes_pruned == 0:
        typer.echo("Run cache is empty")
        return
    typer.echo(
        f"{'Would remove' if dry_run else 'Removed'} {result.notes_pruned} cached result(s) "
        f"across {len(result.pruned_addresses)} tree address(es)"
    )


if __name__ == "__main__":
    app()
