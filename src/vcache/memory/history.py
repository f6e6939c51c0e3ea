"""Bounded, concurrency-safe validation history per tree address.

Each tree address owns one note in the history namespace holding a
:class:`HistoryRecord`. New runs are appended at the end, so the most recent
run is always ``runs[-1]``. Appends go through :meth:`NoteStore.merge_write`:
the merge function re-reads whatever record is current at commit time and
appends to *that*, which means two processes appending concurrently both
end up in the stored history.

History is an audit side channel. Nothing in this module raises on storage
trouble; failures are reported through :class:`RecordResult` and empty reads.
"""

from __future__ import annotations

import logging
import time
import uuid
from datetime import datetime, timedelta
from typing import Callable, Iterator, List, Optional

from vcache.config import HistoryConfig, RetentionPolicy
from vcache.errors import ConflictExhaustedError, CorruptEntryError, StorageError
from vcache.tools.tree_address import TreeState
from vcache.tools.vcs import GitError, GitRepository
from vcache.utils.truncate import truncate_validation_output

from .codec import dump_history_record, load_history_record
from .notes import MergeFunction, NoteStore
from .schema import (
    HealthReport,
    HistoryRecord,
    PruneResult,
    RecordResult,
    ValidationResult,
    ValidationRun,
    utc_now,
)

LOGGER = logging.getLogger(__name__)

DEFAULT_HISTORY_REF = "vcache/history/validate"

__all__ = ["DEFAULT_HISTORY_REF", "ValidationHistoryStore", "new_run_id"]


def new_run_id() -> str:
    """Return a run identifier unique across concurrent writers."""
    return f"run-{int(time.time() * 1000)}-{uuid.uuid4().hex[:6]}"


class ValidationHistoryStore:
    """Append-only, retention-bounded log of validation runs per tree address."""

    def __init__(
        self,
        store: NoteStore,
        *,
        notes_ref: str = DEFAULT_HISTORY_REF,
        policy: RetentionPolicy | None = None,
        enabled: bool = True,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.notes_ref = notes_ref.strip("/")
        self.policy = policy or RetentionPolicy()
        self.enabled = enabled
        self._clock = clock

    @classmethod
    def from_config(cls, store: NoteStore, config: HistoryConfig) -> "ValidationHistoryStore":
        return cls(
            store,
            notes_ref=config.notes_ref,
            policy=config.retention,
            enabled=config.enabled,
        )

    # --------------------------------------------------------------- writing
    def _retain(self, runs: List[ValidationRun]) -> List[ValidationRun]:
        """Truncate outputs and keep only the newest ``max_runs_per_tree`` runs."""
        budget = self.policy.max_output_bytes
        bounded = [
            run.model_copy(update={"result": truncate_validation_output(run.result, budget)})
            for run in runs
        ]
        return bounded[-self.policy.max_runs_per_tree:]

    def _append_merge(self, address: str, run: ValidationRun) -> MergeFunction:
        def merge(current: Optional[str]) -> str:
            record = HistoryRecord(tree_address=address)
            if current is not None:
                try:
                    record = load_history_record(current, address)
                except CorruptEntryError as error:
                    LOGGER.warning("Replacing unreadable history note for %s: %s", address, error)
            record.runs = self._retain([*record.runs, run])
            return dump_history_record(record)

        return merge

    def append_run(self, address: str, run: ValidationRun) -> RecordResult:
        """Append ``run`` to the history of ``address``.

        Never raises: failures come back as ``recorded=False`` with a reason.
        """

        if not self.enabled:
            return RecordResult(recorded=False, tree_address=address, reason="history disabled")

        prepared = run.model_copy(
            update={"result": truncate_validation_output(run.result, self.policy.max_output_bytes)}
        )
        try:
            self.store.merge_write(self.notes_ref, address, self._append_merge(address, prepared))
        except ConflictExhaustedError as error:
            LOGGER.warning("History not recorded (sustained contention): %s", error)
            return RecordResult(
                recorded=False,
                tree_address=address,
                reason=f"conflict retries exhausted: {error}",
            )
        except StorageError as error:
            LOGGER.warning("History not recorded: %s", error)
            return RecordResult(recorded=False, tree_address=address, reason=str(error))
        except ValueError as error:
            return RecordResult(recorded=False, tree_address=address, reason=str(error))
        return RecordResult(recorded=True, tree_address=address)

    def record_validation(
        self,
        address: str,
        result: ValidationResult,
        *,
        repo: GitRepository | None = None,
        submodules: dict[str, str] | None = None,
    ) -> RecordResult:
        """Build a :class:`ValidationRun` from ``result`` plus git metadata and append it."""

        branch, head_commit, dirty = "unknown", "unknown", False
        if repo is not None:
            try:
                branch = repo.current_branch() or "detached"
                head_commit = repo.head_commit() or "none"
                dirty = repo.has_changes()
            except GitError as error:
                LOGGER.debug("Git metadata unavailable for history: %s", error)

        run = ValidationRun(
            id=new_run_id(),
            timestamp=self._clock(),
            duration_secs=sum(phase.duration_secs for phase in result.phases or []),
            passed=result.passed,
            branch=branch,
            head_commit=head_commit,
            dirty=dirty,
            submodule_hashes=dict(submodules or {}),
            result=result,
        )
        return self.append_run(address, run)

    # --------------------------------------------------------------- reading
    def read_history(self, address: str) -> HistoryRecord:
        """Return the history of ``address``; an empty record when none is readable."""

        empty = HistoryRecord(tree_address=address)
        try:
            payload = self.store.read(self.notes_ref, address)
        except StorageError as error:
            LOGGER.warning("History unavailable: %s", error)
            return empty
        except ValueError as error:
            LOGGER.debug("History lookup skipped: %s", error)
            return empty
        if payload is None:
            return empty
        try:
            return load_history_record(payload, address)
        except CorruptEntryError as error:
            LOGGER.warning("Ignoring unreadable history note for %s: %s", address, error)
            return empty

    def iter_records(self) -> Iterator[HistoryRecord]:
        """Yield every stored record; unreadable notes come back with no runs."""

        for address, payload in self.store.list(self.notes_ref):
            try:
                yield load_history_record(payload, address)
            except CorruptEntryError as error:
                LOGGER.warning("Unreadable history note for %s: %s", address, error)
                yield HistoryRecord(tree_address=address)

    def _load_all(self) -> Optional[List[HistoryRecord]]:
        try:
            return list(self.iter_records())
        except StorageError as error:
            LOGGER.warning("History unavailable: %s", error)
            return None

    def find_cached_run(self, state: TreeState) -> Optional[ValidationRun]:
        """Return the newest run for ``state.address`` whose submodules match ``state``."""

        record = self.read_history(state.address)
        for run in reversed(record.runs):
            if run.submodule_hashes == state.submodules:
                return run
        return None

    # --------------------------------------------------------------- pruning
    def _prune_merge(self, address: str, should_prune: Callable[[HistoryRecord], bool]) -> MergeFunction:
        def merge(current: Optional[str]) -> Optional[str]:
            if current is None:
                return None
            try:
                record = load_history_record(current, address)
            except CorruptEntryError:
                record = HistoryRecord(tree_address=address)
            return None if should_prune(record) else current

        return merge

    def _prune(self, should_prune: Callable[[HistoryRecord], bool], dry_run: bool) -> PruneResult:
        records = self._load_all()
        result = PruneResult()
        if records is None:
            return result

        failures = 0
        for record in records:
            if not should_prune(record):
                continue
            if not dry_run:
                # Re-judged against the note current at commit time.
                merge = self._prune_merge(record.tree_address, should_prune)
                try:
                    kept = self.store.merge_write(self.notes_ref, record.tree_address, merge)
                except (StorageError, ValueError) as error:
                    failures += 1
                    LOGGER.debug("Failed to prune history for %s: %s", record.tree_address, error)
                else:
                    if kept is not None:
                        LOGGER.info("History for %s changed while pruning; kept", record.tree_address)
                        continue
            result.notes_pruned += 1
            result.runs_pruned += len(record.runs)
            result.pruned_addresses.append(record.tree_address)

        if failures:
            LOGGER.warning("%d history note(s) could not be removed", failures)
        result.notes_remaining = len(records) - result.notes_pruned
        return result

    def prune_by_age(
        self,
        max_age_days: float,
        *,
        dry_run: bool = False,
        now: datetime | None = None,
    ) -> PruneResult:
        """Remove whole notes whose newest run is older than ``max_age_days``.

        A single recent run keeps the entire note. Notes without any readable
        run are treated as expired.
        """

        cutoff = (now or self._clock()) - timedelta(days=max_age_days)

        def expired(record: HistoryRecord) -> bool:
            latest = record.latest
            return latest is None or latest.timestamp < cutoff

        return self._prune(expired, dry_run)

    def prune_all(self, *, dry_run: bool = False) -> PruneResult:
        """Remove every history note."""

        return self._prune(lambda _record: True, dry_run)

    # ---------------------------------------------------------------- health
    def check_health(self, *, now: datetime | None = None) -> HealthReport:
        """Report whether the history has outgrown the retention warn thresholds."""

        records = self._load_all() or []
        warn_days = self.policy.warn_after_days
        cutoff = (now or self._clock()) - timedelta(days=warn_days)
        old_count = sum(
            1 for record in records if record.latest is not None and record.latest.timestamp < cutoff
        )
        total = len(records)
        too_many = total > self.policy.warn_after_count
        too_old = old_count > 0

        lines: List[str] = []
        if too_many:
            lines.append(f"Validation history has grown large ({total} tree addresses)")
        if too_old:
            lines.append(f"{old_count} tree address(es) have no runs in the last {warn_days} days")
        if lines:
            lines.append(f"Consider pruning: vcache history prune --older-than {warn_days}")

        return HealthReport(
            total_notes=total,
            old_notes_count=old_count,
            should_warn=too_many or too_old,
            warning_message="\n".join(lines) if lines else None,
        )
