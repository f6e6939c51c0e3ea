from __future__ import annotations

import os
import subprocess
import sys
import textwrap
from datetime import datetime, timedelta, timezone
from typing import Optional

import yaml

from conftest import SRC, make_result, make_run
from vcache.config import HistoryConfig, RetentionPolicy
from vcache.errors import StorageError
from vcache.memory.codec import dump_history_record
from vcache.memory.history import ValidationHistoryStore
from vcache.memory.notes import GitNoteStore, MemoryNoteStore
from vcache.memory.schema import HistoryRecord
from vcache.tools.tree_address import TreeState, compute_address

ADDR = "e" * 40
OTHER_ADDR = "f" * 40
NS = "vcache/history/validate"
NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


def _history(store=None, **policy) -> ValidationHistoryStore:
    return ValidationHistoryStore(
        store or MemoryNoteStore(),
        policy=RetentionPolicy(**policy),
        clock=lambda: NOW,
    )


class FlakyRemoveStore(MemoryNoteStore):
    """Fails every write to one specific address once it holds a note."""

    def __init__(self, failing: str) -> None:
        super().__init__()
        self.failing = failing

    def merge_write(self, namespace, address, merge, **kwargs):
        if address == self.failing and self.read(namespace, address) is not None:
            raise StorageError("remove failed")
        return super().merge_write(namespace, address, merge, **kwargs)


def test_append_and_read_keeps_order() -> None:
    history = _history()

    assert history.append_run(ADDR, make_run("run-1")).recorded
    assert history.append_run(ADDR, make_run("run-2")).recorded

    record = history.read_history(ADDR)
    assert [run.id for run in record.runs] == ["run-1", "run-2"]
    assert record.latest is not None and record.latest.id == "run-2"


def test_read_missing_history_is_empty() -> None:
    record = _history().read_history(ADDR)

    assert record.tree_address == ADDR
    assert record.runs == []


def test_retention_evicts_oldest_first() -> None:
    history = _history(max_runs_per_tree=3)

    for index in range(4):
        history.append_run(ADDR, make_run(f"run-{index}"))

    assert [run.id for run in history.read_history(ADDR).runs] == ["run-1", "run-2", "run-3"]


def test_output_is_truncated_with_marker() -> None:
    history = _history(max_output_bytes=100)
    run = make_run("run-1", passed=False, steps={"Unit": False}, output="x" * 500)

    history.append_run(ADDR, run)

    step = history.read_history(ADDR).runs[0].result.phases[0].steps[0]
    assert step.output.startswith("x" * 100)
    assert "[... truncated 400 bytes]" in step.output
    assert step.output_truncated_bytes == 400


def test_concurrent_appends_keep_both_runs() -> None:
    """An append that races another append re-reads and keeps both."""

    store = MemoryNoteStore()
    history = _history(store)
    history.append_run(ADDR, make_run("run-0"))
    interleaved = {"done": False}

    original_merge_write = store.merge_write

    def racing_merge_write(namespace, address, merge, **kwargs):
        def wrapped(current: Optional[str]) -> Optional[str]:
            if not interleaved["done"]:
                interleaved["done"] = True
                # A second process appends after our snapshot was taken.
                assert history.append_run(ADDR, make_run("run-other")).recorded
            return merge(current)

        return original_merge_write(namespace, address, wrapped, **kwargs)

    store.merge_write = racing_merge_write  # type: ignore[method-assign]
    result = history.append_run(ADDR, make_run("run-mine"))

    assert result.recorded
    ids = [run.id for run in history.read_history(ADDR).runs]
    assert ids == ["run-0", "run-other", "run-mine"]


def test_conflict_exhaustion_is_reported_not_raised() -> None:
    store = MemoryNoteStore(max_attempts=2)
    history = _history(store)

    original_merge_write = store.merge_write

    interference = iter(range(100))

    def always_conflicting(namespace, address, merge, **kwargs):
        def wrapped(current: Optional[str]) -> Optional[str]:
            marker = f"interference {next(interference)}\n"
            original_merge_write(namespace, OTHER_ADDR, lambda _current: marker)
            return merge(current)

        return original_merge_write(namespace, address, wrapped, **kwargs)

    store.merge_write = always_conflicting  # type: ignore[method-assign]
    result = history.append_run(ADDR, make_run("run-1"))

    assert result.recorded is False
    assert result.reason and "conflict" in result.reason


def test_storage_failure_is_reported_not_raised() -> None:
    class BrokenStore(MemoryNoteStore):
        def _snapshot(self, namespace, address):
            raise StorageError("git notes unavailable")

        def read(self, namespace, address):
            raise StorageError("git notes unavailable")

    history = _history(BrokenStore())

    result = history.append_run(ADDR, make_run("run-1"))
    assert result.recorded is False
    assert "unavailable" in (result.reason or "")
    assert history.read_history(ADDR).runs == []


def test_invalid_address_is_reported() -> None:
    result = _history().append_run("not an address", make_run("run-1"))

    assert result.recorded is False
    assert result.reason


def test_disabled_history_records_nothing() -> None:
    store = MemoryNoteStore()
    history = ValidationHistoryStore.from_config(store, HistoryConfig(enabled=False))

    result = history.append_run(ADDR, make_run("run-1"))

    assert result.recorded is False
    assert list(store.list(NS)) == []


def test_corrupt_run_is_dropped_and_siblings_survive() -> None:
    store = MemoryNoteStore()
    good = make_run("run-good")
    payload = {
        "tree_address": ADDR,
        "runs": [
            good.model_dump(mode="json", exclude_none=True),
            {"id": "run-bad", "timestamp": NOW.isoformat(), "passed": True},
        ],
    }
    store.write(NS, ADDR, yaml.safe_dump(payload, sort_keys=False))

    record = _history(store).read_history(ADDR)

    assert [run.id for run in record.runs] == ["run-good"]


def test_unparseable_note_reads_as_empty_and_is_replaced_on_append() -> None:
    store = MemoryNoteStore()
    store.write(NS, ADDR, "- just\n- a list\n")
    history = _history(store)

    assert history.read_history(ADDR).runs == []
    assert history.append_run(ADDR, make_run("run-1")).recorded
    assert [run.id for run in history.read_history(ADDR).runs] == ["run-1"]


def _seed_ages(history: ValidationHistoryStore) -> None:
    history.append_run(ADDR, make_run("old-1", timestamp=NOW - timedelta(days=200)))
    history.append_run(ADDR, make_run("old-2", timestamp=NOW - timedelta(days=120)))
    history.append_run(OTHER_ADDR, make_run("old-3", timestamp=NOW - timedelta(days=200)))
    history.append_run(OTHER_ADDR, make_run("recent", timestamp=NOW - timedelta(days=1)))


def test_prune_by_age_judges_only_the_newest_run() -> None:
    history = _history()
    _seed_ages(history)

    result = history.prune_by_age(90, now=NOW)

    assert result.notes_pruned == 1
    assert result.runs_pruned == 2
    assert result.notes_remaining == 1
    assert result.pruned_addresses == [ADDR]
    assert history.read_history(ADDR).runs == []
    assert [run.id for run in history.read_history(OTHER_ADDR).runs] == ["old-3", "recent"]


def test_prune_dry_run_matches_real_run_without_changes() -> None:
    history = _history()
    _seed_ages(history)

    preview = history.prune_by_age(90, dry_run=True, now=NOW)

    assert len(history.read_history(ADDR).runs) == 2
    actual = history.prune_by_age(90, now=NOW)
    assert preview == actual


def test_prune_counts_failed_removals_and_continues() -> None:
    store = FlakyRemoveStore(failing=ADDR)
    history = _history(store)
    history.append_run(ADDR, make_run("a", timestamp=NOW - timedelta(days=200)))
    history.append_run(OTHER_ADDR, make_run("b", timestamp=NOW - timedelta(days=200)))

    result = history.prune_all()

    assert result.notes_pruned == 2
    assert result.runs_pruned == 2
    assert history.read_history(OTHER_ADDR).runs == []
    assert len(history.read_history(ADDR).runs) == 1


def test_prune_keeps_note_that_gained_a_fresh_run() -> None:
    """A run appended after pruning listed the notes survives the removal."""

    store = MemoryNoteStore()
    history = _history(store)
    history.append_run(ADDR, make_run("stale", timestamp=NOW - timedelta(days=200)))
    interleaved = {"done": False}

    original_merge_write = store.merge_write

    def racing_merge_write(namespace, address, merge, **kwargs):
        def wrapped(current: Optional[str]) -> Optional[str]:
            if not interleaved["done"]:
                interleaved["done"] = True
                # Another process records a run after the expired list was read.
                assert history.append_run(ADDR, make_run("fresh", timestamp=NOW)).recorded
            return merge(current)

        return original_merge_write(namespace, address, wrapped, **kwargs)

    store.merge_write = racing_merge_write  # type: ignore[method-assign]
    result = history.prune_by_age(90, now=NOW)

    assert interleaved["done"]
    assert result.notes_pruned == 0
    assert result.pruned_addresses == []
    assert result.notes_remaining == 1
    assert [run.id for run in history.read_history(ADDR).runs] == ["stale", "fresh"]


def test_prune_keeps_note_refreshed_before_removal() -> None:
    class AppendingStore(MemoryNoteStore):
        """Records a fresh run right before the first removal of ``ADDR``."""

        history: Optional[ValidationHistoryStore] = None

        def merge_write(self, namespace, address, merge, **kwargs):
            if self.history is not None and address == ADDR:
                pending, self.history = self.history, None
                assert pending.append_run(ADDR, make_run("fresh", timestamp=NOW)).recorded
            return super().merge_write(namespace, address, merge, **kwargs)

    store = AppendingStore()
    history = _history(store)
    history.append_run(ADDR, make_run("stale", timestamp=NOW - timedelta(days=200)))
    history.append_run(OTHER_ADDR, make_run("gone", timestamp=NOW - timedelta(days=200)))
    store.history = history

    result = history.prune_by_age(90, now=NOW)

    assert result.pruned_addresses == [OTHER_ADDR]
    assert [run.id for run in history.read_history(ADDR).runs] == ["stale", "fresh"]
    assert history.read_history(OTHER_ADDR).runs == []


def test_records_without_valid_runs_are_pruned_by_age() -> None:
    store = MemoryNoteStore()
    store.write(NS, ADDR, dump_history_record(HistoryRecord(tree_address=ADDR)))
    history = _history(store)

    result = history.prune_by_age(30, now=NOW)

    assert result.pruned_addresses == [ADDR]


def test_health_check_warns_about_old_notes() -> None:
    history = _history(warn_after_days=30)
    history.append_run(ADDR, make_run("old", timestamp=NOW - timedelta(days=45)))
    history.append_run(OTHER_ADDR, make_run("new", timestamp=NOW))

    report = history.check_health(now=NOW)

    assert report.total_notes == 2
    assert report.old_notes_count == 1
    assert report.should_warn
    assert "prune" in (report.warning_message or "")


def test_health_check_quiet_when_healthy() -> None:
    history = _history()
    history.append_run(ADDR, make_run("new", timestamp=NOW))

    report = history.check_health(now=NOW)

    assert report.should_warn is False
    assert report.warning_message is None


def test_find_cached_run_matches_submodules() -> None:
    history = _history()
    history.append_run(ADDR, make_run("with-sub", submodules={"libs/core": "1" * 40}))
    history.append_run(ADDR, make_run("plain"))

    assert history.find_cached_run(TreeState(ADDR)).id == "plain"
    assert history.find_cached_run(TreeState(ADDR, {"libs/core": "1" * 40})).id == "with-sub"
    assert history.find_cached_run(TreeState(ADDR, {"libs/core": "2" * 40})) is None


def test_record_validation_captures_git_metadata(sample_repo) -> None:
    store = GitNoteStore(sample_repo.repo, retry_delay=0.0)
    history = ValidationHistoryStore(store)
    address = compute_address(sample_repo.root)

    outcome = history.record_validation(address, make_result(True, {"Unit": True}), repo=sample_repo.repo)

    assert outcome.recorded, outcome.reason
    run = history.read_history(address).runs[-1]
    assert run.id.startswith("run-")
    assert run.branch == "main"
    assert run.head_commit == sample_repo.git("rev-parse", "HEAD").strip()
    assert run.dirty is False
    assert run.duration_secs == 2.0
    assert run.passed is True


def test_record_validation_without_repository() -> None:
    history = _history()

    history.record_validation(ADDR, make_result(False, {"Unit": False}))

    run = history.read_history(ADDR).runs[-1]
    assert run.branch == "unknown"
    assert run.timestamp == NOW
    assert run.passed is False


APPENDER = textwrap.dedent(
    """
    import sys
    from datetime import datetime, timezone

    from vcache.memory.history import ValidationHistoryStore
    from vcache.memory.notes import GitNoteStore
    from vcache.memory.schema import ValidationResult, ValidationRun
    from vcache.tools.vcs import GitRepository

    root, address, worker, count = sys.argv[1:5]
    store = GitNoteStore(GitRepository(root), max_attempts=10, retry_delay=0.05)
    history = ValidationHistoryStore(store)
    for index in range(int(count)):
        moment = datetime.now(timezone.utc)
        run = ValidationRun(
            id=f"{worker}-{index}",
            timestamp=moment,
            passed=True,
            result=ValidationResult(passed=True, timestamp=moment),
        )
        if history.append_run(address, run).recorded:
            print(run.id)
    """
)


def test_appends_from_separate_processes_lose_no_recorded_run(sample_repo) -> None:
    address = compute_address(sample_repo.root)
    env = {**os.environ, "PYTHONPATH": os.pathsep.join([str(SRC), os.environ.get("PYTHONPATH", "")])}
    workers = [
        subprocess.Popen(
            [sys.executable, "-c", APPENDER, str(sample_repo.root), address, name, "4"],
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            env=env,
        )
        for name in ("left", "right")
    ]
    recorded = []
    for worker in workers:
        stdout, stderr = worker.communicate(timeout=120)
        assert worker.returncode == 0, stderr
        recorded.extend(stdout.split())

    history = ValidationHistoryStore(GitNoteStore(sample_repo.repo, retry_delay=0.0))
    stored = [run.id for run in history.read_history(address).runs]

    assert recorded
    assert sorted(stored) == sorted(recorded)
    for name in ("left", "right"):
        mine = [run_id for run_id in stored if run_id.startswith(f"{name}-")]
        assert mine == sorted(mine)
