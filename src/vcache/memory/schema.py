"""Typed records persisted in the run cache and validation history notes."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, Any, Dict, List, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


UtcDatetime = Annotated[datetime, AfterValidator(_as_utc)]


class RecordModel(BaseModel):
    """Base Pydantic model for stored payloads.

    Unknown keys are ignored so notes written by newer releases stay readable.
    """

    model_config = ConfigDict(extra="ignore", frozen=False)


class OutputFiles(RecordModel):
    """Paths of the log files captured for one command execution."""

    stdout: Optional[str] = None
    stderr: Optional[str] = None
    combined: Optional[str] = None


class CommandExecution(RecordModel):
    """Outcome of running one command, as supplied by the process runner."""

    command: str
    workdir: str = ""
    exit_code: int
    duration_secs: float = 0.0
    output_files: Optional[OutputFiles] = None
    extraction: Optional[Dict[str, Any]] = None

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0


class RunCacheEntry(RecordModel):
    """Cached result of one successful command execution."""

    tree_address: str
    command: str
    workdir: str = ""
    timestamp: UtcDatetime = Field(default_factory=utc_now)
    exit_code: int
    duration_secs: float = 0.0
    output_files: Optional[OutputFiles] = None
    extraction: Optional[Dict[str, Any]] = None


class StepResult(RecordModel):
    """Outcome of one validation step."""

    name: str
    passed: bool
    duration_secs: float = 0.0
    output: Optional[str] = None
    output_truncated_bytes: Optional[int] = None
    failed_tests: List[str] = Field(default_factory=list)
    extraction: Optional[Dict[str, Any]] = None


class PhaseResult(RecordModel):
    """Outcome of a validation phase (a group of steps)."""

    name: str
    passed: bool
    duration_secs: float = 0.0
    steps: List[StepResult] = Field(default_factory=list)
    output: Optional[str] = None


class ValidationResult(RecordModel):
    """Full structured result of one validation pipeline run."""

    passed: bool
    timestamp: UtcDatetime = Field(default_factory=utc_now)
    tree_address: str = ""
    phases: Optional[List[PhaseResult]] = None
    failed_step: Optional[str] = None
    rerun_command: Optional[str] = None
    failed_step_output: Optional[str] = None
    failed_step_output_truncated_bytes: Optional[int] = None
    failed_tests: List[str] = Field(default_factory=list)
    full_log_file: Optional[str] = None
    summary: Optional[str] = None

    def iter_steps(self) -> List[StepResult]:
        """Return every step across all phases in execution order."""
        return [step for phase in self.phases or [] for step in phase.steps]


class ValidationRun(RecordModel):
    """One entry in the validation history of a tree address."""

    id: str
    timestamp: UtcDatetime
    duration_secs: float = 0.0
    passed: bool
    branch: str = "unknown"
    head_commit: str = "none"
    dirty: bool = False
    submodule_hashes: Dict[str, str] = Field(default_factory=dict)
    result: ValidationResult


class HistoryRecord(RecordModel):
    """All retained validation runs for a tree address, oldest first."""

    tree_address: str
    runs: List[ValidationRun] = Field(default_factory=list)

    @property
    def latest(self) -> Optional[ValidationRun]:
        return self.runs[-1] if self.runs else None


class RecordResult(RecordModel):
    """Outcome of appending a run to the history."""

    recorded: bool
    tree_address: str
    reason: Optional[str] = None


class PruneResult(RecordModel):
    """Summary of a pruning pass."""

    notes_pruned: int = 0
    runs_pruned: int = 0
    notes_remaining: int = 0
    pruned_addresses: List[str] = Field(default_factory=list)


class HealthReport(RecordModel):
    """Retention health of the validation history."""

    total_notes: int
    old_notes_count: int
    should_warn: bool
    warning_message: Optional[str] = None


__all__ = [
    "CommandExecution",
    "HealthReport",
    "HistoryRecord",
    "OutputFiles",
    "PhaseResult",
    "PruneResult",
    "RecordModel",
    "RecordResult",
    "RunCacheEntry",
    "StepResult",
    "UtcDatetime",
    "ValidationResult",
    "ValidationRun",
    "utc_now",
]
