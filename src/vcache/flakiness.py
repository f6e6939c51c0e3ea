"""Detect validation steps that fail and pass on identical content."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from vcache.memory.schema import HistoryRecord, ValidationResult

__all__ = ["FlakyStep", "detect_flakiness", "find_flaky_steps", "format_flakiness_warning"]


@dataclass(slots=True, frozen=True)
class FlakyStep:
    name: str
    failed_at: datetime
    passed_at: datetime


def _timestamp(value: datetime) -> str:
    return value.isoformat().replace("+00:00", "Z")


def find_flaky_steps(
    previous: ValidationResult,
    current: ValidationResult,
    *,
    failed_at: datetime | None = None,
    passed_at: datetime | None = None,
) -> List[FlakyStep]:
    """Return steps that failed in ``previous`` and pass in ``current``.

    Steps missing from either side, and steps whose outcome did not change,
    are not flaky. Without phase data on both sides nothing can be compared.
    """

    if previous.phases is None or current.phases is None:
        return []

    before = {step.name: step for step in previous.iter_steps()}
    flaky: List[FlakyStep] = []
    for step in current.iter_steps():
        earlier = before.get(step.name)
        if earlier is None:
            continue
        if not earlier.passed and step.passed:
            flaky.append(FlakyStep(step.name, failed_at or previous.timestamp, passed_at or current.timestamp))
    return flaky


def format_flakiness_warning(steps: List[FlakyStep]) -> str:
    lines = [
        "Validation passed, but failed on previous run without code changes.",
        "",
        "    Failed steps from previous run:",
    ]
    for step in steps:
        lines.append(
            f"    - {step.name} (failed {_timestamp(step.failed_at)}, passed {_timestamp(step.passed_at)})"
        )
    lines.extend(
        [
            "",
            "    This may indicate flaky tests. Consider investigating:",
            "    - Non-deterministic test behavior",
            "    - System resource contention",
            "    - External dependency issues",
        ]
    )
    return "\n".join(lines)


def detect_flakiness(history: HistoryRecord, current: ValidationResult) -> Optional[str]:
    """Return a warning when ``current`` passes where the latest recorded run failed.

    Only the most recent run (``runs[-1]``) is compared. Returns ``None`` when
    there is no prior run, the current result failed, the latest run passed,
    or no individual step flipped from failing to passing.
    """

    latest = history.latest
    if latest is None or not current.passed or latest.passed:
        return None

    steps = find_flaky_steps(latest.result, current, failed_at=latest.timestamp)
    if not steps:
        return None
    return format_flakiness_warning(steps)
