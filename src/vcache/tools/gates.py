"""Validation pipeline: configured phases of shell steps.

Phases run in order and every step inside a phase runs, so one report covers
all failures of that phase. With ``fail_fast`` the pipeline stops after the
first phase that failed.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List

import logging
import shlex
import tempfile
import time

from vcache.config import ValidationConfig
from vcache.memory.schema import CommandExecution, PhaseResult, StepResult, ValidationResult, utc_now

from .runner import failed_tests_of, read_combined_output, run_command

LOGGER = logging.getLogger(__name__)

StepRunner = Callable[..., CommandExecution]


@dataclass(slots=True)
class ValidationStep:
    """A named shell command run from ``workdir`` (relative to the workspace)."""

    name: str
    command: str
    workdir: str = ""

    def rerun_command(self) -> str:
        parts = ["vcache", "run", shlex.quote(self.command)]
        if self.workdir:
            parts.extend(["--workdir", shlex.quote(self.workdir)])
        return " ".join(parts)

    def run(self, root: Path, runner: StepRunner = run_command) -> StepResult:
        execution = runner(self.command, self.workdir, root=root)
        output = read_combined_output(execution)
        return StepResult(
            name=self.name,
            passed=execution.succeeded,
            duration_secs=execution.duration_secs,
            output=output or None,
            failed_tests=failed_tests_of(execution),
            extraction=execution.extraction,
        )


@dataclass(slots=True)
class ValidationPhase:
    """A group of steps reported together."""

    name: str
    steps: List[ValidationStep] = field(default_factory=list)


def phases_from_config(config: ValidationConfig) -> List[ValidationPhase]:
    """Expand configured phases into runnable :class:`ValidationPhase` objects."""

    return [
        ValidationPhase(
            name=phase.name,
            steps=[
                ValidationStep(name=step.name, command=step.command, workdir=step.workdir)
                for step in phase.steps
            ],
        )
        for phase in config.phases
    ]


def _write_full_log(sections: Sequence[tuple[str, str]]) -> str:
    handle = tempfile.NamedTemporaryFile(
        "w", prefix="vcache-validate-", suffix=".log", delete=False, encoding="utf-8"
    )
    with handle:
        for name, output in sections:
            handle.write(f"=== {name} ===\n")
            handle.write(output)
            if not output.endswith("\n"):
                handle.write("\n")
    return handle.name


def run_validation(
    phases: Sequence[ValidationPhase],
    root: Path | str,
    *,
    tree_address: str = "",
    fail_fast: bool = True,
    runner: StepRunner = run_command,
) -> ValidationResult:
    """Run ``phases`` sequentially and return the structured result."""

    workspace = Path(root).resolve()
    started_at = utc_now()
    phase_results: List[PhaseResult] = []
    sections: List[tuple[str, str]] = []
    first_failure: tuple[ValidationStep, StepResult] | None = None

    for phase in phases:
        phase_started = time.perf_counter()
        steps: List[StepResult] = []
        for step in phase.steps:
            LOGGER.debug("Running step %s (%s)", step.name, step.command)
            step_result = step.run(workspace, runner)
            steps.append(step_result)
            sections.append((step.name, step_result.output or ""))
            if not step_result.passed and first_failure is None:
                first_failure = (step, step_result)
        phase_result = PhaseResult(
            name=phase.name,
            passed=all(step.passed for step in steps),
            duration_secs=round(time.perf_counter() - phase_started, 3),
            steps=steps,
        )
        phase_results.append(phase_result)
        if fail_fast and not phase_result.passed:
            break

    passed = first_failure is None
    result = ValidationResult(
        passed=passed,
        timestamp=started_at,
        tree_address=tree_address,
        phases=phase_results,
        full_log_file=_write_full_log(sections) if sections else None,
    )
    if passed:
        result.summary = "Validation passed"
        return result

    step, step_result = first_failure
    result.failed_step = step.name
    result.rerun_command = step.rerun_command()
    result.failed_step_output = step_result.output
    result.failed_tests = list(step_result.failed_tests)
    result.summary = f"Validation failed at step: {step.name}"
    return result


__all__ = [
    "ValidationPhase",
    "ValidationStep",
    "phases_from_config",
    "run_validation",
]
