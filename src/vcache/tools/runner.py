"""Shell command execution with captured log files."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Mapping

import logging
import os
import re
import subprocess
import tempfile
import time

from vcache.memory.schema import CommandExecution, OutputFiles
from vcache.utils.cache_key import normalise_command, normalise_workdir

LOGGER = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124
NOT_RUNNABLE_EXIT_CODE = 127

_FAILED_TEST_RE = re.compile(r"^(?:FAILED|ERROR)\s+(\S+::\S+)", re.MULTILINE)
_SUMMARY_RE = re.compile(
    r"(\d+)\s+(passed|failed|errors?|skipped|xfailed|xpassed|deselected)"
)


def _merge_env(extra: Mapping[str, str] | None) -> Dict[str, str]:
    env: Dict[str, str] = os.environ.copy()
    if extra:
        env.update({str(key): str(value) for key, value in extra.items()})
    return env


def extract_failures(output: str) -> Dict[str, Any] | None:
    """Pull failed test ids and pytest-style counts out of command output.

    Returns ``None`` when the output carries nothing recognisable.
    """

    failed = list(dict.fromkeys(_FAILED_TEST_RE.findall(output)))
    counts: Dict[str, int] = {}
    for line in output.splitlines()[-20:]:
        if "passed" not in line and "failed" not in line and "error" not in line:
            continue
        for number, label in _SUMMARY_RE.findall(line):
            key = "errors" if label.startswith("error") else label
            counts[key] = int(number)
    if not failed and not counts:
        return None
    extraction: Dict[str, Any] = {"failed_tests": failed}
    if counts:
        extraction["counts"] = counts
    return extraction


def _write_logs(log_dir: Path, stdout: str, stderr: str) -> OutputFiles:
    log_dir.mkdir(parents=True, exist_ok=True)
    stdout_path = log_dir / "stdout.log"
    stderr_path = log_dir / "stderr.log"
    combined_path = log_dir / "combined.log"
    stdout_path.write_text(stdout, encoding="utf-8")
    stderr_path.write_text(stderr, encoding="utf-8")
    combined_path.write_text(
        "\n".join(part for part in (stdout, stderr) if part), encoding="utf-8"
    )
    return OutputFiles(
        stdout=str(stdout_path),
        stderr=str(stderr_path),
        combined=str(combined_path),
    )


def read_combined_output(execution: CommandExecution) -> str:
    """Return the combined log of ``execution`` or an empty string when unavailable."""

    files = execution.output_files
    if files is None or not files.combined:
        return ""
    try:
        return Path(files.combined).read_text(encoding="utf-8", errors="replace")
    except OSError as error:
        LOGGER.debug("Unable to read log %s: %s", files.combined, error)
        return ""


def run_command(
    command: str,
    workdir: str = "",
    *,
    root: Path | str | None = None,
    timeout: float | None = None,
    env: Mapping[str, str] | None = None,
    log_dir: Path | str | None = None,
) -> CommandExecution:
    """Run ``command`` through the shell inside ``root / workdir``.

    Output is written to ``stdout.log``/``stderr.log``/``combined.log`` inside
    ``log_dir`` (a fresh temporary directory by default). A timeout or a
    missing working directory is reported as a non-zero exit code rather than
    raised, so the result can be recorded like any other failure.
    """

    base = Path(root or Path.cwd()).resolve()
    relative = normalise_workdir(workdir)
    cwd = base / relative if relative else base
    target = Path(log_dir) if log_dir else Path(tempfile.mkdtemp(prefix="vcache-run-"))

    started = time.perf_counter()
    try:
        process = subprocess.run(  # noqa: S602  # commands come from the user or config
            command,
            shell=True,
            cwd=cwd,
            check=False,
            capture_output=True,
            text=True,
            errors="replace",
            env=_merge_env(env),
            timeout=timeout,
        )
        exit_code, stdout, stderr = process.returncode, process.stdout, process.stderr
    except subprocess.TimeoutExpired as error:
        exit_code = TIMEOUT_EXIT_CODE
        stdout = error.stdout if isinstance(error.stdout, str) else ""
        stderr = f"Command timed out after {timeout:g}s: {command}"
    except OSError as error:
        exit_code = NOT_RUNNABLE_EXIT_CODE
        stdout = ""
        stderr = f"Unable to run command in {cwd}: {error}"
    duration = round(time.perf_counter() - started, 3)

    LOGGER.debug("Command %r exited with %s after %.3fs", command, exit_code, duration)
    return CommandExecution(
        command=normalise_command(command),
        workdir=relative,
        exit_code=exit_code,
        duration_secs=duration,
        output_files=_write_logs(target, stdout, stderr),
        extraction=extract_failures("\n".join((stdout, stderr))),
    )


def failed_tests_of(execution: CommandExecution) -> List[str]:
    extraction = execution.extraction or {}
    return list(extraction.get("failed_tests") or [])


__all__ = [
    "NOT_RUNNABLE_EXIT_CODE",
    "TIMEOUT_EXIT_CODE",
    "extract_failures",
    "failed_tests_of",
    "read_combined_output",
    "run_command",
]
