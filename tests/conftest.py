from __future__ import annotations

import subprocess
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from vcache.memory.notes import MemoryNoteStore  # noqa: E402
from vcache.memory.schema import PhaseResult, StepResult, ValidationResult, ValidationRun  # noqa: E402
from vcache.tools.vcs import GitRepository  # noqa: E402


def run_git(root: Path, *args: str) -> str:
    process = subprocess.run(
        ["git", *args],
        cwd=root,
        check=True,
        capture_output=True,
        text=True,
    )
    return process.stdout


def init_repository(root: Path) -> GitRepository:
    root.mkdir(parents=True, exist_ok=True)
    run_git(root, "init", "-q")
    run_git(root, "symbolic-ref", "HEAD", "refs/heads/main")
    run_git(root, "config", "user.email", "dev@example.com")
    run_git(root, "config", "user.name", "Validation Dev")
    run_git(root, "config", "commit.gpgsign", "false")
    return GitRepository(root)


@dataclass(slots=True)
class SampleRepo:
    """A small committed git repository used by the integration tests."""

    root: Path
    repo: GitRepository

    def write(self, relative: str, content: str) -> Path:
        path = self.root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        return path

    def commit(self, message: str = "update") -> None:
        run_git(self.root, "add", "--all")
        run_git(self.root, "commit", "-q", "-m", message)

    def git(self, *args: str) -> str:
        return run_git(self.root, *args)


@pytest.fixture()
def sample_repo(tmp_path: Path) -> SampleRepo:
    """Create a git repository with one commit and a .gitignore."""

    root = tmp_path / "repo"
    repo = init_repository(root)
    sample = SampleRepo(root=repo.root, repo=repo)
    sample.write("src/app.py", "def answer() -> int:\n    return 42\n")
    sample.write("README.md", "# sample\n")
    sample.write(".gitignore", "build/\n*.log\n")
    sample.commit("Initial commit")
    return sample


@pytest.fixture()
def memory_store() -> MemoryNoteStore:
    return MemoryNoteStore()


def make_result(
    passed: bool,
    steps: dict[str, bool] | None = None,
    *,
    timestamp: datetime | None = None,
    output: str | None = None,
) -> ValidationResult:
    """Build a one-phase validation result with the given step outcomes."""

    step_results = [
        StepResult(name=name, passed=step_passed, duration_secs=1.0, output=output)
        for name, step_passed in (steps or {}).items()
    ]
    return ValidationResult(
        passed=passed,
        timestamp=timestamp or datetime.now(timezone.utc),
        phases=[PhaseResult(name="Checks", passed=passed, duration_secs=2.0, steps=step_results)],
    )


def make_run(
    run_id: str,
    passed: bool = True,
    *,
    timestamp: datetime | None = None,
    steps: dict[str, bool] | None = None,
    output: str | None = None,
    submodules: dict[str, str] | None = None,
) -> ValidationRun:
    moment = timestamp or datetime.now(timezone.utc)
    return ValidationRun(
        id=run_id,
        timestamp=moment,
        duration_secs=2.0,
        passed=passed,
        branch="main",
        head_commit="abc123",
        submodule_hashes=submodules or {},
        result=make_result(passed, steps, timestamp=moment, output=output),
    )
