"""Minimal git helpers.

The helpers below provide just enough structure to locate the workspace,
run bounded git commands, and answer the metadata questions (branch, head,
dirty state) that validation runs record alongside their results.
"""

from __future__ import annotations

from pathlib import Path
from typing import List, Mapping, Sequence

import os
import subprocess

DEFAULT_GIT_TIMEOUT = 30.0


class GitError(RuntimeError):
    """Raised when a git command fails or the repository cannot be used."""


class GitTimeoutError(GitError):
    """Raised when a git command exceeds its time budget."""


class GitRepository:
    """Lightweight wrapper around ``git`` commands."""

    def __init__(self, root: Path | str, *, timeout: float = DEFAULT_GIT_TIMEOUT) -> None:
        self.root = Path(root).resolve()
        if not (self.root / ".git").exists():
            raise GitError(f"Not a git repository: {self.root}")
        self.timeout = timeout

    @classmethod
    def discover(
        cls,
        start: Path | str | None = None,
        *,
        timeout: float = DEFAULT_GIT_TIMEOUT,
    ) -> "GitRepository":
        """Locate the nearest git repository starting from ``start``."""

        path = Path(start or Path.cwd()).resolve()
        for candidate in (path, *path.parents):
            if (candidate / ".git").exists():
                return cls(candidate, timeout=timeout)
        raise GitError(f"Unable to locate a git repository from {path}")

    # ------------------------------------------------------------------ git IO
    def _run_git(
        self,
        args: Sequence[str],
        *,
        check: bool = True,
        input_text: str | None = None,
        env: Mapping[str, str] | None = None,
        cwd: Path | None = None,
    ) -> subprocess.CompletedProcess[str]:
        command = ["git", *args]
        merged_env = None
        if env:
            merged_env = os.environ.copy()
            merged_env.update(env)
        try:
            process = subprocess.run(
                command,
                cwd=cwd or self.root,
                input=input_text.encode("utf-8") if input_text is not None else None,
                capture_output=True,
                text=False,
                check=False,
                env=merged_env,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as error:
            raise GitTimeoutError(
                f"git {' '.join(args)} timed out after {self.timeout:g}s"
            ) from error
        except OSError as error:
            raise GitError(f"Unable to execute git: {error}") from error
        stdout = process.stdout.decode("utf-8", errors="replace") if process.stdout else ""
        stderr = process.stderr.decode("utf-8", errors="replace") if process.stderr else ""
        result = subprocess.CompletedProcess(process.args, process.returncode, stdout, stderr)
        if check and result.returncode != 0:
            message = result.stderr.strip() or result.stdout.strip() or "unknown git error"
            raise GitError(f"git {' '.join(args)} failed: {message}")
        return result

    def git(
        self,
        *args: str,
        check: bool = True,
        input_text: str | None = None,
        env: Mapping[str, str] | None = None,
        cwd: Path | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Execute ``git`` with ``args`` relative to the repository root."""

        return self._run_git(list(args), check=check, input_text=input_text, env=env, cwd=cwd)

    def absolute_git_dir(self) -> Path:
        """Return the absolute ``.git`` directory (worktree aware)."""

        result = self._run_git(["rev-parse", "--absolute-git-dir"], check=True)
        return Path(result.stdout.strip())

    # -------------------------------------------------------------- branches
    def current_branch(self) -> str | None:
        """Return the current branch name or ``None`` when detached."""

        result = self._run_git(["rev-parse", "--abbrev-ref", "HEAD"], check=False)
        if result.returncode != 0:
            return None
        branch = result.stdout.strip()
        if not branch or branch == "HEAD":
            return None
        return branch

    def head_commit(self) -> str | None:
        """Return the ``HEAD`` commit SHA or ``None`` in an empty repository."""

        result = self._run_git(["rev-parse", "--verify", "HEAD"], check=False)
        if result.returncode != 0:
            return None
        head = result.stdout.strip()
        return head or None

    # ------------------------------------------------------------- repo status
    def _status_entries(self) -> List[tuple[str, Path]]:
        result = self._run_git(["status", "--porcelain"], check=True)
        entries: List[tuple[str, Path]] = []
        for line in result.stdout.splitlines():
            if not line:
                continue
            status = line[:2]
            raw_path = line[3:]
            if status[0] in {"R", "C"} and " -> " in raw_path:
                raw_path = raw_path.split(" -> ", 1)[1]
            status_clean = status.strip() or status
            entries.append((status_clean, Path(raw_path.strip())))
        return entries

    def status_entries(self) -> List[tuple[str, Path]]:
        """Return raw porcelain status entries as ``(status, path)`` pairs."""

        return self._status_entries()

    def has_changes(self, *, include_untracked: bool = True) -> bool:
        """Return ``True`` when there are working tree changes."""

        for status, _path in self._status_entries():
            if status == "??" and not include_untracked:
                continue
            return True
        return False


__all__ = ["DEFAULT_GIT_TIMEOUT", "GitError", "GitRepository", "GitTimeoutError"]
