"""Deterministic content addresses for a git working copy.

The address is the tree object git would write if every tracked, modified and
untracked (but not ignored) file were staged right now. It is computed through
a private index file so the user's real index is never modified, and it only
depends on file content, which makes it a stable cache partition key:
identical content always maps to the identical address.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List

from vcache.errors import AddressingError

from .vcs import DEFAULT_GIT_TIMEOUT, GitError, GitRepository

__all__ = [
    "STALE_INDEX_AGE_SECS",
    "StabilityCheck",
    "TreeState",
    "check_worktree_stability",
    "compute_address",
    "compute_tree_state",
    "has_working_tree_changes",
    "head_tree_address",
]

LOGGER = logging.getLogger(__name__)

INDEX_PREFIX = "vcache-index-"
# Private index files younger than this are assumed to belong to a live run.
STALE_INDEX_AGE_SECS = 5 * 60

_INDEX_PATTERN = re.compile(rf"^{re.escape(INDEX_PREFIX)}(\d+)$")
_SUBMODULE_PATTERN = re.compile(r"^[ +\-U]?([0-9a-f]+)\s+(\S+)")


@dataclass(slots=True, frozen=True)
class TreeState:
    """Address of the parent workspace plus the addresses of its submodules."""

    address: str
    submodules: Dict[str, str] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class StabilityCheck:
    """Whether the workspace content changed while a validation was running."""

    stable: bool
    address_before: str
    address_after: str


def _open_workspace(directory: Path | str | None, timeout: float) -> GitRepository:
    start = Path(directory or Path.cwd()).resolve()
    try:
        repo = GitRepository.discover(start, timeout=timeout)
        probe = repo.git("rev-parse", "--is-inside-work-tree", check=False, cwd=start)
    except GitError as error:
        raise AddressingError(f"Not inside a git workspace: {start}") from error
    if probe.returncode != 0 or probe.stdout.strip() != "true":
        raise AddressingError(f"Not inside a git workspace: {start}")
    return repo


def _process_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


def _cleanup_stale_indexes(git_dir: Path) -> None:
    """Remove private index files left behind by crashed processes."""

    try:
        candidates = list(git_dir.iterdir())
    except (FileNotFoundError, NotADirectoryError):
        return
    except OSError as error:
        LOGGER.warning("Unable to scan %s for stale index files: %s", git_dir, error)
        return

    now = time.time()
    for candidate in candidates:
        match = _INDEX_PATTERN.match(candidate.name)
        if not match:
            continue
        pid = int(match.group(1))
        try:
            age = now - candidate.stat().st_mtime
        except OSError:
            continue
        if age < STALE_INDEX_AGE_SECS or _process_alive(pid):
            continue
        try:
            candidate.unlink()
        except OSError as error:
            LOGGER.warning("Failed to clean up stale index %s: %s", candidate.name, error)
        else:
            LOGGER.warning(
                "Cleaned up stale index from PID %s (%ss old)", pid, int(age)
            )


def _write_tree(repo: GitRepository) -> str:
    git_dir = repo.absolute_git_dir()
    _cleanup_stale_indexes(git_dir)

    private_index = git_dir / f"{INDEX_PREFIX}{os.getpid()}"
    real_index = git_dir / "index"
    env = {"GIT_INDEX_FILE": str(private_index)}
    try:
        # A fresh repository has no index yet; `git add` creates the private one.
        if real_index.exists():
            shutil.copyfile(real_index, private_index)
        # `--all` stages real content for modified and untracked files while
        # still honouring .gitignore.
        added = repo.git("add", "--all", check=False, env=env)
        if added.returncode != 0 and "nothing" not in added.stderr:
            raise GitError(f"git add failed: {added.stderr.strip()}")
        written = repo.git("write-tree", env=env)
        return written.stdout.strip()
    finally:
        try:
            private_index.unlink()
        except FileNotFoundError:
            pass


def _list_submodules(repo: GitRepository) -> List[tuple[str, str]]:
    result = repo.git("submodule", "status", check=False)
    if result.returncode != 0:
        return []
    entries: List[tuple[str, str]] = []
    for line in result.stdout.splitlines():
        if not line.strip():
            continue
        match = _SUBMODULE_PATTERN.match(line)
        if not match:
            continue
        entries.append((line[0], match.group(2)))
    return entries


def compute_tree_state(
    directory: Path | str | None = None,
    *,
    timeout: float = DEFAULT_GIT_TIMEOUT,
) -> TreeState:
    """Return the working-copy address and the addresses of initialised submodules."""

    repo = _open_workspace(directory, timeout)
    try:
        address = _write_tree(repo)
    except (GitError, OSError) as error:
        raise AddressingError(f"Failed to calculate tree address: {error}") from error

    submodules: Dict[str, str] = {}
    for status, relative in sorted(_list_submodules(repo), key=lambda item: item[1]):
        if status == "-":
            continue
        try:
            submodules[relative] = compute_tree_state(repo.root / relative, timeout=timeout).address
        except AddressingError as error:
            LOGGER.warning("Failed to hash submodule %s: %s", relative, error)
    return TreeState(address=address, submodules=submodules)


def compute_address(
    directory: Path | str | None = None,
    *,
    timeout: float = DEFAULT_GIT_TIMEOUT,
) -> str:
    """Return the content address of the working copy containing ``directory``.

    Raises :class:`AddressingError` when ``directory`` is not inside a git
    workspace or the address cannot be computed.
    """

    repo = _open_workspace(directory, timeout)
    try:
        return _write_tree(repo)
    except (GitError, OSError) as error:
        raise AddressingError(f"Failed to calculate tree address: {error}") from error


def head_tree_address(
    directory: Path | str | None = None,
    *,
    timeout: float = DEFAULT_GIT_TIMEOUT,
) -> str:
    """Return the tree address of ``HEAD`` (committed state only)."""

    repo = _open_workspace(directory, timeout)
    try:
        return repo.git("rev-parse", "HEAD^{tree}").stdout.strip()
    except GitError as error:
        raise AddressingError(f"Failed to get HEAD tree address: {error}") from error


def has_working_tree_changes(
    directory: Path | str | None = None,
    *,
    timeout: float = DEFAULT_GIT_TIMEOUT,
) -> bool:
    """Return ``True`` when the working copy differs from ``HEAD``.

    Any failure to decide is reported as ``True``.
    """

    try:
        return compute_address(directory, timeout=timeout) != head_tree_address(
            directory, timeout=timeout
        )
    except AddressingError:
        return True


def check_worktree_stability(
    address_before: str,
    directory: Path | str | None = None,
    *,
    timeout: float = DEFAULT_GIT_TIMEOUT,
) -> StabilityCheck:
    """Recompute the address and report whether it moved since ``address_before``."""

    address_after = compute_address(directory, timeout=timeout)
    return StabilityCheck(
        stable=address_before == address_after,
        address_before=address_before,
        address_after=address_after,
    )
