"""Namespaced text notes keyed by tree address.

A note store maps ``(namespace, address)`` to a text payload. The git backed
implementation keeps every namespace in its own ``refs/notes/<namespace>`` ref,
which makes the store shareable between processes, CI jobs and (after a push
or fetch of the refs) machines.

Every mutation is an optimistic read-modify-write: the store snapshots the
namespace version, lets the caller compute the next payload from the current
one, and commits only when the namespace still sits at the snapshot version.
A writer that loses the race re-reads and reapplies its update, so no update
is ever silently dropped. The retry budget is small and fixed; exhausting it
raises :class:`ConflictExhaustedError`.
"""

from __future__ import annotations

import logging
import os
import random
import re
import threading
import time
import uuid
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from vcache.errors import ConflictExhaustedError, StorageError
from vcache.tools.vcs import GitError, GitRepository

LOGGER = logging.getLogger(__name__)

__all__ = [
    "DEFAULT_MAX_ATTEMPTS",
    "GitNoteStore",
    "MemoryNoteStore",
    "MergeFunction",
    "NoteStore",
    "validate_address",
    "validate_namespace",
]

DEFAULT_MAX_ATTEMPTS = 4
DEFAULT_RETRY_DELAY = 0.05
MAX_ATTEMPTS_LIMIT = 10

MergeFunction = Callable[[Optional[str]], Optional[str]]

_UNSAFE_REF_CHARS = re.compile(r"[;&|`$(){}\[\]<>!\\\"'*?~^:\s]")
_ADDRESS = re.compile(r"^[0-9a-f]{4,64}$")


def validate_namespace(namespace: str) -> str:
    """Return ``namespace`` unchanged or raise ``ValueError`` when unsafe."""
    if not isinstance(namespace, str) or not namespace:
        raise ValueError("Notes namespace must be a non-empty string")
    if namespace.startswith("-"):
        raise ValueError(f"Invalid notes namespace (starts with dash): {namespace}")
    if ".." in namespace or "//" in namespace or namespace.endswith("/"):
        raise ValueError(f"Invalid notes namespace (bad path): {namespace}")
    if "\0" in namespace or _UNSAFE_REF_CHARS.search(namespace):
        raise ValueError(f"Invalid notes namespace (unsafe characters): {namespace!r}")
    return namespace


def validate_address(address: str) -> str:
    """Return ``address`` unchanged or raise ``ValueError`` when not an object id."""
    if not isinstance(address, str) or not _ADDRESS.match(address):
        raise ValueError(f"Invalid tree address: {address!r}")
    return address


class NoteStore(ABC):
    """Read, merge-write, list and remove text notes.

    Subclasses provide the versioned primitives (``_snapshot`` and ``_commit``);
    the retry loop that turns them into lost-update-free writes lives here.
    """

    def __init__(
        self,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        retry_delay: float = DEFAULT_RETRY_DELAY,
    ) -> None:
        if not 1 <= max_attempts <= MAX_ATTEMPTS_LIMIT:
            raise ValueError(f"max_attempts must be between 1 and {MAX_ATTEMPTS_LIMIT}")
        self._max_attempts = max_attempts
        self._retry_delay = max(retry_delay, 0.0)

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    # ------------------------------------------------------------ primitives
    @abstractmethod
    def read(self, namespace: str, address: str) -> Optional[str]:
        """Return the note payload or ``None`` when no note exists."""

    @abstractmethod
    def list(self, namespace: str) -> Iterator[Tuple[str, str]]:
        """Lazily yield ``(address, payload)`` for every note in ``namespace``."""

    @abstractmethod
    def list_namespaces(self, prefix: str) -> List[str]:
        """Return every existing namespace at or below ``prefix``."""

    @abstractmethod
    def _snapshot(self, namespace: str, address: str) -> Tuple[Any, Optional[str]]:
        """Return ``(version, payload)`` for a later conditional commit."""

    @abstractmethod
    def _commit(
        self,
        namespace: str,
        address: str,
        version: Any,
        payload: Optional[str],
    ) -> bool:
        """Store ``payload`` (``None`` removes) if ``namespace`` is still at ``version``.

        Returns ``False`` on a version conflict.
        """

    @abstractmethod
    def _drop_namespace(self, namespace: str) -> bool:
        """Delete the whole namespace; return ``True`` when something was removed."""

    # -------------------------------------------------------------- writes
    def merge_write(
        self,
        namespace: str,
        address: str,
        merge: MergeFunction,
        *,
        max_attempts: Optional[int] = None,
    ) -> Optional[str]:
        """Apply ``merge`` to the latest payload and store the result.

        ``merge`` receives the current payload (``None`` when absent) and may be
        called once per attempt; it must be a pure function of its argument.
        Returning ``None`` removes the note. Returns the committed payload.
        """

        validate_namespace(namespace)
        validate_address(address)
        attempts = max_attempts or self._max_attempts
        for attempt in range(1, attempts + 1):
            version, current = self._snapshot(namespace, address)
            updated = merge(current)
            if updated == current:
                return current
            if self._commit(namespace, address, version, updated):
                if attempt > 1:
                    LOGGER.debug(
                        "Note %s:%s committed after %d attempts", namespace, address, attempt
                    )
                return updated
            LOGGER.debug(
                "Conflict writing note %s:%s (attempt %d/%d)",
                namespace,
                address,
                attempt,
                attempts,
            )
            if attempt < attempts and self._retry_delay:
                time.sleep(self._retry_delay * attempt + random.uniform(0, self._retry_delay))
        raise ConflictExhaustedError(namespace, address, attempts)

    def write(self, namespace: str, address: str, payload: str) -> None:
        """Overwrite the note at ``address`` with ``payload``."""

        self.merge_write(namespace, address, lambda _current: payload)

    def remove(self, namespace: str, address: str) -> None:
        """Remove the note at ``address``; removing a missing note is a no-op."""

        self.merge_write(namespace, address, lambda _current: None)

    def remove_namespace(self, namespace: str) -> int:
        """Delete ``namespace`` and every namespace nested under it.

        Returns the number of namespaces removed.
        """

        validate_namespace(namespace)
        removed = 0
        for candidate in self.list_namespaces(namespace):
            if self._drop_namespace(candidate):
                removed += 1
        return removed


class GitNoteStore(NoteStore):
    """Note store backed by ``git notes`` in a repository."""

    SCRATCH_PREFIX = "refs/notes/vcache-scratch"
    FALLBACK_IDENTITY = {
        "GIT_AUTHOR_NAME": "vcache",
        "GIT_AUTHOR_EMAIL": "vcache@localhost",
        "GIT_COMMITTER_NAME": "vcache",
        "GIT_COMMITTER_EMAIL": "vcache@localhost",
    }

    def __init__(
        self,
        repo: GitRepository,
        *,
        root: str = "vcache",
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        retry_delay: float = DEFAULT_RETRY_DELAY,
    ) -> None:
        super().__init__(max_attempts=max_attempts, retry_delay=retry_delay)
        self.repo = repo
        self.root = validate_namespace(root)
        self._identity_env: Optional[Dict[str, str]] = None

    # ----------------------------------------------------------------- helpers
    @staticmethod
    def _full_ref(namespace: str) -> str:
        if namespace.startswith("refs/notes/"):
            return namespace
        return f"refs/notes/{namespace}"

    def _git(self, *args: str, check: bool = True, **kwargs: Any):
        try:
            return self.repo.git(*args, check=check, **kwargs)
        except GitError as error:
            raise StorageError(str(error)) from error

    def _commit_env(self) -> Dict[str, str]:
        # Notes are commits; fall back to a neutral identity where none is configured.
        if self._identity_env is None:
            probe = self._git("var", "GIT_COMMITTER_IDENT", check=False)
            self._identity_env = {} if probe.returncode == 0 else dict(self.FALLBACK_IDENTITY)
        return self._identity_env

    def _resolve_ref(self, ref: str) -> Optional[str]:
        result = self._git("rev-parse", "--verify", "--quiet", ref, check=False)
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None

    @staticmethod
    def _raise_for_repository(stderr: str) -> None:
        lowered = stderr.lower()
        if "not a git repository" in lowered or "fatal: unable to" in lowered:
            raise StorageError(stderr.strip())

    # ----------------------------------------------------------------- reads
    def read(self, namespace: str, address: str) -> Optional[str]:
        validate_namespace(namespace)
        validate_address(address)
        result = self._git("notes", f"--ref={self._full_ref(namespace)}", "show", address, check=False)
        if result.returncode != 0:
            self._raise_for_repository(result.stderr)
            return None
        return result.stdout

    def list(self, namespace: str) -> Iterator[Tuple[str, str]]:
        validate_namespace(namespace)
        result = self._git("notes", f"--ref={self._full_ref(namespace)}", "list", check=False)
        if result.returncode != 0:
            self._raise_for_repository(result.stderr)
            return
        for line in result.stdout.splitlines():
            parts = line.split()
            if len(parts) != 2:
                continue
            blob, address = parts
            content = self._git("cat-file", "blob", blob, check=False)
            if content.returncode != 0:
                # Removed between listing and reading.
                continue
            yield address, content.stdout

    def list_namespaces(self, prefix: str) -> List[str]:
        validate_namespace(prefix)
        full_prefix = self._full_ref(prefix)
        result = self._git("for-each-ref", "--format=%(refname)", full_prefix, check=False)
        if result.returncode != 0:
            self._raise_for_repository(result.stderr)
            return []
        namespaces: List[str] = []
        for line in result.stdout.splitlines():
            ref = line.strip()
            if not ref or ref.startswith(self.SCRATCH_PREFIX):
                continue
            if ref != full_prefix and not ref.startswith(f"{full_prefix}/"):
                continue
            namespaces.append(ref[len("refs/notes/"):])
        return namespaces

    # ------------------------------------------------------------ versioning
    def _snapshot(self, namespace: str, address: str) -> Tuple[Any, Optional[str]]:
        version = self._resolve_ref(self._full_ref(namespace))
        return version, self.read(namespace, address)

    def _commit(
        self,
        namespace: str,
        address: str,
        version: Any,
        payload: Optional[str],
    ) -> bool:
        target = self._full_ref(namespace)
        scratch = f"{self.SCRATCH_PREFIX}/{os.getpid()}-{uuid.uuid4().hex[:12]}"
        try:
            if version:
                self._git("update-ref", scratch, version)
            elif payload is None:
                # Nothing stored and nothing to store.
                return True

            if payload is None:
                self._git("notes", f"--ref={scratch}", "remove", "--ignore-missing", address, env=self._commit_env())
            else:
                blob = self._git("hash-object", "-w", "--stdin", input_text=payload).stdout.strip()
                # `-C` stores the blob verbatim (no whitespace clean-up).
                self._git(
                    "notes",
                    f"--ref={scratch}",
                    "add",
                    "-f",
                    "--allow-empty",
                    "-C",
                    blob,
                    address,
                    env=self._commit_env(),
                )

            updated = self._resolve_ref(scratch)
            if updated is None or updated == version:
                return True

            swap = self._git("update-ref", target, updated, version or "", check=False)
            if swap.returncode == 0:
                return True
            if self._resolve_ref(target) != version:
                return False
            raise StorageError(
                f"Failed to update {target}: {swap.stderr.strip() or swap.stdout.strip()}"
            )
        finally:
            try:
                self.repo.git("update-ref", "-d", scratch, check=False)
            except GitError as error:
                LOGGER.debug("Failed to delete scratch ref %s: %s", scratch, error)

    def _drop_namespace(self, namespace: str) -> bool:
        if namespace != self.root and not namespace.startswith(f"{self.root}/"):
            raise ValueError(f"Refusing to delete notes outside {self.root}/: {namespace}")
        result = self._git("update-ref", "-d", self._full_ref(namespace), check=False)
        return result.returncode == 0


class MemoryNoteStore(NoteStore):
    """Thread-safe in-process note store with the same versioning semantics.

    Useful as a stand-in for the git store when no repository is available.
    """

    def __init__(
        self,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        retry_delay: float = 0.0,
    ) -> None:
        super().__init__(max_attempts=max_attempts, retry_delay=retry_delay)
        self._lock = threading.Lock()
        self._namespaces: Dict[str, Tuple[int, Dict[str, str]]] = {}

    def read(self, namespace: str, address: str) -> Optional[str]:
        validate_namespace(namespace)
        validate_address(address)
        with self._lock:
            _version, notes = self._namespaces.get(namespace, (0, {}))
            return notes.get(address)

    def list(self, namespace: str) -> Iterator[Tuple[str, str]]:
        with self._lock:
            _version, notes = self._namespaces.get(namespace, (0, {}))
            items = sorted(notes.items())
        yield from items

    def list_namespaces(self, prefix: str) -> List[str]:
        with self._lock:
            return sorted(
                name
                for name, (_version, notes) in self._namespaces.items()
                if notes and (name == prefix or name.startswith(f"{prefix}/"))
            )

    def _snapshot(self, namespace: str, address: str) -> Tuple[Any, Optional[str]]:
        with self._lock:
            version, notes = self._namespaces.get(namespace, (0, {}))
            return version, notes.get(address)

    def _commit(
        self,
        namespace: str,
        address: str,
        version: Any,
        payload: Optional[str],
    ) -> bool:
        with self._lock:
            current_version, notes = self._namespaces.get(namespace, (0, {}))
            if current_version != version:
                return False
            updated = dict(notes)
            if payload is None:
                updated.pop(address, None)
            else:
                updated[address] = payload
            self._namespaces[namespace] = (current_version + 1, updated)
            return True

    def _drop_namespace(self, namespace: str) -> bool:
        with self._lock:
            version, notes = self._namespaces.get(namespace, (0, {}))
            if not notes:
                return False
            self._namespaces[namespace] = (version + 1, {})
            return True
