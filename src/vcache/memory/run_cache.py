"""Read-through cache of single command executions.

Entries live one note per ``(tree address, command, workdir)`` triple under
``<notes_ref>/<address>/<token>``. Only successful executions are stored, and
every storage problem degrades to a cache miss.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Iterator, List, Optional

from vcache.errors import CorruptEntryError, StorageError
from vcache.utils.cache_key import encode_cache_key, normalise_command, normalise_workdir

from .codec import dump_run_entry, load_run_entry
from .notes import NoteStore
from .schema import CommandExecution, PruneResult, RunCacheEntry, utc_now

LOGGER = logging.getLogger(__name__)

DEFAULT_RUN_REF = "vcache/cache/run"

__all__ = [
    "CacheLookup",
    "CacheMode",
    "DEFAULT_RUN_REF",
    "RunCache",
    "RunOutcome",
]


class CacheMode(str, Enum):
    """How :meth:`RunCache.execute` consults the cache."""

    NORMAL = "normal"
    FORCE = "force"
    CHECK = "check"


@dataclass(slots=True)
class CacheLookup:
    """Result of a cache probe."""

    hit: bool
    entry: Optional[RunCacheEntry] = None


@dataclass(slots=True)
class RunOutcome:
    """What :meth:`RunCache.execute` did for one command."""

    cached: bool
    entry: Optional[RunCacheEntry] = None
    execution: Optional[CommandExecution] = None
    stored: bool = False

    @property
    def exit_code(self) -> Optional[int]:
        if self.execution is not None:
            return self.execution.exit_code
        if self.entry is not None:
            return self.entry.exit_code
        return None


class RunCache:
    """Cache of command results keyed by tree address, command and workdir."""

    def __init__(
        self,
        store: NoteStore,
        *,
        notes_ref: str = DEFAULT_RUN_REF,
        enabled: bool = True,
    ) -> None:
        self.store = store
        self.notes_ref = notes_ref.strip("/")
        self.enabled = enabled

    def _namespace(self, address: str, command: str, workdir: str) -> str:
        return f"{self.notes_ref}/{address}/{encode_cache_key(command, workdir)}"

    def get(self, address: str, command: str, workdir: str = "") -> Optional[RunCacheEntry]:
        """Return the cached entry for the triple, or ``None`` on any kind of miss."""

        if not self.enabled:
            return None
        try:
            payload = self.store.read(self._namespace(address, command, workdir), address)
        except StorageError as error:
            LOGGER.warning("Run cache unavailable, treating as miss: %s", error)
            return None
        except ValueError as error:
            LOGGER.debug("Run cache lookup skipped: %s", error)
            return None
        if payload is None:
            return None
        try:
            entry = load_run_entry(payload)
        except CorruptEntryError as error:
            LOGGER.debug("Ignoring corrupt run cache entry for %s: %s", command, error)
            return None
        if (
            entry.exit_code != 0
            or normalise_command(entry.command) != normalise_command(command)
            or normalise_workdir(entry.workdir) != normalise_workdir(workdir)
        ):
            LOGGER.debug("Ignoring mismatched run cache entry for %s", command)
            return None
        return entry

    def put(
        self,
        address: str,
        command: str,
        workdir: str,
        execution: CommandExecution,
    ) -> bool:
        """Store a successful execution; failed executions are never cached.

        Returns ``True`` when the entry was written.
        """

        if not self.enabled or execution.exit_code != 0:
            return False
        entry = RunCacheEntry(
            tree_address=address,
            command=normalise_command(command),
            workdir=normalise_workdir(workdir),
            timestamp=utc_now(),
            exit_code=execution.exit_code,
            duration_secs=execution.duration_secs,
            output_files=execution.output_files,
            extraction=execution.extraction,
        )
        try:
            self.store.write(self._namespace(address, command, workdir), address, dump_run_entry(entry))
        except StorageError as error:
            LOGGER.warning("Failed to store run cache entry for %s: %s", command, error)
            return False
        except ValueError as error:
            LOGGER.debug("Run cache store skipped: %s", error)
            return False
        return True

    def lookup(
        self,
        address: str,
        command: str,
        workdir: str = "",
        *,
        mode: CacheMode = CacheMode.NORMAL,
    ) -> CacheLookup:
        """Probe the cache according to ``mode`` (``FORCE`` never reads)."""

        if mode is CacheMode.FORCE:
            return CacheLookup(hit=False)
        entry = self.get(address, command, workdir)
        return CacheLookup(hit=entry is not None, entry=entry)

    def execute(
        self,
        address: Optional[str],
        command: str,
        workdir: str,
        runner: Callable[[], CommandExecution],
        *,
        mode: CacheMode = CacheMode.NORMAL,
    ) -> RunOutcome:
        """Return a cached result or run ``runner`` and cache its success.

        ``address`` is ``None`` when the workspace could not be addressed; the
        command then runs uncached. ``CHECK`` mode never runs the command.
        """

        if address is not None:
            probe = self.lookup(address, command, workdir, mode=mode)
            if probe.hit:
                return RunOutcome(cached=True, entry=probe.entry)
        if mode is CacheMode.CHECK:
            return RunOutcome(cached=False)

        execution = runner()
        stored = False
        if address is not None:
            stored = self.put(address, command, workdir, execution)
        return RunOutcome(cached=False, execution=execution, stored=stored)

    # -------------------------------------------------------------- listings
    def _addresses(self) -> Dict[str, List[str]]:
        grouped: Dict[str, List[str]] = {}
        prefix = f"{self.notes_ref}/"
        for namespace in self.store.list_namespaces(self.notes_ref):
            if not namespace.startswith(prefix):
                continue
            address = namespace[len(prefix):].split("/", 1)[0]
            grouped.setdefault(address, []).append(namespace)
        return grouped

    def iter_entries(self, address: Optional[str] = None) -> Iterator[RunCacheEntry]:
        """Yield valid stored entries, optionally limited to one tree address."""

        grouped = self._addresses()
        targets = [address] if address else sorted(grouped)
        for target in targets:
            for namespace in grouped.get(target, []):
                for _note_address, payload in self.store.list(namespace):
                    try:
                        yield load_run_entry(payload)
                    except CorruptEntryError as error:
                        LOGGER.debug("Skipping corrupt run cache note %s: %s", namespace, error)

    def list_entries(self, address: Optional[str] = None) -> List[RunCacheEntry]:
        """Return stored entries, newest first."""

        try:
            entries = list(self.iter_entries(address))
        except StorageError as error:
            LOGGER.warning("Run cache unavailable: %s", error)
            return []
        entries.sort(key=lambda entry: entry.timestamp, reverse=True)
        return entries

    def prune_all(self, *, dry_run: bool = False) -> PruneResult:
        """Remove every run cache entry (all tree addresses)."""

        result = PruneResult()
        try:
            grouped = self._addresses()
        except StorageError as error:
            LOGGER.warning("Run cache unavailable, nothing pruned: %s", error)
            return result

        for address in sorted(grouped):
            count = len(grouped[address])
            if not dry_run:
                try:
                    self.store.remove_namespace(f"{self.notes_ref}/{address}")
                except (StorageError, ValueError) as error:
                    LOGGER.warning("Failed to prune run cache for %s: %s", address, error)
            result.notes_pruned += count
            result.runs_pruned += count
            result.pruned_addresses.append(address)
        return result
