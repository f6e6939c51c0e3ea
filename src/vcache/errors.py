"""Error taxonomy shared by the cache and history layers."""

from __future__ import annotations

__all__ = [
    "AddressingError",
    "ConflictExhaustedError",
    "CorruptEntryError",
    "StorageError",
    "VCacheError",
]


class VCacheError(RuntimeError):
    """Base class for every error raised by the cache/history layer."""


class AddressingError(VCacheError):
    """Raised when a directory is not inside a tracked git workspace."""


class StorageError(VCacheError):
    """Raised when the notes store is unreachable, times out, or rejects a command."""


class ConflictExhaustedError(StorageError):
    """Raised when a merge-write loses every compare-and-swap attempt."""

    def __init__(self, namespace: str, address: str, attempts: int) -> None:
        super().__init__(
            f"Gave up writing note {namespace}:{address} after {attempts} conflicting attempt(s)"
        )
        self.namespace = namespace
        self.address = address
        self.attempts = attempts


class CorruptEntryError(VCacheError):
    """Raised when a stored payload cannot be parsed or fails schema validation."""
