"""Cache key tokens for (command, working directory) pairs."""

from __future__ import annotations

import hashlib
import json
import re
from typing import Pattern

__all__ = ["TOKEN_LENGTH", "encode_cache_key", "normalise_command", "normalise_workdir"]

TOKEN_LENGTH = 24

# Commands containing any of these keep their internal spacing verbatim.
_SHELL_METACHARACTERS = frozenset("\"'`\\|><&;$")
_WHITESPACE: Pattern[str] = re.compile(r"\s+")
_SEPARATORS: Pattern[str] = re.compile(r"[\\/]+")


def normalise_command(command: str) -> str:
    """Trim ``command`` and collapse whitespace unless it uses shell syntax."""
    trimmed = command.strip()
    if any(char in _SHELL_METACHARACTERS for char in trimmed):
        return trimmed
    return _WHITESPACE.sub(" ", trimmed)


def normalise_workdir(workdir: str | None) -> str:
    """Return ``workdir`` as a clean POSIX path relative to the workspace root.

    ``""`` (and ``"."``, ``"./"`` or ``None``) all mean the workspace root.
    """
    cleaned = _SEPARATORS.sub("/", (workdir or "").strip())
    parts = [part for part in cleaned.split("/") if part and part != "."]
    return "/".join(parts)


def encode_cache_key(command: str, workdir: str | None = "") -> str:
    """Encode ``(command, workdir)`` into an opaque, fixed-length token.

    The token is safe to embed in a git ref path. Equivalent spellings of the
    same command/workdir pair map to the same token.
    """
    normalised = normalise_command(command)
    if not normalised:
        raise ValueError("Cannot build a cache key for an empty command")
    payload = json.dumps([normalised, normalise_workdir(workdir)], ensure_ascii=False)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:TOKEN_LENGTH]
