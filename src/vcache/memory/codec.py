"""YAML (de)serialisation for note payloads.

All payload validation happens here: callers receive either a fully validated
model or a :class:`CorruptEntryError`. History records are validated run by
run so a single damaged entry never hides its well-formed siblings.
"""

from __future__ import annotations

import logging
from typing import Any, List, Mapping

import yaml
from pydantic import BaseModel, ValidationError

from vcache.errors import CorruptEntryError

from .schema import HistoryRecord, RunCacheEntry, ValidationRun

LOGGER = logging.getLogger(__name__)

__all__ = [
    "dump_history_record",
    "dump_model",
    "dump_run_entry",
    "load_history_record",
    "load_run_entry",
]


def _parse_mapping(text: str, *, label: str) -> Mapping[str, Any]:
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as error:
        raise CorruptEntryError(f"{label} is not valid YAML: {error}") from error
    if not isinstance(data, Mapping):
        raise CorruptEntryError(f"{label} must be a mapping, got {type(data).__name__}")
    return data


def _describe(error: ValidationError) -> str:
    messages = []
    for item in error.errors():
        location = ".".join(str(part) for part in item.get("loc", ()))
        message = item.get("msg", "invalid")
        messages.append(f"{location}: {message}" if location else message)
    return "; ".join(messages)


def dump_model(model: BaseModel) -> str:
    """Serialise ``model`` as diff-friendly YAML."""
    payload = model.model_dump(mode="json", exclude_none=True)
    return yaml.safe_dump(payload, sort_keys=False, allow_unicode=True)


def load_run_entry(text: str) -> RunCacheEntry:
    """Parse a run cache note, raising :class:`CorruptEntryError` when invalid."""
    data = _parse_mapping(text, label="run cache entry")
    try:
        return RunCacheEntry.model_validate(data)
    except ValidationError as error:
        raise CorruptEntryError(f"Invalid run cache entry: {_describe(error)}") from error


def dump_run_entry(entry: RunCacheEntry) -> str:
    return dump_model(entry)


def load_history_record(text: str, tree_address: str) -> HistoryRecord:
    """Parse a history note, keeping only the runs that validate.

    Raises :class:`CorruptEntryError` only when the payload as a whole is
    unusable (not YAML, not a mapping, or ``runs`` is not a list).
    """
    data = _parse_mapping(text, label=f"history note for {tree_address}")
    raw_runs = data.get("runs")
    if raw_runs is None:
        raw_runs = []
    if not isinstance(raw_runs, list):
        raise CorruptEntryError(f"History note for {tree_address} has no runs list")

    runs: List[ValidationRun] = []
    for index, raw in enumerate(raw_runs):
        run_id = raw.get("id", f"#{index}") if isinstance(raw, Mapping) else f"#{index}"
        try:
            runs.append(ValidationRun.model_validate(raw))
        except ValidationError as error:
            LOGGER.warning(
                "Skipping corrupted run %s for %s: %s", run_id, tree_address, _describe(error)
            )

    # The note key is authoritative for the address.
    return HistoryRecord(tree_address=tree_address, runs=runs)


def dump_history_record(record: HistoryRecord) -> str:
    return dump_model(record)
