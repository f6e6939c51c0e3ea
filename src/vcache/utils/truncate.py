"""Byte-budget truncation of captured validation output."""

from __future__ import annotations

from typing import Tuple

from vcache.memory.schema import ValidationResult

__all__ = ["DEFAULT_MAX_OUTPUT_BYTES", "truncate_text", "truncate_validation_output"]

DEFAULT_MAX_OUTPUT_BYTES = 10_000


def truncate_text(text: str, max_bytes: int) -> Tuple[str, int]:
    """Cut ``text`` to ``max_bytes`` UTF-8 bytes and append a truncation marker.

    Returns the new text and the number of bytes dropped (``0`` when the text
    already fits).
    """
    encoded = text.encode("utf-8")
    if len(encoded) <= max_bytes:
        return text, 0
    dropped = len(encoded) - max_bytes
    head = encoded[:max_bytes].decode("utf-8", errors="ignore")
    return f"{head}\n\n[... truncated {dropped} bytes]", dropped


def truncate_validation_output(
    result: ValidationResult,
    max_bytes: int = DEFAULT_MAX_OUTPUT_BYTES,
) -> ValidationResult:
    """Return a copy of ``result`` whose step outputs fit in ``max_bytes`` each.

    Steps that were already truncated (``output_truncated_bytes`` set) are left
    alone, so applying this twice yields the same result.
    """
    truncated = result.model_copy(deep=True)
    for phase in truncated.phases or []:
        for step in phase.steps:
            if step.output is None or step.output_truncated_bytes:
                continue
            step.output, dropped = truncate_text(step.output, max_bytes)
            if dropped:
                step.output_truncated_bytes = dropped
    if truncated.failed_step_output is not None and not truncated.failed_step_output_truncated_bytes:
        truncated.failed_step_output, dropped = truncate_text(truncated.failed_step_output, max_bytes)
        if dropped:
            truncated.failed_step_output_truncated_bytes = dropped
    return truncated
