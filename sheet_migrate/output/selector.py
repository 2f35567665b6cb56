from __future__ import annotations

from enum import Enum

from ..models.config_models import OutputThresholds

"""Output strategy selection (pure function of size estimate and thresholds)."""

__all__ = [
    "WriteStrategy",
    "select_strategy",
]


class WriteStrategy(str, Enum):
    IN_MEMORY = "IN_MEMORY"  # openpyxl Workbook, whole sheet resident
    STREAMING = "STREAMING"  # openpyxl write-only + bounded row window
    FLAT_TEXT = "FLAT_TEXT"  # delimited text, O(1) memory


def select_strategy(
    rows: int,
    columns: int,
    thresholds: OutputThresholds,
    *,
    force_streaming: bool = False,
    prefer_flat_text: bool = False,
) -> WriteStrategy:
    """Pick the writer for ``rows`` x ``columns`` cells.

    A count equal to a boundary goes to the higher-capacity strategy:
    IN_MEMORY below both in-memory limits, FLAT_TEXT at or above either
    flat-text limit, STREAMING otherwise. ``force_streaming`` rules out
    IN_MEMORY; ``prefer_flat_text`` turns STREAMING into FLAT_TEXT.
    """
    cells = rows * max(columns, 0)
    if rows >= thresholds.flat_text_min_rows or cells >= thresholds.flat_text_min_cells:
        return WriteStrategy.FLAT_TEXT
    if not force_streaming and rows < thresholds.in_memory_max_rows and cells < thresholds.in_memory_max_cells:
        return WriteStrategy.IN_MEMORY
    if prefer_flat_text:
        return WriteStrategy.FLAT_TEXT
    return WriteStrategy.STREAMING
