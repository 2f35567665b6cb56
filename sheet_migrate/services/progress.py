from __future__ import annotations

import sys
import threading
from dataclasses import dataclass
from typing import Any

from tqdm import tqdm
from tqdm.std import tqdm as TqdmType

"""Progress display with tqdm (TTY only).

- A single tqdm bar per ingest, disabled when stdout is not a TTY (CI / pipes)
- ``ProgressEvent`` values are what phase callbacks receive; the bar is only
  one consumer of them
"""

__all__ = [
    "ProgressEvent",
    "RowProgressTracker",
    "is_tty_enabled",
]


def is_tty_enabled() -> bool:
    return sys.stdout.isatty()


@dataclass(frozen=True)
class ProgressEvent:
    job_id: str
    sheet_name: str
    processed_rows: int  # rows consumed so far, resumed rows included
    total_rows: int | None

    @property
    def percent(self) -> float:
        if not self.total_rows:
            return 0.0
        return min(100.0, round(100.0 * self.processed_rows / self.total_rows, 2))


class RowProgressTracker:
    """Row-level progress bar shared by all sheet workers of one ingest."""

    def __init__(self, total_rows: int | None, *, description: str = "Ingesting", initial: int = 0) -> None:
        self.total_rows = total_rows
        self.description = description
        self.enabled = is_tty_enabled()
        self._lock = threading.Lock()
        self.pbar: TqdmType[Any] | None
        if self.enabled:
            self.pbar = tqdm(
                total=total_rows,
                initial=initial,
                desc=description,
                unit="row",
                leave=True,
                ncols=80,
                ascii=True,
            )
        else:
            self.pbar = None

    def update(self, rows: int, sheet_name: str | None = None) -> None:
        if self.pbar is None or rows <= 0:
            return
        with self._lock:
            if sheet_name:
                self.pbar.set_postfix(sheet=sheet_name)
            self.pbar.update(rows)

    def close(self) -> None:
        if self.pbar is not None:
            self.pbar.close()
            self.pbar = None

    def __enter__(self) -> RowProgressTracker:
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()
