from __future__ import annotations

import csv
import json
import logging
import time
from collections import deque
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from openpyxl import Workbook
from openpyxl.cell import WriteOnlyCell
from openpyxl.styles import Font, PatternFill

from ..excel.reader import XLSX_MAX_ROWS
from .selector import WriteStrategy

"""Export writers: in-memory workbook, windowed streaming workbook, flat text.

Each writer takes a header and an iterable of row tuples and returns a
``WriteResult``. Styles come from a ``StyleCache`` owned by the writer
instance, never from module-level state.
"""

__all__ = [
    "WriteResult",
    "StyleCache",
    "InMemoryWorkbookWriter",
    "WindowedStreamingWriter",
    "FlatTextWriter",
    "writer_for",
]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WriteResult:
    path: Path
    strategy: WriteStrategy
    rows_written: int
    sheets: int
    elapsed_seconds: float


class StyleCache:
    """Style objects shared by the cells of one export."""

    def __init__(self) -> None:
        self._fonts: dict[bool, Font] = {}
        self._fills: dict[str, PatternFill] = {}

    def font(self, bold: bool = False) -> Font:
        if bold not in self._fonts:
            self._fonts[bold] = Font(bold=bold)
        return self._fonts[bold]

    def fill(self, rgb: str) -> PatternFill:
        if rgb not in self._fills:
            self._fills[rgb] = PatternFill(start_color=rgb, end_color=rgb, fill_type="solid")
        return self._fills[rgb]

    def __len__(self) -> int:
        return len(self._fonts) + len(self._fills)


HEADER_FILL = "DDEBF7"


def _cell_value(value: Any) -> Any:
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False)
    return value


class InMemoryWorkbookWriter:
    strategy = WriteStrategy.IN_MEMORY

    def __init__(self, sheet_title: str = "errors") -> None:
        self.sheet_title = sheet_title
        self.styles = StyleCache()

    def write(self, path: Path, header: Sequence[str], rows: Iterable[Sequence[Any]]) -> WriteResult:
        started = time.perf_counter()
        wb = Workbook()
        ws = wb.active
        ws.title = self.sheet_title
        ws.append(list(header))
        for cell in ws[1]:
            cell.font = self.styles.font(bold=True)
            cell.fill = self.styles.fill(HEADER_FILL)
        ws.freeze_panes = "A2"
        count = 0
        for row in rows:
            ws.append([_cell_value(v) for v in row])
            count += 1
        wb.save(path)
        return WriteResult(path, self.strategy, count, 1, time.perf_counter() - started)


class WindowedStreamingWriter:
    """openpyxl write-only workbook; at most ``window_size`` rows held before they are written out.

    A sheet that reaches the xlsx row limit continues on a new sheet with the
    header repeated.
    """

    strategy = WriteStrategy.STREAMING

    def __init__(self, window_size: int = 100, sheet_title: str = "errors", max_sheet_rows: int = XLSX_MAX_ROWS) -> None:
        if window_size < 1:
            raise ValueError("window_size must be >= 1")
        self.window_size = window_size
        self.sheet_title = sheet_title
        self.max_sheet_rows = max_sheet_rows
        self.styles = StyleCache()
        self.peak_window = 0

    def write(self, path: Path, header: Sequence[str], rows: Iterable[Sequence[Any]]) -> WriteResult:
        started = time.perf_counter()
        wb = Workbook(write_only=True)
        sheets = 0
        ws = None
        sheet_rows = 0

        def new_sheet() -> Any:
            nonlocal sheets, sheet_rows
            sheets += 1
            title = self.sheet_title if sheets == 1 else f"{self.sheet_title}_{sheets}"
            sheet = wb.create_sheet(title=title)
            cells = []
            for name in header:
                cell = WriteOnlyCell(sheet, value=name)
                cell.font = self.styles.font(bold=True)
                cells.append(cell)
            sheet.append(cells)
            sheet_rows = 1
            return sheet

        window: deque[list[Any]] = deque()

        def spill(n: int) -> None:
            nonlocal ws, sheet_rows
            for _ in range(n):
                if ws is None or sheet_rows >= self.max_sheet_rows:
                    ws = new_sheet()
                ws.append(window.popleft())
                sheet_rows += 1

        count = 0
        for row in rows:
            window.append([_cell_value(v) for v in row])
            count += 1
            self.peak_window = max(self.peak_window, len(window))
            if len(window) >= self.window_size:
                spill(len(window))
        spill(len(window))
        if ws is None:
            ws = new_sheet()
        wb.save(path)
        return WriteResult(path, self.strategy, count, sheets, time.perf_counter() - started)


class FlatTextWriter:
    strategy = WriteStrategy.FLAT_TEXT

    def __init__(self, delimiter: str = ",") -> None:
        self.delimiter = delimiter

    def write(self, path: Path, header: Sequence[str], rows: Iterable[Sequence[Any]]) -> WriteResult:
        started = time.perf_counter()
        count = 0
        with path.open("w", encoding="utf-8", newline="") as f:
            writer = csv.writer(f, delimiter=self.delimiter)
            writer.writerow(list(header))
            for row in rows:
                writer.writerow(["" if v is None else _cell_value(v) for v in row])
                count += 1
        return WriteResult(path, self.strategy, count, 1, time.perf_counter() - started)


def writer_for(strategy: WriteStrategy, *, window_size: int = 100, delimiter: str = ",") -> Any:
    if strategy is WriteStrategy.IN_MEMORY:
        return InMemoryWorkbookWriter()
    if strategy is WriteStrategy.STREAMING:
        return WindowedStreamingWriter(window_size=window_size)
    return FlatTextWriter(delimiter=delimiter)
