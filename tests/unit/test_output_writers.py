from __future__ import annotations

import csv
from pathlib import Path

import pytest
from openpyxl import load_workbook

from sheet_migrate.models.config_models import OutputConfig, OutputThresholds
from sheet_migrate.output.export import export_rows
from sheet_migrate.output.selector import WriteStrategy
from sheet_migrate.output.writers import (
    FlatTextWriter,
    InMemoryWorkbookWriter,
    StyleCache,
    WindowedStreamingWriter,
    writer_for,
)

HEADER = ["sheet_name", "row_num", "message", "original_data"]


def _rows(n: int):
    for i in range(n):
        yield ["Orders", i + 2, f"bad row {i}", {"order_no": f"O{i}"}]


def test_style_cache_reuses_objects():
    cache = StyleCache()
    assert cache.font(bold=True) is cache.font(bold=True)
    assert cache.fill("DDEBF7") is cache.fill("DDEBF7")
    cache.font(bold=False)
    assert len(cache) == 3


def test_in_memory_writer(tmp_path: Path):
    result = InMemoryWorkbookWriter().write(tmp_path / "e.xlsx", HEADER, _rows(3))
    assert result.strategy is WriteStrategy.IN_MEMORY
    assert result.rows_written == 3
    wb = load_workbook(result.path)
    ws = wb["errors"]
    assert [c.value for c in ws[1]] == HEADER
    assert ws["A1"].font.bold
    assert ws.freeze_panes == "A2"
    assert ws["D2"].value == '{"order_no": "O0"}'
    assert ws.max_row == 4


def test_streaming_writer_bounded_window(tmp_path: Path):
    writer = WindowedStreamingWriter(window_size=10)
    result = writer.write(tmp_path / "e.xlsx", HEADER, _rows(25))
    assert result.rows_written == 25
    assert result.sheets == 1
    assert writer.peak_window == 10
    ws = load_workbook(result.path, read_only=True)["errors"]
    values = list(ws.values)
    assert list(values[0]) == HEADER
    assert len(values) == 26
    assert values[-1][2] == "bad row 24"


def test_streaming_writer_rolls_over_sheets(tmp_path: Path):
    writer = WindowedStreamingWriter(window_size=3, max_sheet_rows=5)
    result = writer.write(tmp_path / "e.xlsx", HEADER, _rows(10))
    assert result.sheets == 3
    wb = load_workbook(result.path, read_only=True)
    assert wb.sheetnames == ["errors", "errors_2", "errors_3"]
    counts = []
    for name in wb.sheetnames:
        values = list(wb[name].values)
        assert list(values[0]) == HEADER
        counts.append(len(values) - 1)
    assert counts == [4, 4, 2]


def test_streaming_writer_empty_input_has_header(tmp_path: Path):
    result = WindowedStreamingWriter().write(tmp_path / "e.xlsx", HEADER, [])
    assert result.rows_written == 0
    assert result.sheets == 1
    values = list(load_workbook(result.path, read_only=True)["errors"].values)
    assert list(values[0]) == HEADER


def test_streaming_writer_rejects_zero_window():
    with pytest.raises(ValueError):
        WindowedStreamingWriter(window_size=0)


def test_flat_text_writer(tmp_path: Path):
    rows = [["Orders", 2, None, {"a": 1}], ["Orders", 3, "x;y", None]]
    result = FlatTextWriter(delimiter=";").write(tmp_path / "e.csv", HEADER, rows)
    assert result.strategy is WriteStrategy.FLAT_TEXT
    with result.path.open(encoding="utf-8", newline="") as f:
        lines = list(csv.reader(f, delimiter=";"))
    assert lines[0] == HEADER
    assert lines[1] == ["Orders", "2", "", '{"a": 1}']
    assert lines[2] == ["Orders", "3", "x;y", ""]


def test_writer_for():
    assert isinstance(writer_for(WriteStrategy.IN_MEMORY), InMemoryWorkbookWriter)
    streaming = writer_for(WriteStrategy.STREAMING, window_size=7)
    assert isinstance(streaming, WindowedStreamingWriter)
    assert streaming.window_size == 7
    assert isinstance(writer_for(WriteStrategy.FLAT_TEXT, delimiter="\t"), FlatTextWriter)


class TestExportRows:
    def test_suffix_follows_strategy(self, tmp_path: Path):
        output = OutputConfig(
            thresholds=OutputThresholds(
                in_memory_max_rows=5, in_memory_max_cells=100, flat_text_min_rows=10, flat_text_min_cells=1000
            )
        )
        small = export_rows(tmp_path / "out" / "a.xlsx", HEADER, _rows(2), 2, output)
        assert small.path.suffix == ".xlsx"
        assert small.strategy is WriteStrategy.IN_MEMORY

        mid = export_rows(tmp_path / "out" / "b.xlsx", HEADER, _rows(6), 6, output)
        assert mid.strategy is WriteStrategy.STREAMING

        large = export_rows(tmp_path / "out" / "c.xlsx", HEADER, _rows(12), 12, output)
        assert large.strategy is WriteStrategy.FLAT_TEXT
        assert large.path.name == "c.csv"
        assert large.path.exists()

    def test_flags_are_forwarded(self, tmp_path: Path):
        result = export_rows(tmp_path / "d.xlsx", HEADER, _rows(1), 1, OutputConfig(), prefer_flat_text=True, force_streaming=True)
        assert result.strategy is WriteStrategy.FLAT_TEXT
