from __future__ import annotations

import logging
import time
import xml.etree.ElementTree as ET
import zipfile
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from datetime import datetime, time as dt_time
from pathlib import Path, PurePosixPath
from typing import IO, Any

from openpyxl.styles.numbers import BUILTIN_FORMATS, is_date_format
from openpyxl.utils.cell import column_index_from_string, range_boundaries
from openpyxl.utils.datetime import MAC_EPOCH, WINDOWS_EPOCH, from_excel

from ..errors import StructuralError, WorkbookTooLargeError
from ..models.processing_result import ReadSummary
from .normalize import CellError, RawRow, RowNormalizer
from .registry import FieldRegistry, HeaderBinding

"""Streaming .xlsx reader.

The workbook is read as a zip container: the shared string table and the
cell style table are loaded once per file; each worksheet part is then driven
through ``xml.etree.ElementTree.iterparse`` one ``<row>`` at a time and parsed
elements are cleared as soon as the row is emitted, so memory stays bounded
by the widest row rather than the sheet size.

pandas/openpyxl load whole sheets into memory and are only used for previews
(``cli inspect``) and for writing exports.
"""

__all__ = [
    "SheetEstimate",
    "WorkbookReader",
    "SheetRowStream",
    "early_validate",
]

logger = logging.getLogger(__name__)

NS_MAIN = "http://schemas.openxmlformats.org/spreadsheetml/2006/main"
NS_DOC_REL = "http://schemas.openxmlformats.org/officeDocument/2006/relationships"
NS_PKG_REL = "http://schemas.openxmlformats.org/package/2006/relationships"
_M = f"{{{NS_MAIN}}}"

TAG_ROW = f"{_M}row"
TAG_C = f"{_M}c"
TAG_V = f"{_M}v"
TAG_IS = f"{_M}is"
TAG_T = f"{_M}t"
TAG_R = f"{_M}r"
TAG_SI = f"{_M}si"
TAG_SHEET_DATA = f"{_M}sheetData"
TAG_DIMENSION = f"{_M}dimension"

# Rough bytes of worksheet XML per cell (openpyxl/Excel output), used when a
# sheet carries no <dimension> element.
EST_BYTES_PER_CELL = 32

XLSX_MAX_ROWS = 1_048_576


def _rich_text(el: ET.Element) -> str:
    """Text of <si>/<is>: plain <t> or rich-text runs, phonetic runs excluded."""
    parts: list[str] = []
    for child in el:
        if child.tag == TAG_T:
            parts.append(child.text or "")
        elif child.tag == TAG_R:
            t = child.find(TAG_T)
            if t is not None:
                parts.append(t.text or "")
    return "".join(parts)


def _column_letters(ref: str) -> str:
    end = 0
    while end < len(ref) and ref[end].isalpha():
        end += 1
    return ref[:end]


def _format_temporal(value: datetime | dt_time) -> str:
    if isinstance(value, datetime):
        if value.hour == value.minute == value.second == 0 and not value.microsecond:
            return value.date().isoformat()
        return value.isoformat(sep=" ", timespec="seconds")
    return value.isoformat(timespec="seconds")


@dataclass(frozen=True)
class SheetEstimate:
    sheet_name: str
    rows: int  # estimated physical rows (header included)
    columns: int
    source: str  # "dimension" | "size"

    @property
    def cells(self) -> int:
        return self.rows * self.columns


class StyleTable:
    """cellXfs index -> "is a date format" flag, loaded once per workbook."""

    def __init__(self, date_flags: list[bool]) -> None:
        self._date_flags = date_flags

    @classmethod
    def parse(cls, stream: IO[bytes]) -> StyleTable:
        root = ET.parse(stream).getroot()
        custom: dict[int, str] = {}
        num_fmts = root.find(f"{_M}numFmts")
        if num_fmts is not None:
            for fmt in num_fmts.findall(f"{_M}numFmt"):
                custom[int(fmt.get("numFmtId", "0"))] = fmt.get("formatCode", "")
        flags: list[bool] = []
        cell_xfs = root.find(f"{_M}cellXfs")
        if cell_xfs is not None:
            for xf in cell_xfs.findall(f"{_M}xf"):
                fmt_id = int(xf.get("numFmtId", "0"))
                code = custom.get(fmt_id, BUILTIN_FORMATS.get(fmt_id))
                flags.append(is_date_format(code))
        return cls(flags)

    def is_date(self, style_index: int) -> bool:
        return 0 <= style_index < len(self._date_flags) and self._date_flags[style_index]


class WorkbookReader:
    """Read-only access to one .xlsx container.

    Usage::

        with WorkbookReader(path, null_sentinels=cfg.null_sentinels) as wb:
            stream = wb.read_rows(registry, "Orders")
            for row in stream:
                ...
            print(stream.summary)
    """

    def __init__(self, source: str | Path | IO[bytes], null_sentinels: frozenset[str] = frozenset()) -> None:
        self.null_sentinels = null_sentinels
        try:
            self._zip = zipfile.ZipFile(source)
        except (zipfile.BadZipFile, OSError) as e:
            raise StructuralError(f"not a readable xlsx container: {e}") from e
        try:
            self._sheet_parts, self._epoch = self._load_workbook()
        except (KeyError, ET.ParseError) as e:
            self._zip.close()
            raise StructuralError(f"malformed workbook structure: {e}") from e
        self._shared_strings: list[str] | None = None
        self._styles: StyleTable | None = None

    # -- container --------------------------------------------------------
    def __enter__(self) -> WorkbookReader:
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()

    def close(self) -> None:
        self._zip.close()

    @property
    def sheet_names(self) -> list[str]:
        return list(self._sheet_parts)

    def _load_workbook(self) -> tuple[dict[str, str], datetime]:
        rels_root = ET.fromstring(self._zip.read("xl/_rels/workbook.xml.rels"))
        targets: dict[str, str] = {}
        for rel in rels_root.findall(f"{{{NS_PKG_REL}}}Relationship"):
            target = rel.get("Target", "")
            if target.startswith("/"):
                part = target.lstrip("/")
            else:
                part = str(PurePosixPath("xl") / target)
            targets[rel.get("Id", "")] = part

        wb_root = ET.fromstring(self._zip.read("xl/workbook.xml"))
        epoch = WINDOWS_EPOCH
        props = wb_root.find(f"{_M}workbookPr")
        if props is not None and props.get("date1904") in ("1", "true"):
            epoch = MAC_EPOCH
        parts: dict[str, str] = {}
        sheets = wb_root.find(f"{_M}sheets")
        for sheet in sheets if sheets is not None else []:
            rid = sheet.get(f"{{{NS_DOC_REL}}}id")
            if rid in targets:
                parts[sheet.get("name", "")] = targets[rid]
        return parts, epoch

    def _part(self, sheet_name: str) -> str:
        try:
            return self._sheet_parts[sheet_name]
        except KeyError:
            raise StructuralError(f"sheet '{sheet_name}' not found in workbook") from None

    @property
    def shared_strings(self) -> list[str]:
        if self._shared_strings is None:
            strings: list[str] = []
            if "xl/sharedStrings.xml" in self._zip.namelist():
                with self._zip.open("xl/sharedStrings.xml") as fh:
                    try:
                        for _, elem in ET.iterparse(fh, events=("end",)):
                            if elem.tag == TAG_SI:
                                strings.append(_rich_text(elem))
                                elem.clear()
                    except ET.ParseError as e:
                        raise StructuralError(f"malformed shared strings: {e}") from e
            self._shared_strings = strings
        return self._shared_strings

    @property
    def styles(self) -> StyleTable:
        if self._styles is None:
            if "xl/styles.xml" in self._zip.namelist():
                with self._zip.open("xl/styles.xml") as fh:
                    try:
                        self._styles = StyleTable.parse(fh)
                    except ET.ParseError as e:
                        raise StructuralError(f"malformed styles: {e}") from e
            else:
                self._styles = StyleTable([])
        return self._styles

    # -- sizing -----------------------------------------------------------
    def sheet_dimension(self, sheet_name: str) -> str | None:
        """``<dimension ref>`` of a sheet; stops reading at ``<sheetData>``."""
        with self._zip.open(self._part(sheet_name)) as fh:
            try:
                for event, elem in ET.iterparse(fh, events=("start",)):
                    if elem.tag == TAG_DIMENSION:
                        return elem.get("ref")
                    if elem.tag == TAG_SHEET_DATA:
                        return None
            except ET.ParseError as e:
                raise StructuralError(f"sheet '{sheet_name}': malformed XML: {e}") from e
        return None

    def estimate(self, sheet_name: str, fallback_columns: int = 1) -> SheetEstimate:
        ref = self.sheet_dimension(sheet_name)
        if ref and ":" in ref:
            try:
                _, _, max_col, max_row = range_boundaries(ref)
                return SheetEstimate(sheet_name, rows=max_row, columns=max_col, source="dimension")
            except ValueError:
                logger.debug(f"sheet '{sheet_name}': unusable dimension {ref!r}")
        size = self._zip.getinfo(self._part(sheet_name)).file_size
        columns = max(1, fallback_columns)
        rows = max(1, size // EST_BYTES_PER_CELL // columns)
        return SheetEstimate(sheet_name, rows=rows, columns=columns, source="size")

    # -- rows -------------------------------------------------------------
    def _cell_value(self, c: ET.Element) -> str | None:
        t = c.get("t", "n")
        if t == "inlineStr":
            is_el = c.find(TAG_IS)
            return _rich_text(is_el) if is_el is not None else None
        v = c.find(TAG_V)
        text = v.text if v is not None else None
        if text is None:
            return None
        if t == "s":
            try:
                return self.shared_strings[int(text)]
            except (IndexError, ValueError):
                return CellError(f"bad shared string index {text}")
        if t == "str":
            return text
        if t == "b":
            return "TRUE" if text.strip() in ("1", "true") else "FALSE"
        if t == "e":
            return CellError(text)
        if t == "d":
            # ISO 8601 date cell (strict/iso_dates writers)
            return text.replace("T", " ").rstrip("Z").removesuffix(" 00:00:00")
        try:
            number = float(text)
        except ValueError:
            return CellError(f"not a number: {text}")
        style = c.get("s")
        if style is not None and self.styles.is_date(int(style)):
            try:
                return _format_temporal(from_excel(number, self._epoch))
            except (OverflowError, ValueError):
                return CellError(f"invalid date serial {text}")
        if number.is_integer() and abs(number) < 1e15:
            return str(int(number))
        return text

    def iter_sheet_rows(self, sheet_name: str) -> Iterator[tuple[int, dict[int, str]]]:
        """Yield ``(row_num, {column_index: raw_text})`` for every stored row.

        Only the current row's elements are kept; each row is cleared (and
        detached from ``sheetData``) once emitted.
        """
        part = self._part(sheet_name)
        with self._zip.open(part) as fh:
            sheet_data: ET.Element | None = None
            last_row = 0
            try:
                for event, elem in ET.iterparse(fh, events=("start", "end")):
                    if event == "start":
                        if elem.tag == TAG_SHEET_DATA:
                            sheet_data = elem
                        continue
                    if elem.tag != TAG_ROW:
                        continue
                    r = elem.get("r")
                    row_num = int(r) if r else last_row + 1
                    cells: dict[int, str] = {}
                    col = 0
                    for c in elem:
                        if c.tag != TAG_C:
                            continue
                        ref = c.get("r")
                        col = column_index_from_string(_column_letters(ref)) if ref else col + 1
                        value = self._cell_value(c)
                        if value is not None:
                            cells[col] = value
                    last_row = row_num
                    elem.clear()
                    if sheet_data is not None:
                        sheet_data.clear()
                    yield row_num, cells
            except ET.ParseError as e:
                raise StructuralError(f"sheet '{sheet_name}': malformed XML near row {last_row + 1}: {e}") from e
            except ValueError as e:
                raise StructuralError(f"sheet '{sheet_name}': bad cell reference near row {last_row + 1}: {e}") from e

    def read_rows(
        self,
        registry: FieldRegistry,
        sheet_name: str,
        resume_after_row: int = 0,
    ) -> SheetRowStream:
        return SheetRowStream(self, registry, sheet_name, resume_after_row)


class SheetRowStream:
    """Lazy, finite, non-restartable sequence of ``RawRow`` for one sheet.

    ``binding`` is available once the header row has been read, ``summary``
    once the stream is exhausted.
    """

    def __init__(
        self,
        reader: WorkbookReader,
        registry: FieldRegistry,
        sheet_name: str,
        resume_after_row: int = 0,
    ) -> None:
        self.sheet_name = sheet_name
        self.binding: HeaderBinding | None = None
        self.summary: ReadSummary | None = None
        self.rows_seen = 0
        self.last_row_num = 0
        self._reader = reader
        self._registry = registry
        self._resume_after_row = resume_after_row
        self._it = self._generate()

    def __iter__(self) -> SheetRowStream:
        return self

    def __next__(self) -> RawRow:
        return next(self._it)

    def _generate(self) -> Iterator[RawRow]:
        started = time.perf_counter()
        template = self._registry.template(self.sheet_name)
        header_row = template.header_row
        normalizer: RowNormalizer | None = None
        emitted = blank = parse_errors = skipped = 0

        for row_num, cells in self._reader.iter_sheet_rows(self.sheet_name):
            if row_num < header_row:
                continue
            if normalizer is None:
                if row_num != header_row:
                    raise StructuralError(f"sheet '{self.sheet_name}': header row {header_row} is missing")
                self.binding = self._registry.bind(self.sheet_name, cells)
                normalizer = RowNormalizer(self.binding, self._reader.null_sentinels)
                self.last_row_num = row_num
                continue
            if row_num <= self._resume_after_row:
                skipped += 1
                self.last_row_num = row_num
                continue
            self.rows_seen += 1
            self.last_row_num = row_num
            row = normalizer.normalize(row_num, cells)
            if row is None:
                blank += 1
                continue
            if row.is_parse_error:
                parse_errors += 1
            emitted += 1
            yield row

        if normalizer is None:
            raise StructuralError(f"sheet '{self.sheet_name}': header row {header_row} is missing")
        self.summary = ReadSummary(
            sheet_name=self.sheet_name,
            rows_seen=self.rows_seen,
            rows_emitted=emitted,
            blank_rows=blank,
            parse_error_rows=parse_errors,
            skipped_rows=skipped,
            last_row_num=self.last_row_num,
            elapsed_seconds=time.perf_counter() - started,
        )
        logger.debug(
            f"sheet '{self.sheet_name}': rows_seen={self.rows_seen} emitted={emitted} "
            f"blank={blank} parse_errors={parse_errors} skipped={skipped}"
        )


def early_validate(
    reader: WorkbookReader,
    registry: FieldRegistry,
    sheets: list[str],
    max_rows: int,
    max_cells: int,
    on_estimate: Callable[[SheetEstimate], None] | None = None,
) -> list[SheetEstimate]:
    """Estimate sheet sizes before any row is read; abort when over limits.

    Raises:
        WorkbookTooLargeError: estimated data rows > ``max_rows`` or cells > ``max_cells``
    """
    estimates: list[SheetEstimate] = []
    for name in sheets:
        template = registry.template(name)
        est = reader.estimate(name, fallback_columns=len(template.fields))
        estimates.append(est)
        if on_estimate is not None:
            on_estimate(est)
    data_rows = sum(max(0, e.rows - registry.template(e.sheet_name).header_row) for e in estimates)
    cells = sum(e.cells for e in estimates)
    if data_rows > max_rows or cells > max_cells:
        if data_rows > XLSX_MAX_ROWS or cells > max_cells:
            recommendation = "split the workbook into smaller files or submit the data as delimited text"
        else:
            recommendation = "split the workbook into smaller files"
        raise WorkbookTooLargeError(
            f"workbook too large: estimated rows={data_rows} (max {max_rows}), "
            f"cells={cells} (max {max_cells}); {recommendation}",
            estimated_rows=data_rows,
            estimated_cells=cells,
            recommendation=recommendation,
        )
    return estimates
