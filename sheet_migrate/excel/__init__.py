from .normalize import CellError, RawRow, RowNormalizer
from .reader import SheetEstimate, SheetRowStream, WorkbookReader, early_validate
from .registry import FieldRegistry, HeaderBinding

__all__ = [
    "CellError",
    "FieldRegistry",
    "HeaderBinding",
    "RawRow",
    "RowNormalizer",
    "SheetEstimate",
    "SheetRowStream",
    "WorkbookReader",
    "early_validate",
]
