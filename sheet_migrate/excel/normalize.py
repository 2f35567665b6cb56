from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass

from .registry import HeaderBinding

"""In-stream row normalizer.

Cheap structural checks applied to every row during ingest:
- blank rows (nothing in any table column) are dropped
- populated cells beyond the table width mark the row as a parse error
- error cells (``#REF!``, ``#N/A`` ...) or undecodable values in bound columns
  mark the row as a parse error

Domain rules (required / format / enum / duplicates / references) are not
checked here; they run once, set-based, in the validation engine.
"""

__all__ = [
    "CellError",
    "RawRow",
    "RowNormalizer",
]


class CellError(str):
    """Cell value that could not be turned into text (error cell, bad index)."""


@dataclass(frozen=True)
class RawRow:
    row_num: int  # physical sheet row (1-based)
    fields: dict[str, str | None]
    issues: tuple[str, ...] = ()

    @property
    def is_parse_error(self) -> bool:
        return bool(self.issues)


class RowNormalizer:
    def __init__(self, binding: HeaderBinding, null_sentinels: frozenset[str] = frozenset()) -> None:
        self.binding = binding
        self.null_sentinels = null_sentinels

    def _clean(self, value: str | None) -> str | None:
        if value is None or isinstance(value, CellError):
            return value
        stripped = value.strip()
        if not stripped:
            return None
        # NULL サニタイズ
        if self.null_sentinels and stripped.upper() in self.null_sentinels:
            return None
        return stripped

    def normalize(self, row_num: int, cells: Mapping[int, str]) -> RawRow | None:
        """Return the normalized row, or None for a blank row."""
        binding = self.binding
        fields: dict[str, str | None] = {name: None for name in binding.columns.values()}
        issues: list[str] = []
        extra = 0
        for idx, raw in cells.items():
            value = self._clean(raw)
            if value is None:
                continue
            name = binding.columns.get(idx)
            if name is None:
                if idx > binding.width:
                    extra += 1
                continue
            if isinstance(value, CellError):
                issues.append(f"{name}: {value}")
                fields[name] = None
                continue
            fields[name] = value
        if extra:
            issues.insert(0, f"{extra} populated cell(s) beyond header width {binding.width}")
        if not issues and all(v is None for v in fields.values()):
            return None
        return RawRow(row_num=row_num, fields=fields, issues=tuple(issues))
