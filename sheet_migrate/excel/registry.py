from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass

from ..errors import StructuralError
from ..models.config_models import FieldDescriptor, SheetTemplate

"""Field Descriptor Registry.

Pure lookup: maps header names (or fixed positions) of a sheet to the internal
field names declared in its ``SheetTemplate``. Header matching ignores case
and surrounding whitespace.
"""

__all__ = [
    "HeaderBinding",
    "FieldRegistry",
    "normalize_header",
]

logger = logging.getLogger(__name__)


def normalize_header(value: str | None) -> str:
    return " ".join(str(value or "").split()).casefold()


@dataclass(frozen=True)
class HeaderBinding:
    """Resolved column layout of one sheet."""
    sheet_name: str
    header_row: int
    columns: Mapping[int, str]  # 1-based column index -> field name
    width: int  # last column that belongs to the table (header or fixed position)
    missing_optional: tuple[str, ...] = ()

    @property
    def fields(self) -> tuple[str, ...]:
        return tuple(self.columns[i] for i in sorted(self.columns))


class FieldRegistry:
    """Descriptor lookup for all configured sheet templates."""

    def __init__(self, templates: Iterable[SheetTemplate]) -> None:
        self._templates = {t.sheet: t for t in templates}

    @property
    def sheets(self) -> tuple[str, ...]:
        return tuple(self._templates)

    def template(self, sheet_name: str) -> SheetTemplate:
        try:
            return self._templates[sheet_name]
        except KeyError:
            raise StructuralError(f"no template configured for sheet '{sheet_name}'") from None

    def descriptors(self, sheet_name: str) -> tuple[FieldDescriptor, ...]:
        return self.template(sheet_name).fields

    def bind(self, sheet_name: str, header_cells: Mapping[int, str]) -> HeaderBinding:
        """Bind a header row to the sheet's descriptors.

        Raises:
            StructuralError: header row empty, a header appears twice, or a
                required column cannot be located.
        """
        template = self.template(sheet_name)
        by_name: dict[str, int] = {}
        for idx, text in header_cells.items():
            key = normalize_header(text)
            if not key:
                continue
            if key in by_name:
                raise StructuralError(f"sheet '{sheet_name}': duplicate header '{text}'")
            by_name[key] = idx
        if not by_name and not any(d.position for d in template.fields):
            raise StructuralError(f"sheet '{sheet_name}': header row {template.header_row} is empty")

        columns: dict[int, str] = {}
        missing_required: list[str] = []
        missing_optional: list[str] = []
        for d in template.fields:
            idx = d.position if d.position is not None else by_name.get(normalize_header(d.column))
            if idx is None:
                (missing_required if d.required else missing_optional).append(d.column)
                continue
            if idx in columns:
                raise StructuralError(
                    f"sheet '{sheet_name}': column {idx} bound to both '{columns[idx]}' and '{d.field}'"
                )
            columns[idx] = d.field
        if missing_required:
            raise StructuralError(f"sheet '{sheet_name}' missing columns: {sorted(missing_required)}")
        if missing_optional:
            logger.warning(f"sheet '{sheet_name}': optional columns not found: {sorted(missing_optional)}")

        width = max([*by_name.values(), *columns.keys()], default=0)
        return HeaderBinding(
            sheet_name=sheet_name,
            header_row=template.header_row,
            columns=columns,
            width=width,
            missing_optional=tuple(missing_optional),
        )
