from __future__ import annotations

import pytest

from sheet_migrate.errors import StructuralError
from sheet_migrate.excel.normalize import CellError, RowNormalizer
from sheet_migrate.excel.registry import FieldRegistry, normalize_header
from sheet_migrate.models.config_models import FieldDescriptor, SheetTemplate


def _registry() -> FieldRegistry:
    template = SheetTemplate(
        sheet="Items",
        fields=(
            FieldDescriptor(column="Item Code", field="code", required=True),
            FieldDescriptor(column="Qty", field="qty", target_type="integer"),
            FieldDescriptor(column="Note", field="note"),
        ),
    )
    return FieldRegistry([template])


def test_normalize_header_collapses_whitespace_and_case():
    assert normalize_header("  Item\n  CODE ") == "item code"
    assert normalize_header(None) == ""


def test_bind_by_header_text():
    binding = _registry().bind("Items", {1: "qty", 2: "ITEM  code", 3: "Note"})
    assert dict(binding.columns) == {1: "qty", 2: "code", 3: "note"}
    assert binding.width == 3
    assert binding.fields == ("qty", "code", "note")


def test_bind_missing_optional_only_warns(caplog):
    binding = _registry().bind("Items", {1: "Item Code", 2: "Qty"})
    assert binding.missing_optional == ("Note",)
    assert "optional columns not found" in caplog.text


def test_bind_missing_required_is_structural():
    with pytest.raises(StructuralError, match="missing columns"):
        _registry().bind("Items", {1: "Qty", 2: "Note"})


def test_bind_duplicate_header_is_structural():
    with pytest.raises(StructuralError, match="duplicate header"):
        _registry().bind("Items", {1: "Item Code", 2: "item code"})


def test_bind_empty_header_is_structural():
    with pytest.raises(StructuralError, match="is empty"):
        _registry().bind("Items", {})


def test_fixed_position_overrides_header():
    template = SheetTemplate(
        sheet="Fixed",
        fields=(FieldDescriptor(column="ignored", field="code", required=True, position=2),),
    )
    binding = FieldRegistry([template]).bind("Fixed", {1: "whatever"})
    assert dict(binding.columns) == {2: "code"}


def test_unknown_sheet_template():
    with pytest.raises(StructuralError, match="no template"):
        _registry().template("Other")


class TestRowNormalizer:
    def _normalizer(self, sentinels: frozenset[str] = frozenset()) -> RowNormalizer:
        binding = _registry().bind("Items", {1: "Item Code", 2: "Qty", 3: "Note"})
        return RowNormalizer(binding, sentinels)

    def test_values_are_trimmed_and_unbound_fields_none(self):
        row = self._normalizer().normalize(5, {1: "  A-1 ", 2: "3"})
        assert row is not None
        assert row.row_num == 5
        assert row.fields == {"code": "A-1", "qty": "3", "note": None}
        assert not row.is_parse_error

    def test_blank_row_is_dropped(self):
        assert self._normalizer().normalize(2, {1: "   ", 3: ""}) is None

    def test_null_sentinels(self):
        row = self._normalizer(frozenset({"NULL", "N/A"})).normalize(2, {1: "A", 3: "n/a"})
        assert row.fields["note"] is None

    def test_cell_beyond_width_is_parse_error(self):
        row = self._normalizer().normalize(7, {1: "A", 5: "stray"})
        assert row.is_parse_error
        assert "beyond header width 3" in row.issues[0]
        assert row.fields["code"] == "A"

    def test_error_cell_is_parse_error(self):
        row = self._normalizer().normalize(8, {1: "A", 2: CellError("#REF!")})
        assert row.is_parse_error
        assert row.issues == ("qty: #REF!",)
        assert row.fields["qty"] is None
