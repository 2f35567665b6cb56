from __future__ import annotations

import sqlite3

import pytest

from sheet_migrate.db.dialect import PostgresDialect, SqliteDialect
from sheet_migrate.errors import ConfigError
from sheet_migrate.models.config_models import FieldDescriptor, ReferenceCheck, SheetTemplate
from sheet_migrate.services import validation_sql as vsql
from sheet_migrate.services.validation import validation_waves


def _sheet(name: str, *parents: str) -> SheetTemplate:
    refs = tuple(
        ReferenceCheck(fields=("code",), table=p.lower(), columns=("code",), staged_sheet=p) for p in parents
    )
    return SheetTemplate(sheet=name, fields=(FieldDescriptor("Code", "code"),), references=refs)


class TestValidationWaves:
    def test_parents_first(self):
        templates = (_sheet("Lines", "Orders"), _sheet("Orders", "Customers"), _sheet("Customers"), _sheet("Items"))
        assert validation_waves(templates) == [["Customers", "Items"], ["Orders"], ["Lines"]]

    def test_unconfigured_staged_sheet_is_ignored(self):
        assert validation_waves((_sheet("Orders", "Archive"),)) == [["Orders"]]

    def test_cycle(self):
        with pytest.raises(ConfigError, match="form a cycle"):
            validation_waves((_sheet("A", "B"), _sheet("B", "A")))

    def test_self_reference_rejected(self):
        with pytest.raises(ConfigError, match="cannot reference its own sheet"):
            _sheet("Employees", "Employees")


class TestReferenceSql:
    def test_staged_parent_must_be_promoted(self):
        statements = vsql.reference_checks(SqliteDialect(), _sheet("Orders", "Customers"), "job", 2, 10)
        [(sql, params, counted)] = [s for s in statements if s[0].startswith("CREATE TEMPORARY TABLE tmp_ref_missing_0")]
        assert "JOIN staging_valid xv ON xv.job_id = x.job_id" in sql
        assert "NOT x.parse_error" not in sql
        assert params == ("job", "Customers")
        assert counted is False


class TestCalendarCheck:
    def test_date_field_gets_calendar_clause(self):
        template = SheetTemplate(sheet="Orders", fields=(FieldDescriptor("Order Date", "order_date", target_type="date"),))
        [(sql, _, _)] = vsql.field_checks(PostgresDialect(), template, "job", 1, 5)
        assert "pg_input_is_valid(r.fields->>'order_date', 'date')" in sql

    def test_text_field_has_none(self):
        template = SheetTemplate(sheet="Customers", fields=(FieldDescriptor("Email", "email", format="email"),))
        [(sql, _, _)] = vsql.field_checks(SqliteDialect(), template, "job", 1, 5)
        assert "datetime(" not in sql

    @pytest.mark.parametrize(
        "value, ok",
        [
            ("2024-02-29", True),
            ("2024-02-30", False),
            ("2023-02-29", False),
            ("2024-13-01", False),
            ("2024-01-31 23:59", True),
            ("2024-01-31 25:00", False),
        ],
    )
    def test_sqlite_calendar_expression(self, value, ok):
        expr = SqliteDialect().calendar_valid("?", "datetime")
        conn = sqlite3.connect(":memory:")
        try:
            (result,) = conn.execute(f"SELECT {expr.replace('?', '?1')}", (value,)).fetchone()
        finally:
            conn.close()
        assert bool(result) is ok
