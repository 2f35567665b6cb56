from __future__ import annotations

import pytest

from sheet_migrate.db.dialect import PostgresDialect, SqliteDialect
from sheet_migrate.errors import ConfigError
from sheet_migrate.models.config_models import ApplyColumn, ApplyTarget, LookupColumn
from sheet_migrate.services.apply import apply_levels, build_insert_sql


def _target(table: str, depends_on: tuple[str, ...] = (), lookups: tuple[LookupColumn, ...] = ()) -> ApplyTarget:
    return ApplyTarget(
        table=table,
        sheet=table.title(),
        key=("code",),
        columns=(ApplyColumn("code", "code"), ApplyColumn("amount", "amount", "decimal")),
        lookups=lookups,
        depends_on=depends_on,
    )


class TestApplyLevels:
    def test_dependency_order(self):
        targets = (_target("lines", ("orders",)), _target("orders", ("customers",)), _target("customers"), _target("items"))
        levels = apply_levels(targets)
        assert [[t.table for t in lv] for lv in levels] == [["customers", "items"], ["orders"], ["lines"]]

    def test_unknown_dependency(self):
        with pytest.raises(ConfigError, match="unknown depends_on"):
            apply_levels((_target("orders", ("customers",)),))

    def test_cycle(self):
        with pytest.raises(ConfigError, match="dependency cycle"):
            apply_levels((_target("a", ("b",)), _target("b", ("a",))))

    def test_empty(self):
        assert apply_levels(()) == []


class TestBuildInsertSql:
    def test_first_staged_row_wins_and_existing_keys_skipped(self):
        lookup = LookupColumn("customer_id", "customer_code", "customers", "code", "id")
        sql = build_insert_sql(SqliteDialect(), _target("orders", ("customers",), (lookup,)))
        assert sql.startswith("INSERT INTO orders (code, amount, customer_id) ")
        assert "ROW_NUMBER() OVER (PARTITION BY CAST(json_extract(r.fields, '$.code') AS TEXT)" in sql
        assert "LEFT JOIN customers l0 ON l0.code = CAST(json_extract(r.fields, '$.customer_code') AS TEXT)" in sql
        assert "l0.id AS customer_id" in sql
        assert "LEFT JOIN orders x ON x.code = s.code" in sql
        assert sql.endswith("WHERE s.rn_ = 1 AND s.code IS NOT NULL AND x.code IS NULL")

    def test_postgres_spelling(self):
        sql = build_insert_sql(PostgresDialect(), _target("customers"))
        assert "CAST(r.fields->>'amount' AS NUMERIC) AS amount" in sql
        assert sql.count("%s") == 2
        assert " l0 " not in sql
