from __future__ import annotations

from typing import Any

from ..db.dialect import Dialect
from ..models.config_models import ExistingDuplicateCheck, ReferenceCheck, SheetTemplate
from ..models.staging import ErrorType

"""Set-based validation statements.

Each builder returns a list of ``(sql, params, counted)`` tuples for one
(sheet, row range); ``counted`` marks the statements whose rowcount is the
step's affected-row total. Statements use ``%s`` placeholders and are run
through ``Dialect.sql`` by the engine.

Every error insert ends in ``ON CONFLICT DO NOTHING`` against the
(job_id, sheet_name, row_num, error_type) key, so a re-run adds nothing.
Rows already promoted to staging_valid are left out of every check.
"""

__all__ = [
    "Statement",
    "field_checks",
    "duplicates_in_file",
    "reference_checks",
    "existing_duplicates",
    "promote_valid",
]

Statement = tuple[str, tuple[Any, ...], bool]

_ERROR_INSERT = (
    "INSERT INTO staging_error "
    "(job_id, sheet_name, row_num, error_type, error_field, error_value, message, original_data) "
)

# staged, not parse-error, not yet promoted rows of one range; params: job, sheet, lo, hi
_SCOPE = (
    "FROM staging_raw r "
    "LEFT JOIN staging_valid sv ON sv.job_id = r.job_id AND sv.sheet_name = r.sheet_name "
    "AND sv.row_num = r.row_num "
    "WHERE r.job_id = %s AND r.sheet_name = %s AND r.row_num BETWEEN %s AND %s "
    "AND NOT r.parse_error AND sv.row_num IS NULL"
)


def _wrap_union(branches: list[tuple[str, list[Any]]]) -> Statement:
    sql = " UNION ALL ".join(b for b, _ in branches)
    params: list[Any] = []
    for _, p in branches:
        params.extend(p)
    return (f"{_ERROR_INSERT}SELECT * FROM ({sql}) v WHERE 1 = 1 ON CONFLICT DO NOTHING", tuple(params), True)


def _joined(exprs: list[str]) -> str:
    return " || ',' || ".join(exprs)


def field_checks(dialect: Dialect, template: SheetTemplate, job_id: str, lo: int, hi: int) -> list[Statement]:
    """REQUIRED_MISSING / INVALID_FORMAT / INVALID_ENUM in a single statement."""
    scope = [job_id, template.sheet, lo, hi]
    branches: list[tuple[str, list[Any]]] = []
    for d in template.fields:
        f = dialect.json_field("r.fields", d.field)
        present = f"{f} IS NOT NULL AND TRIM({f}) <> ''"
        if d.required:
            branches.append(
                (
                    f"SELECT r.job_id, r.sheet_name, r.row_num, '{ErrorType.REQUIRED_MISSING.value}' AS error_type, "
                    f"'{d.field}' AS error_field, CAST(NULL AS TEXT) AS error_value, %s AS message, "
                    f"r.fields AS original_data {_SCOPE} AND ({f} IS NULL OR TRIM({f}) = '')",
                    [f"{d.column} is required", *scope],
                )
            )
        pattern = d.pattern
        if pattern is not None:
            bad = f"NOT {dialect.regex_match(f)}"
            if d.calendar_kind is not None:
                # right shape, impossible day (2024-02-30)
                bad = f"({bad} OR NOT {dialect.calendar_valid(f, d.calendar_kind)})"
            branches.append(
                (
                    f"SELECT r.job_id, r.sheet_name, r.row_num, '{ErrorType.INVALID_FORMAT.value}', "
                    f"'{d.field}', {f}, %s, r.fields "
                    f"{_SCOPE} AND {present} AND {bad}",
                    [f"{d.column} does not match format {d.format or d.target_type}", *scope, pattern],
                )
            )
        if d.allowed_values:
            marks = ", ".join(["%s"] * len(d.allowed_values))
            branches.append(
                (
                    f"SELECT r.job_id, r.sheet_name, r.row_num, '{ErrorType.INVALID_ENUM.value}', "
                    f"'{d.field}', {f}, %s, r.fields "
                    f"{_SCOPE} AND {present} AND {f} NOT IN ({marks})",
                    [f"{d.column} must be one of {list(d.allowed_values)}", *scope, *d.allowed_values],
                )
            )
    if not branches:
        return []
    return [_wrap_union(branches)]


def duplicates_in_file(dialect: Dialect, template: SheetTemplate, job_id: str, lo: int, hi: int) -> list[Statement]:
    """DUP_IN_FILE for every occurrence of a business key after its first (ranked over the whole sheet)."""
    if not template.business_key:
        return []
    key_fields = ",".join(template.business_key)
    sql = (
        f"{_ERROR_INSERT}"
        f"SELECT d.job_id, d.sheet_name, d.row_num, '{ErrorType.DUP_IN_FILE.value}', '{key_fields}', "
        "d.business_key, %s || CAST(d.first_row AS TEXT), d.fields "
        "FROM ("
        " SELECT r.job_id, r.sheet_name, r.row_num, r.business_key, r.fields,"
        " ROW_NUMBER() OVER (PARTITION BY r.business_key ORDER BY r.row_num) AS rn,"
        " MIN(r.row_num) OVER (PARTITION BY r.business_key) AS first_row"
        " FROM staging_raw r"
        " WHERE r.job_id = %s AND r.sheet_name = %s AND r.business_key IS NOT NULL AND NOT r.parse_error"
        ") d "
        "LEFT JOIN staging_valid sv ON sv.job_id = d.job_id AND sv.sheet_name = d.sheet_name "
        "AND sv.row_num = d.row_num "
        "WHERE d.rn > 1 AND d.row_num BETWEEN %s AND %s AND sv.row_num IS NULL "
        "ON CONFLICT DO NOTHING"
    )
    params = ("duplicate business key, first seen at row ", job_id, template.sheet, lo, hi)
    return [(sql, params, True)]


def _key_table(
    dialect: Dialect, name: str, fields: tuple[str, ...], job_id: str, sheet: str, lo: int, hi: int
) -> list[Statement]:
    """Temp table of the distinct key tuples (k1..kn) staged in one range."""
    exprs = [dialect.json_field("r.fields", f) for f in fields]
    cols = ", ".join(f"{e} AS k{i}" for i, e in enumerate(exprs, 1))
    not_null = " AND ".join(f"{e} IS NOT NULL" for e in exprs)
    return [
        (f"DROP TABLE IF EXISTS {name}", (), False),
        (f"CREATE TEMPORARY TABLE {name} AS SELECT DISTINCT {cols} {_SCOPE} AND {not_null}", (job_id, sheet, lo, hi), False),
    ]


def _errors_from_keys(
    dialect: Dialect,
    keys_table: str,
    fields: tuple[str, ...],
    error_type: ErrorType,
    message: str,
    job_id: str,
    sheet: str,
    lo: int,
    hi: int,
) -> Statement:
    exprs = [dialect.json_field("r.fields", f) for f in fields]
    on = " AND ".join(f"m.k{i} = {e}" for i, e in enumerate(exprs, 1))
    sql = (
        f"{_ERROR_INSERT}SELECT * FROM ("
        f"SELECT r.job_id, r.sheet_name, r.row_num, '{error_type.value}' AS error_type, "
        f"'{','.join(fields)}' AS error_field, {_joined(exprs)} AS error_value, %s AS message, "
        f"r.fields AS original_data "
        f"{_SCOPE.replace('LEFT JOIN staging_valid', f'JOIN {keys_table} m ON {on} LEFT JOIN staging_valid', 1)}"
        ") v WHERE 1 = 1 ON CONFLICT DO NOTHING"
    )
    return (sql, (message, job_id, sheet, lo, hi), True)


def reference_checks(dialect: Dialect, template: SheetTemplate, job_id: str, lo: int, hi: int) -> list[Statement]:
    """REF_NOT_FOUND: distinct keys are looked up once against the referenced table
    and the promoted rows of the referenced staged sheet."""
    statements: list[Statement] = []
    for idx, ref in enumerate(template.references):
        statements.extend(_reference(dialect, idx, ref, template.sheet, job_id, lo, hi))
    return statements


def _reference(
    dialect: Dialect, idx: int, ref: ReferenceCheck, sheet: str, job_id: str, lo: int, hi: int
) -> list[Statement]:
    keys, missing = f"tmp_ref_keys_{idx}", f"tmp_ref_missing_{idx}"
    n = len(ref.fields)
    on_table = " AND ".join(f"CAST(t.{c} AS TEXT) = k.k{i}" for i, c in enumerate(ref.columns, 1))
    select_keys = ", ".join(f"k.k{i}" for i in range(1, n + 1))
    staged_join, staged_filter = "", ""
    params: tuple[Any, ...] = ()
    if ref.staged_sheet is not None:
        staged_fields = ref.staged_fields or ref.fields
        inner = ", ".join(
            f"{dialect.json_field('x.fields', f)} AS s{i}" for i, f in enumerate(staged_fields, 1)
        )
        on_staged = " AND ".join(f"st.s{i} = k.k{i}" for i in range(1, n + 1))
        # only promoted parent rows count; the parent sheet is validated first
        staged_join = (
            f" LEFT JOIN (SELECT DISTINCT {inner} FROM staging_raw x"
            " JOIN staging_valid xv ON xv.job_id = x.job_id AND xv.sheet_name = x.sheet_name"
            " AND xv.row_num = x.row_num"
            " WHERE x.job_id = %s AND x.sheet_name = %s) st"
            f" ON {on_staged}"
        )
        staged_filter = " AND st.s1 IS NULL"
        params = (job_id, ref.staged_sheet)
    statements = _key_table(dialect, keys, ref.fields, job_id, sheet, lo, hi)
    statements.append((f"DROP TABLE IF EXISTS {missing}", (), False))
    statements.append(
        (
            f"CREATE TEMPORARY TABLE {missing} AS SELECT {select_keys} FROM {keys} k "
            f"LEFT JOIN {ref.table} t ON {on_table}{staged_join} "
            f"WHERE t.{ref.columns[0]} IS NULL{staged_filter}",
            params,
            False,
        )
    )
    target = ", ".join(f"{ref.table}.{c}" for c in ref.columns)
    statements.append(
        _errors_from_keys(
            dialect, missing, ref.fields, ErrorType.REF_NOT_FOUND, f"no matching {target}", job_id, sheet, lo, hi
        )
    )
    statements.append((f"DROP TABLE {missing}", (), False))
    statements.append((f"DROP TABLE {keys}", (), False))
    return statements


def existing_duplicates(dialect: Dialect, template: SheetTemplate, job_id: str, lo: int, hi: int) -> list[Statement]:
    """DUP_IN_DB: keys already present in the authoritative table."""
    check: ExistingDuplicateCheck | None = template.existing_duplicates
    if check is None:
        return []
    keys, hits = "tmp_dup_keys", "tmp_dup_hits"
    n = len(check.fields)
    on_table = " AND ".join(f"CAST(t.{c} AS TEXT) = k.k{i}" for i, c in enumerate(check.columns, 1))
    select_keys = ", ".join(f"k.k{i}" for i in range(1, n + 1))
    statements = _key_table(dialect, keys, check.fields, job_id, template.sheet, lo, hi)
    statements.append((f"DROP TABLE IF EXISTS {hits}", (), False))
    statements.append(
        (
            f"CREATE TEMPORARY TABLE {hits} AS SELECT DISTINCT {select_keys} FROM {keys} k "
            f"JOIN {check.table} t ON {on_table}",
            (),
            False,
        )
    )
    statements.append(
        _errors_from_keys(
            dialect,
            hits,
            check.fields,
            ErrorType.DUP_IN_DB,
            f"already exists in {check.table}",
            job_id,
            template.sheet,
            lo,
            hi,
        )
    )
    statements.append((f"DROP TABLE {hits}", (), False))
    statements.append((f"DROP TABLE {keys}", (), False))
    return statements


def promote_valid(dialect: Dialect, template: SheetTemplate, job_id: str, lo: int, hi: int) -> list[Statement]:
    """Copy rows with no staged error into staging_valid (anti-join, idempotent)."""
    sql = (
        "INSERT INTO staging_valid (job_id, sheet_name, row_num) "
        "SELECT r.job_id, r.sheet_name, r.row_num FROM staging_raw r "
        "LEFT JOIN staging_error e ON e.job_id = r.job_id AND e.sheet_name = r.sheet_name "
        "AND e.row_num = r.row_num "
        "WHERE r.job_id = %s AND r.sheet_name = %s AND r.row_num BETWEEN %s AND %s "
        "AND NOT r.parse_error AND e.row_num IS NULL "
        "ON CONFLICT DO NOTHING"
    )
    return [(sql, (job_id, template.sheet, lo, hi), True)]
