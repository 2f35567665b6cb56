from __future__ import annotations

import logging
from collections.abc import Callable, Iterator, Sequence
from typing import Any

from ..db.batch_insert import BatchMetrics, batch_insert
from ..db.dialect import Dialect
from ..models.staging import StagedError, StagedRawRow

"""Staging Store: job-scoped raw / error / valid rows.

Writes take a cursor that belongs to the caller's transaction (see
``sheet_migrate.db.connection.transaction``); reads run on the store's own
connection. All statements are set-based; nothing here loops per staged row
against the database.
"""

__all__ = [
    "RAW_COLUMNS",
    "ERROR_COLUMNS",
    "StagingStore",
]

logger = logging.getLogger(__name__)

RAW_COLUMNS = ("job_id", "sheet_name", "row_num", "fields", "business_key", "parse_error")
ERROR_COLUMNS = (
    "job_id",
    "sheet_name",
    "row_num",
    "error_type",
    "error_field",
    "error_value",
    "message",
    "original_data",
)
EXPORT_COLUMNS = ("sheet_name", "row_num", "error_type", "error_field", "error_value", "message", "original_data")


class StagingStore:
    def __init__(self, conn: Any, dialect: Dialect, page_size: int = 1000) -> None:
        self.conn = conn
        self.dialect = dialect
        self.page_size = page_size

    # -- helpers ----------------------------------------------------------
    def execute(self, cur: Any, sql: str, params: Sequence[Any] = ()) -> Any:
        cur.execute(self.dialect.sql(sql), tuple(params))
        return cur

    def _scalar(self, sql: str, params: Sequence[Any] = ()) -> Any:
        cur = self.conn.cursor()
        try:
            row = self.execute(cur, sql, params).fetchone()
            return row[0] if row else None
        finally:
            cur.close()

    def _all(self, sql: str, params: Sequence[Any] = ()) -> list[tuple[Any, ...]]:
        cur = self.conn.cursor()
        try:
            return list(self.execute(cur, sql, params).fetchall())
        finally:
            cur.close()

    # -- writes -----------------------------------------------------------
    def insert_raw_rows(
        self,
        cur: Any,
        rows: Sequence[StagedRawRow],
        metrics_callback: Callable[[BatchMetrics], None] | None = None,
    ) -> int:
        result = batch_insert(
            cur,
            self.dialect,
            "staging_raw",
            RAW_COLUMNS,
            (r.as_params() for r in rows),
            page_size=self.page_size,
            metrics_callback=metrics_callback,
        )
        return result.inserted_rows

    def insert_errors(self, cur: Any, errors: Sequence[StagedError]) -> int:
        result = batch_insert(
            cur,
            self.dialect,
            "staging_error",
            ERROR_COLUMNS,
            (e.as_params() for e in errors),
            page_size=self.page_size,
        )
        return result.inserted_rows

    def purge(self, cur: Any, job_id: str) -> dict[str, int]:
        """Delete every staged row of a job (cleanup)."""
        counts: dict[str, int] = {}
        for table in ("staging_valid", "staging_error", "staging_raw"):
            self.execute(cur, f"DELETE FROM {table} WHERE job_id = %s", (job_id,))
            counts[table] = max(cur.rowcount, 0)
        logger.info(f"job {job_id}: staging purged {counts}")
        return counts

    # -- reads ------------------------------------------------------------
    def staged_sheets(self, job_id: str) -> list[str]:
        rows = self._all(
            "SELECT DISTINCT sheet_name FROM staging_raw WHERE job_id = %s ORDER BY sheet_name",
            (job_id,),
        )
        return [r[0] for r in rows]

    def row_range(self, job_id: str, sheet_name: str) -> tuple[int, int, int]:
        """(min row_num, max row_num, row count) of a staged sheet; zeros when empty."""
        rows = self._all(
            "SELECT MIN(row_num), MAX(row_num), COUNT(*) FROM staging_raw WHERE job_id = %s AND sheet_name = %s",
            (job_id, sheet_name),
        )
        lo, hi, count = rows[0]
        if not count:
            return (0, 0, 0)
        return (int(lo), int(hi), int(count))

    def count_raw(self, job_id: str, sheet_name: str | None = None, parse_error: bool | None = None) -> int:
        sql = "SELECT COUNT(*) FROM staging_raw WHERE job_id = %s"
        params: list[Any] = [job_id]
        if sheet_name is not None:
            sql += " AND sheet_name = %s"
            params.append(sheet_name)
        if parse_error is True:
            sql += " AND parse_error"
        elif parse_error is False:
            sql += " AND NOT parse_error"
        return int(self._scalar(sql, params) or 0)

    def count_valid(self, job_id: str, sheet_name: str | None = None) -> int:
        sql = "SELECT COUNT(*) FROM staging_valid WHERE job_id = %s"
        params: list[Any] = [job_id]
        if sheet_name is not None:
            sql += " AND sheet_name = %s"
            params.append(sheet_name)
        return int(self._scalar(sql, params) or 0)

    def count_errors(self, job_id: str) -> int:
        return int(self._scalar("SELECT COUNT(*) FROM staging_error WHERE job_id = %s", (job_id,)) or 0)

    def count_error_rows(self, job_id: str, include_parse_errors: bool = False) -> int:
        """Distinct rows referenced by at least one staged error."""
        parse_filter = "" if include_parse_errors else " AND NOT r.parse_error"
        return int(
            self._scalar(
                "SELECT COUNT(*) FROM ("
                " SELECT DISTINCT e.sheet_name, e.row_num FROM staging_error e"
                " JOIN staging_raw r ON r.job_id = e.job_id AND r.sheet_name = e.sheet_name"
                " AND r.row_num = e.row_num"
                f" WHERE e.job_id = %s{parse_filter}"
                ") x",
                (job_id,),
            )
            or 0
        )

    def errors_by_type(self, job_id: str) -> dict[str, int]:
        rows = self._all(
            "SELECT error_type, COUNT(*) FROM staging_error WHERE job_id = %s GROUP BY error_type ORDER BY error_type",
            (job_id,),
        )
        return {r[0]: int(r[1]) for r in rows}

    def iter_errors(self, job_id: str, fetch_size: int = 1000) -> Iterator[tuple[Any, ...]]:
        """Stream error rows (EXPORT_COLUMNS order) using keyset paging on id."""
        last_id = 0
        cols = ", ".join(EXPORT_COLUMNS)
        while True:
            page = self._all(
                f"SELECT id, {cols} FROM staging_error WHERE job_id = %s AND id > %s ORDER BY id LIMIT %s",
                (job_id, last_id, fetch_size),
            )
            if not page:
                return
            for row in page:
                yield tuple(row[1:])
            last_id = page[-1][0]
