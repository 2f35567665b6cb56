from __future__ import annotations

import time
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from typing import Any

from psycopg2.extras import execute_values

from ..errors import BatchInsertError
from .dialect import Dialect

"""Batched INSERT into staging tables.

PostgreSQL uses ``psycopg2.extras.execute_values`` (one multi-row VALUES per
page); SQLite falls back to ``executemany`` on the same statement. Inserts can
carry ``ON CONFLICT DO NOTHING`` so that re-flushing a batch after a crash
(resume) does not duplicate staged rows.
"""

__all__ = [
    "BatchInsertError",
    "BatchMetrics",
    "InsertResult",
    "batch_insert",
]


@dataclass(frozen=True)
class BatchMetrics:
    """Timing of a single batch insert."""
    batch_size: int
    elapsed_seconds: float
    start_time: float
    end_time: float


@dataclass(frozen=True)
class InsertResult:
    inserted_rows: int  # rows sent (conflicts skipped by the DB are included)


def batch_insert(
    cursor: Any,
    dialect: Dialect,
    table: str,
    columns: Sequence[str],
    rows: Iterable[Sequence[Any]],
    page_size: int = 1000,
    on_conflict_do_nothing: bool = True,
    metrics_callback: Callable[[BatchMetrics], None] | None = None,
) -> InsertResult:
    """Insert ``rows`` into ``table`` in pages.

    Parameters
    ----------
    cursor: DB-API cursor inside an open transaction
    dialect: target dialect (decides execute_values vs executemany)
    table: 対象テーブル名 (サニタイズ済み想定)
    columns: insert columns
    rows: row tuples aligned with ``columns``
    page_size: execute_values page size
    on_conflict_do_nothing: append ``ON CONFLICT DO NOTHING``
    metrics_callback: receives BatchMetrics; not invoked for empty input
    """
    rows_list = list(rows)
    if not rows_list:
        return InsertResult(inserted_rows=0)

    cols_sql = ",".join(columns)
    conflict = " ON CONFLICT DO NOTHING" if on_conflict_do_nothing else ""

    start_time = time.time()
    try:
        if dialect.name == "postgresql":
            execute_values(
                cursor,
                f"INSERT INTO {table} ({cols_sql}) VALUES %s{conflict}",
                rows_list,
                page_size=page_size,
            )
        else:
            marks = ",".join([dialect.placeholder] * len(columns))
            cursor.executemany(f"INSERT INTO {table} ({cols_sql}) VALUES ({marks}){conflict}", rows_list)
    except Exception as e:
        if dialect.is_transient(e):
            raise
        raise BatchInsertError(f"{table}: {e}") from e
    finally:
        end_time = time.time()
        if metrics_callback is not None:
            metrics_callback(
                BatchMetrics(
                    batch_size=len(rows_list),
                    elapsed_seconds=end_time - start_time,
                    start_time=start_time,
                    end_time=end_time,
                )
            )

    return InsertResult(inserted_rows=len(rows_list))
