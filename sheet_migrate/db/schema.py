from __future__ import annotations

import logging
from typing import Any

from .connection import transaction
from .dialect import Dialect

"""Staging schema DDL.

Three job-scoped staging tables keyed by (job_id, sheet_name, row_num) plus the
``import_job`` status table. The unique key on staging_error
(job_id, sheet_name, row_num, error_type) makes re-validation idempotent.
"""

__all__ = [
    "STAGING_TABLES",
    "ensure_schema",
    "drop_schema",
]

logger = logging.getLogger(__name__)

STAGING_TABLES = ("staging_valid", "staging_error", "staging_raw", "import_job")


def _ddl(dialect: Dialect) -> list[str]:
    json_type = dialect.json_type()
    if dialect.name == "postgresql":
        bool_type, ts_type = "BOOLEAN", "TIMESTAMPTZ"
        id_col = "id BIGSERIAL PRIMARY KEY"
        false_default = "FALSE"
    else:
        bool_type, ts_type = "INTEGER", "TEXT"
        id_col = "id INTEGER PRIMARY KEY AUTOINCREMENT"
        false_default = "0"
    return [
        f"""CREATE TABLE IF NOT EXISTS import_job (
            job_id VARCHAR(64) PRIMARY KEY,
            file_name VARCHAR(255) NOT NULL,
            status VARCHAR(20) NOT NULL,
            current_phase VARCHAR(20),
            total_rows BIGINT,
            processed_rows BIGINT NOT NULL DEFAULT 0,
            valid_rows BIGINT NOT NULL DEFAULT 0,
            error_rows BIGINT NOT NULL DEFAULT 0,
            inserted_rows BIGINT NOT NULL DEFAULT 0,
            progress_percent REAL NOT NULL DEFAULT 0,
            created_by VARCHAR(100),
            created_at {ts_type},
            started_at {ts_type},
            completed_at {ts_type},
            error_message TEXT
        )""",
        f"""CREATE TABLE IF NOT EXISTS staging_raw (
            job_id VARCHAR(64) NOT NULL,
            sheet_name VARCHAR(255) NOT NULL,
            row_num INTEGER NOT NULL,
            fields {json_type} NOT NULL,
            business_key TEXT,
            parse_error {bool_type} NOT NULL DEFAULT {false_default},
            created_at {ts_type} DEFAULT CURRENT_TIMESTAMP,
            PRIMARY KEY (job_id, sheet_name, row_num)
        )""",
        f"""CREATE TABLE IF NOT EXISTS staging_error (
            {id_col},
            job_id VARCHAR(64) NOT NULL,
            sheet_name VARCHAR(255) NOT NULL,
            row_num INTEGER NOT NULL,
            error_type VARCHAR(30) NOT NULL,
            error_field VARCHAR(255),
            error_value TEXT,
            message TEXT,
            original_data {json_type},
            created_at {ts_type} DEFAULT CURRENT_TIMESTAMP,
            UNIQUE (job_id, sheet_name, row_num, error_type)
        )""",
        f"""CREATE TABLE IF NOT EXISTS staging_valid (
            job_id VARCHAR(64) NOT NULL,
            sheet_name VARCHAR(255) NOT NULL,
            row_num INTEGER NOT NULL,
            created_at {ts_type} DEFAULT CURRENT_TIMESTAMP,
            PRIMARY KEY (job_id, sheet_name, row_num)
        )""",
        "CREATE INDEX IF NOT EXISTS ix_staging_raw_key ON staging_raw (job_id, sheet_name, business_key)",
        "CREATE INDEX IF NOT EXISTS ix_staging_error_type ON staging_error (job_id, error_type)",
    ]


def ensure_schema(conn: Any, dialect: Dialect) -> None:
    """Create staging tables if missing (idempotent)."""
    with transaction(conn, dialect) as cur:
        for stmt in _ddl(dialect):
            cur.execute(stmt)
    logger.debug(f"staging schema ensured ({dialect.name})")


def drop_schema(conn: Any, dialect: Dialect) -> None:
    with transaction(conn, dialect) as cur:
        for table in STAGING_TABLES:
            cur.execute(f"DROP TABLE IF EXISTS {table}")
