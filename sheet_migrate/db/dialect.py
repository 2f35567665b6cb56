from __future__ import annotations

import re
import sqlite3
from typing import Any

import psycopg2
from psycopg2 import errorcodes

"""SQL dialect differences between PostgreSQL (production) and SQLite.

All generated statements are written with ``%s`` placeholders and the
PostgreSQL spelling of expressions; the dialect object supplies the pieces that
differ (JSON field access, regex match, casts, statement cancel, transaction
start, transient-error classification).
"""

__all__ = [
    "Dialect",
    "PostgresDialect",
    "SqliteDialect",
    "dialect_for",
]


class Dialect:
    name = "generic"
    placeholder = "%s"
    begin_sql = "BEGIN"

    def sql(self, statement: str) -> str:
        """Translate ``%s`` placeholders to this driver's paramstyle."""
        return statement

    def json_field(self, column: str, field_name: str) -> str:
        raise NotImplementedError

    def regex_match(self, expr: str) -> str:
        """Boolean expression: ``expr`` matches the pattern bound to the next placeholder."""
        raise NotImplementedError

    def cast(self, expr: str, target_type: str) -> str:
        raise NotImplementedError

    def calendar_valid(self, expr: str, kind: str) -> str:
        """Boolean expression: a ``date``/``datetime`` shaped ``expr`` names a real calendar day."""
        raise NotImplementedError

    def cancel(self, conn: Any) -> None:
        raise NotImplementedError

    def is_transient(self, exc: BaseException) -> bool:
        return False

    def is_connection_lost(self, exc: BaseException) -> bool:
        """True when ``exc`` left the connection unusable (retry needs a new one)."""
        return False

    def json_type(self) -> str:
        raise NotImplementedError


class PostgresDialect(Dialect):
    name = "postgresql"
    begin_sql = "BEGIN ISOLATION LEVEL READ COMMITTED"

    _CASTS = {
        "text": "TEXT",
        "integer": "BIGINT",
        "decimal": "NUMERIC",
        "date": "DATE",
        "datetime": "TIMESTAMP",
        "boolean": "BOOLEAN",
    }
    _TRANSIENT_CODES = {
        errorcodes.SERIALIZATION_FAILURE,
        errorcodes.DEADLOCK_DETECTED,
        errorcodes.LOCK_NOT_AVAILABLE,
        errorcodes.ADMIN_SHUTDOWN,
        errorcodes.CANNOT_CONNECT_NOW,
    }

    def json_field(self, column: str, field_name: str) -> str:
        return f"{column}->>'{field_name}'"

    def regex_match(self, expr: str) -> str:
        return f"({expr} ~ %s)"

    def cast(self, expr: str, target_type: str) -> str:
        return f"CAST({expr} AS {self._CASTS[target_type]})"

    def calendar_valid(self, expr: str, kind: str) -> str:
        # PostgreSQL 16+
        pg_type = "date" if kind == "date" else "timestamp"
        return f"pg_input_is_valid({expr}, '{pg_type}')"

    def cancel(self, conn: Any) -> None:
        conn.cancel()

    def is_transient(self, exc: BaseException) -> bool:
        if isinstance(exc, psycopg2.extensions.QueryCanceledError):
            return False
        if getattr(exc, "pgcode", None) in self._TRANSIENT_CODES:
            return True
        return self.is_connection_lost(exc)

    def is_connection_lost(self, exc: BaseException) -> bool:
        # 接続断 (pgcode なし)
        return isinstance(exc, (psycopg2.OperationalError, psycopg2.InterfaceError)) and not getattr(
            exc, "pgcode", None
        )

    def json_type(self) -> str:
        return "JSONB"


class SqliteDialect(Dialect):
    name = "sqlite"
    placeholder = "?"
    # IMMEDIATE takes the write lock up front; deferred upgrades can fail without waiting.
    begin_sql = "BEGIN IMMEDIATE"

    _CASTS = {
        "text": "TEXT",
        "integer": "INTEGER",
        "decimal": "REAL",
        "date": "TEXT",
        "datetime": "TEXT",
    }
    _TRANSIENT_MARKERS = ("database is locked", "database table is locked", "busy")

    def sql(self, statement: str) -> str:
        return statement.replace("%s", "?")

    def json_field(self, column: str, field_name: str) -> str:
        return f"json_extract({column}, '$.{field_name}')"

    def regex_match(self, expr: str) -> str:
        return f"({expr} REGEXP %s)"

    def cast(self, expr: str, target_type: str) -> str:
        if target_type == "boolean":
            return (
                f"(CASE WHEN UPPER({expr}) IN ('TRUE','T','YES','Y','1') THEN 1 "
                f"WHEN UPPER({expr}) IN ('FALSE','F','NO','N','0') THEN 0 END)"
            )
        return f"CAST({expr} AS {self._CASTS[target_type]})"

    def calendar_valid(self, expr: str, kind: str) -> str:
        # date() rolls 2024-02-30 over to 2024-03-01, so compare with the input
        day = f"substr({expr}, 1, 10)"
        return f"(datetime({expr}) IS NOT NULL AND date({day}) = {day})"

    def cancel(self, conn: Any) -> None:
        conn.interrupt()

    def is_transient(self, exc: BaseException) -> bool:
        if not isinstance(exc, sqlite3.OperationalError):
            return False
        message = str(exc).lower()
        return any(marker in message for marker in self._TRANSIENT_MARKERS)

    def json_type(self) -> str:
        return "TEXT"


def regexp(pattern: str, value: Any) -> bool:
    """REGEXP implementation registered on SQLite connections."""
    if value is None:
        return False
    return re.search(pattern, str(value)) is not None


def dialect_for(backend: str) -> Dialect:
    if backend == "postgresql":
        return PostgresDialect()
    if backend == "sqlite":
        return SqliteDialect()
    raise ValueError(f"unsupported database backend: {backend}")
