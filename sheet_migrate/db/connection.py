from __future__ import annotations

import logging
import os
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import psycopg2

from ..models.config_models import DatabaseConfig
from .dialect import Dialect, dialect_for, regexp

"""Connection factory.

Connection resolution order for postgresql (``.env`` is loaded with override by
the CLI before this runs):
    1. DATABASE_URL / PGDSN
    2. PGHOST / PGPORT / PGUSER / PGPASSWORD / PGDATABASE
    3. the ``database`` section of the pipeline config

Connections are opened in autocommit mode; transaction boundaries are explicit
through ``transaction()`` so that every phase/partition controls its own
BEGIN/COMMIT/ROLLBACK.
"""

__all__ = [
    "ConnectionFactory",
    "ConnectionSlot",
    "resolve_dsn",
    "transaction",
]

logger = logging.getLogger(__name__)


def resolve_dsn(db_cfg: DatabaseConfig) -> str:
    dsn = os.getenv("DATABASE_URL") or os.getenv("PGDSN") or db_cfg.dsn
    if dsn:
        return dsn
    host = os.getenv("PGHOST", db_cfg.host or "localhost")
    port = os.getenv("PGPORT", str(db_cfg.port) if db_cfg.port else "5432")
    user = os.getenv("PGUSER", db_cfg.user or "postgres")
    password = os.getenv("PGPASSWORD", db_cfg.password or "")
    database = os.getenv("PGDATABASE", db_cfg.database or "postgres")
    dsn = f"host={host} port={port} user={user} dbname={database}"
    if password:
        dsn += f" password={password}"
    return dsn


class ConnectionFactory:
    """Creates configured DB-API connections for one backend.

    Every worker (ingest sheet thread, validation partition) asks for its own
    connection; connections are never shared across threads.
    """

    def __init__(self, db_cfg: DatabaseConfig) -> None:
        self.db_cfg = db_cfg
        self.dialect: Dialect = dialect_for(db_cfg.backend)

    def connect(self) -> Any:
        if self.dialect.name == "sqlite":
            conn = sqlite3.connect(
                self.db_cfg.path,
                timeout=30.0,
                isolation_level=None,  # autocommit; BEGIN issued explicitly
                check_same_thread=False,
            )
            conn.create_function("regexp", 2, regexp, deterministic=True)
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA busy_timeout=30000")
            return conn
        conn = psycopg2.connect(resolve_dsn(self.db_cfg))
        conn.autocommit = True
        return conn

    @contextmanager
    def connection(self) -> Iterator[Any]:
        conn = self.connect()
        try:
            yield conn
        finally:
            try:
                conn.close()
            except Exception as e:  # pragma: no cover
                logger.debug(f"connection close failed: {e}")

    @contextmanager
    def slot(self) -> Iterator[ConnectionSlot]:
        """Like ``connection()``, but the held connection can be replaced on loss."""
        slot = ConnectionSlot(self)
        try:
            yield slot
        finally:
            slot.close()


class ConnectionSlot:
    """One worker's connection; reopened when the driver reports it lost.

    Pass ``recover`` as ``on_retry`` to ``retry_transient`` and read ``conn``
    inside the retried callable so every attempt runs on a live connection.
    """

    def __init__(self, factory: ConnectionFactory) -> None:
        self.factory = factory
        self.conn: Any = factory.connect()
        self.reconnects = 0

    def recover(self, exc: BaseException) -> None:
        if not self.factory.dialect.is_connection_lost(exc):
            return
        logger.warning(f"connection lost ({exc}); reconnecting")
        self.close()
        self.conn = self.factory.connect()
        self.reconnects += 1

    def close(self) -> None:
        try:
            self.conn.close()
        except Exception as e:
            logger.debug(f"connection close failed: {e}")


@contextmanager
def transaction(conn: Any, dialect: Dialect) -> Iterator[Any]:
    """BEGIN ... COMMIT, ROLLBACK on any exception (re-raised)."""
    cur = conn.cursor()
    try:
        cur.execute(dialect.begin_sql)
        yield cur
        cur.execute("COMMIT")
    except BaseException:
        try:
            cur.execute("ROLLBACK")
        except Exception as rb_e:  # 接続断などで ROLLBACK 自体が失敗
            logger.debug(f"rollback failed: {rb_e}")
        raise
    finally:
        try:
            cur.close()
        except Exception:  # pragma: no cover
            pass
