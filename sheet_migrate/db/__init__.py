from .connection import ConnectionFactory, ConnectionSlot, transaction
from .dialect import Dialect, PostgresDialect, SqliteDialect, dialect_for
from .schema import ensure_schema

__all__ = [
    "ConnectionFactory",
    "ConnectionSlot",
    "Dialect",
    "PostgresDialect",
    "SqliteDialect",
    "dialect_for",
    "ensure_schema",
    "transaction",
]
