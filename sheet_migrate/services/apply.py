from __future__ import annotations

import logging
import threading
import time
from typing import Any

from ..db.connection import ConnectionFactory, transaction
from ..db.dialect import Dialect
from ..errors import ConfigError, PipelineError
from ..models.config_models import ApplyTarget, PipelineConfig
from ..models.processing_result import ApplyResult, LevelResult, PhaseOutcome
from .deadline import StatementDeadline
from .retry import retry_transient

"""Apply Engine: staging_valid -> permanent tables.

Targets are grouped into dependency levels (a target runs after every table in
its ``depends_on``). Each level is one transaction of one
``INSERT ... SELECT`` per target; a level either commits completely or not at
all, and earlier levels stay committed when a later one fails.

Inserts are idempotent: rows whose natural key already exists in the target
are skipped (anti-join on the typed key), and the first staged row wins when a
key repeats. Lookup columns resolve foreign keys against tables populated by
earlier levels.
"""

__all__ = [
    "apply_levels",
    "build_insert_sql",
    "ApplyEngine",
]

logger = logging.getLogger(__name__)


def apply_levels(targets: tuple[ApplyTarget, ...]) -> list[list[ApplyTarget]]:
    """Topological levels of ``targets`` (level 0 has no dependencies).

    Raises:
        ConfigError: unknown dependency or dependency cycle
    """
    by_table = {t.table: t for t in targets}
    for t in targets:
        unknown = [d for d in t.depends_on if d not in by_table]
        if unknown:
            raise ConfigError(f"apply target '{t.table}': unknown depends_on {unknown}")
    remaining = dict(by_table)
    done: set[str] = set()
    levels: list[list[ApplyTarget]] = []
    while remaining:
        level = [t for t in remaining.values() if set(t.depends_on) <= done]
        if not level:
            raise ConfigError(f"apply targets have a dependency cycle: {sorted(remaining)}")
        levels.append(level)
        for t in level:
            done.add(t.table)
            del remaining[t.table]
    return levels


def build_insert_sql(dialect: Dialect, target: ApplyTarget) -> str:
    """INSERT ... SELECT for one target; params: (job_id, sheet_name)."""
    exprs: list[tuple[str, str]] = []
    for col in target.columns:
        exprs.append((col.column, dialect.cast(dialect.json_field("r.fields", col.field), col.target_type)))
    joins = []
    for i, lk in enumerate(target.lookups):
        alias = f"l{i}"
        match = dialect.cast(dialect.json_field("r.fields", lk.field), lk.match_type)
        joins.append(f"LEFT JOIN {lk.table} {alias} ON {alias}.{lk.match_column} = {match}")
        exprs.append((lk.column, f"{alias}.{lk.value_column}"))

    names = [name for name, _ in exprs]
    key_exprs = ", ".join(expr for name, expr in exprs if name in target.key)
    inner_cols = ", ".join(f"{expr} AS {name}" for name, expr in exprs)
    on_key = " AND ".join(f"x.{k} = s.{k}" for k in target.key)
    key_not_null = " AND ".join(f"s.{k} IS NOT NULL" for k in target.key)
    lookup_joins = (" " + " ".join(joins)) if joins else ""
    return (
        f"INSERT INTO {target.table} ({', '.join(names)}) "
        f"SELECT {', '.join(f's.{n}' for n in names)} FROM ("
        f"SELECT {inner_cols}, ROW_NUMBER() OVER (PARTITION BY {key_exprs} ORDER BY r.row_num) AS rn_ "
        "FROM staging_valid v "
        "JOIN staging_raw r ON r.job_id = v.job_id AND r.sheet_name = v.sheet_name AND r.row_num = v.row_num"
        f"{lookup_joins} "
        "WHERE v.job_id = %s AND v.sheet_name = %s"
        ") s "
        f"LEFT JOIN {target.table} x ON {on_key} "
        f"WHERE s.rn_ = 1 AND {key_not_null} AND x.{target.key[0]} IS NULL"
    )


class ApplyEngine:
    def __init__(self, config: PipelineConfig, factory: ConnectionFactory) -> None:
        self.config = config
        self.factory = factory
        self.levels = apply_levels(config.apply.targets)

    def _apply_level(self, conn: Any, index: int, level: list[ApplyTarget], job_id: str) -> dict[str, int]:
        dialect = self.factory.dialect
        inserted: dict[str, int] = {}
        with StatementDeadline(conn, dialect, self.config.apply.level_timeout_seconds, f"apply level {index}"):
            with transaction(conn, dialect) as cur:
                for target in level:
                    cur.execute(dialect.sql(build_insert_sql(dialect, target)), (job_id, target.sheet))
                    inserted[target.table] = max(cur.rowcount, 0)
        return inserted

    def apply(self, job_id: str, *, start_level: int = 0, cancel_event: threading.Event | None = None) -> ApplyResult:
        """Apply levels ``start_level..`` in order; stop at the first failing level."""
        cfg = self.config.apply
        started = time.perf_counter()
        cancel_event = cancel_event or threading.Event()
        if start_level < 0 or (self.levels and start_level >= len(self.levels)):
            raise ConfigError(f"start_level {start_level} out of range (levels: {len(self.levels)})")

        done: list[LevelResult] = []

        def result(outcome: PhaseOutcome, **kwargs: Any) -> ApplyResult:
            return ApplyResult(
                job_id=job_id,
                outcome=outcome,
                inserted_rows=sum(sum(lv.inserted_rows.values()) for lv in done),
                levels=tuple(done),
                start_level=start_level,
                elapsed_seconds=time.perf_counter() - started,
                **kwargs,
            )

        with self.factory.slot() as slot:
            for index in range(start_level, len(self.levels)):
                if cancel_event.is_set():
                    logger.info(f"job {job_id}: apply cancelled before level {index}")
                    return result(PhaseOutcome.CANCELLED)
                level = self.levels[index]
                tables = tuple(t.table for t in level)
                try:
                    inserted, attempts = retry_transient(
                        lambda: self._apply_level(slot.conn, index, level, job_id),
                        is_transient=self.factory.dialect.is_transient,
                        max_retries=cfg.max_retries,
                        backoff_seconds=cfg.backoff_seconds,
                        label=f"apply level {index}",
                        on_retry=slot.recover,
                    )
                except PipelineError as e:
                    logger.error(f"job {job_id}: apply level {index} {tables} failed: {e}")
                    return result(PhaseOutcome.FATAL, failed_level=index, failure_reason=e.reason, message=str(e))
                except Exception as e:
                    logger.error(f"job {job_id}: apply level {index} {tables} failed: {e}")
                    return result(
                        PhaseOutcome.FATAL,
                        failed_level=index,
                        failure_reason="APPLY_FAILED",
                        message=f"{type(e).__name__}: {e}",
                    )
                done.append(LevelResult(level=index, tables=tables, inserted_rows=inserted, attempts=attempts))
                logger.info(f"job {job_id}: apply level {index} committed {inserted}")

        return result(PhaseOutcome.SUCCESS)
