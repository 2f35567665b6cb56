from __future__ import annotations

import logging
import time

from ..db.connection import ConnectionFactory
from ..models.config_models import ApplyTarget, PipelineConfig
from ..models.processing_result import ReconciliationReport, TargetReconciliation
from ..staging.store import StagingStore

"""Reconciliation: staged vs classified vs applied counts for one job."""

__all__ = [
    "ReconciliationReporter",
]

logger = logging.getLogger(__name__)


class ReconciliationReporter:
    def __init__(self, config: PipelineConfig, factory: ConnectionFactory) -> None:
        self.config = config
        self.factory = factory

    def _target_sql(self, target: ApplyTarget) -> str:
        dialect = self.factory.dialect
        keys = [
            (k, dialect.cast(dialect.json_field("r.fields", target.column(k).field), target.column(k).target_type))
            for k in target.key
        ]
        select = ", ".join(f"{expr} AS {name}" for name, expr in keys)
        on_key = " AND ".join(f"x.{name} = s.{name}" for name, _ in keys)
        return (
            f"SELECT COUNT(*), COUNT(x.{target.key[0]}) FROM ("
            f"SELECT DISTINCT {select} FROM staging_valid v "
            "JOIN staging_raw r ON r.job_id = v.job_id AND r.sheet_name = v.sheet_name AND r.row_num = v.row_num "
            "WHERE v.job_id = %s AND v.sheet_name = %s"
            f") s LEFT JOIN {target.table} x ON {on_key} "
            f"WHERE s.{target.key[0]} IS NOT NULL"
        )

    def report(self, job_id: str, inserted_rows: int = 0) -> ReconciliationReport:
        started = time.perf_counter()
        dialect = self.factory.dialect
        with self.factory.connection() as conn:
            store = StagingStore(conn, dialect)
            staged = store.count_raw(job_id)
            parse_errors = store.count_raw(job_id, parse_error=True)
            valid = store.count_valid(job_id)
            error_rows = store.count_error_rows(job_id)
            by_type = store.errors_by_type(job_id)
            targets = []
            cur = conn.cursor()
            try:
                for target in self.config.apply.targets:
                    cur.execute(dialect.sql(self._target_sql(target)), (job_id, target.sheet))
                    expected, present = cur.fetchone()
                    targets.append(
                        TargetReconciliation(
                            table=target.table,
                            sheet_name=target.sheet,
                            expected_keys=int(expected or 0),
                            present_keys=int(present or 0),
                        )
                    )
            finally:
                cur.close()

        report = ReconciliationReport(
            job_id=job_id,
            staged_rows=staged,
            parse_error_rows=parse_errors,
            valid_rows=valid,
            error_rows=error_rows,
            inserted_rows=inserted_rows,
            errors_by_type=by_type,
            targets=tuple(targets),
            elapsed_seconds=time.perf_counter() - started,
        )
        if not report.is_complete:
            logger.warning(
                f"job {job_id}: unclassified rows: staged={staged} parse_errors={parse_errors} "
                f"valid={valid} error_rows={error_rows}"
            )
        for t in report.targets:
            if t.missing_keys:
                logger.warning(f"job {job_id}: {t.table} is missing {t.missing_keys} of {t.expected_keys} key(s)")
        return report
