from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from ..db.connection import ConnectionFactory, transaction
from ..errors import JobNotFoundError
from ..models.job import JobSnapshot, JobStatus

"""Job persistence (``import_job`` table).

Each call uses its own short-lived connection so that status polling from any
thread never shares a connection with a running phase.
"""

__all__ = [
    "JobRepository",
    "utcnow_iso",
]

logger = logging.getLogger(__name__)

_COLUMNS = (
    "job_id",
    "file_name",
    "status",
    "current_phase",
    "total_rows",
    "processed_rows",
    "valid_rows",
    "error_rows",
    "inserted_rows",
    "progress_percent",
    "created_by",
    "created_at",
    "started_at",
    "completed_at",
    "error_message",
)
_UPDATABLE = set(_COLUMNS) - {"job_id", "file_name", "created_by", "created_at"}


def utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


def _as_datetime(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


class JobRepository:
    def __init__(self, factory: ConnectionFactory) -> None:
        self.factory = factory
        self.dialect = factory.dialect

    def _exec(self, sql: str, params: tuple[Any, ...]) -> int:
        with self.factory.connection() as conn:
            with transaction(conn, self.dialect) as cur:
                cur.execute(self.dialect.sql(sql), params)
                return cur.rowcount

    def create(self, job_id: str, file_name: str, created_by: str | None) -> JobSnapshot:
        self._exec(
            "INSERT INTO import_job (job_id, file_name, status, current_phase, created_by, created_at)"
            " VALUES (%s, %s, %s, %s, %s, %s)",
            (job_id, file_name, JobStatus.STARTED.value, None, created_by, utcnow_iso()),
        )
        return self.get(job_id)

    def update(self, job_id: str, **changes: Any) -> None:
        unknown = set(changes) - _UPDATABLE
        if unknown:
            raise ValueError(f"not updatable: {sorted(unknown)}")
        if not changes:
            return
        assignments = ", ".join(f"{k} = %s" for k in changes)
        values = tuple(v.value if isinstance(v, JobStatus) else v for v in changes.values())
        if self._exec(f"UPDATE import_job SET {assignments} WHERE job_id = %s", (*values, job_id)) == 0:
            raise JobNotFoundError(f"job not found: {job_id}")

    def exists(self, job_id: str) -> bool:
        with self.factory.connection() as conn:
            cur = conn.cursor()
            try:
                cur.execute(self.dialect.sql("SELECT 1 FROM import_job WHERE job_id = %s"), (job_id,))
                return cur.fetchone() is not None
            finally:
                cur.close()

    def get(self, job_id: str) -> JobSnapshot:
        with self.factory.connection() as conn:
            cur = conn.cursor()
            try:
                cur.execute(
                    self.dialect.sql(f"SELECT {', '.join(_COLUMNS)} FROM import_job WHERE job_id = %s"),
                    (job_id,),
                )
                row = cur.fetchone()
            finally:
                cur.close()
        if row is None:
            raise JobNotFoundError(f"job not found: {job_id}")
        data = dict(zip(_COLUMNS, row, strict=True))
        return JobSnapshot(
            job_id=data["job_id"],
            file_name=data["file_name"],
            status=JobStatus(data["status"]),
            current_phase=data["current_phase"],
            total_rows=data["total_rows"],
            processed_rows=int(data["processed_rows"] or 0),
            valid_rows=int(data["valid_rows"] or 0),
            error_rows=int(data["error_rows"] or 0),
            inserted_rows=int(data["inserted_rows"] or 0),
            progress_percent=float(data["progress_percent"] or 0.0),
            created_by=data["created_by"],
            created_at=_as_datetime(data["created_at"]),
            started_at=_as_datetime(data["started_at"]),
            completed_at=_as_datetime(data["completed_at"]),
            error_message=data["error_message"],
        )
