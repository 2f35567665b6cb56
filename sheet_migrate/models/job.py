from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

"""Job model: one submitted workbook moving through the four phases.

The phase controller is the only writer; status readers get ``JobSnapshot``
values loaded from the ``import_job`` table.
"""

__all__ = [
    "JobStatus",
    "Phase",
    "JobSnapshot",
    "SubmissionMetadata",
]


class JobStatus(str, Enum):
    STARTED = "STARTED"
    INGESTING = "INGESTING"
    VALIDATING = "VALIDATING"
    APPLYING = "APPLYING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class Phase(str, Enum):
    INGEST = "INGEST"
    VALIDATE = "VALIDATE"
    APPLY = "APPLY"
    RECONCILE = "RECONCILE"
    CANCELLED = "CANCELLED"
    DONE = "DONE"


@dataclass(frozen=True)
class SubmissionMetadata:
    submitted_by: str = "system"
    max_rows: int | None = None  # job-level override of ingest.max_rows
    synchronous: bool = True
    job_id: str | None = None
    file_name: str | None = None  # original upload name, defaults to the source file name


@dataclass(frozen=True)
class JobSnapshot:
    job_id: str
    file_name: str
    status: JobStatus
    current_phase: str | None
    total_rows: int | None
    processed_rows: int
    valid_rows: int
    error_rows: int
    inserted_rows: int
    progress_percent: float
    created_by: str | None
    created_at: datetime | None
    started_at: datetime | None
    completed_at: datetime | None
    error_message: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal
