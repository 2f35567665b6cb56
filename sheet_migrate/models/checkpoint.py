from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any

"""Checkpoint model for resumable ingest sessions.

State machine: ACTIVE -> COMPLETED | FAILED. Terminal checkpoints are never
modified again. ``sheet_progress`` records, per sheet, the last physical row
number whose batch was flushed to staging.
"""

__all__ = [
    "CheckpointStatus",
    "Checkpoint",
]


class CheckpointStatus(str, Enum):
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


def _ts(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


@dataclass(frozen=True)
class Checkpoint:
    session_id: str
    file_name: str
    total_rows: int | None
    processed_rows: int
    last_checkpoint_row: int
    status: CheckpointStatus
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None = None
    failed_at: datetime | None = None
    error_message: str | None = None
    exception: str | None = None
    sheet_progress: dict[str, int] = field(default_factory=dict)
    header_rows: dict[str, int] = field(default_factory=dict)

    @property
    def is_resumable(self) -> bool:
        return self.status is CheckpointStatus.ACTIVE

    @property
    def progress_percent(self) -> float:
        if not self.total_rows:
            return 0.0
        return round(100.0 * self.processed_rows / self.total_rows, 2)

    def with_changes(self, **changes: Any) -> Checkpoint:
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        for key in ("created_at", "updated_at", "completed_at", "failed_at"):
            data[key] = _ts(getattr(self, key))
        return data

    @staticmethod
    def from_dict(data: dict[str, Any]) -> Checkpoint:
        return Checkpoint(
            session_id=data["session_id"],
            file_name=data["file_name"],
            total_rows=data.get("total_rows"),
            processed_rows=int(data.get("processed_rows", 0)),
            last_checkpoint_row=int(data.get("last_checkpoint_row", 0)),
            status=CheckpointStatus(data["status"]),
            created_at=_parse_ts(data["created_at"]),
            updated_at=_parse_ts(data["updated_at"]),
            completed_at=_parse_ts(data.get("completed_at")),
            failed_at=_parse_ts(data.get("failed_at")),
            error_message=data.get("error_message"),
            exception=data.get("exception"),
            sheet_progress={k: int(v) for k, v in (data.get("sheet_progress") or {}).items()},
            header_rows={k: int(v) for k, v in (data.get("header_rows") or {}).items()},
        )
