from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
import traceback
from datetime import UTC, datetime, timedelta
from pathlib import Path

from ..errors import PipelineError
from ..models.checkpoint import Checkpoint, CheckpointStatus

"""Checkpoint Manager.

One JSON file per ingest session (``<session>.checkpoint.json``). Files are
replaced atomically (temp file + ``os.replace``), so a status reader never
sees a half-written checkpoint. Updates are advance-only:

- per-sheet progress (last flushed physical row) never moves backwards
- ``processed_rows`` = sum over sheets of rows consumed after the header,
  never decreasing and clamped to ``total_rows`` when that is known
- COMPLETED / FAILED checkpoints are immutable
"""

__all__ = [
    "CheckpointStateError",
    "CheckpointManager",
]

logger = logging.getLogger(__name__)

SUFFIX = ".checkpoint.json"


class CheckpointStateError(PipelineError):
    reason = "CHECKPOINT_STATE"


def _now() -> datetime:
    return datetime.now(UTC)


class CheckpointManager:
    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)
        self._lock = threading.Lock()

    def path_for(self, session_id: str) -> Path:
        return self.directory / f"{session_id}{SUFFIX}"

    # -- persistence ------------------------------------------------------
    def _write(self, cp: Checkpoint) -> Checkpoint:
        self.directory.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=f".{cp.session_id}.", suffix=".tmp", dir=self.directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(cp.to_dict(), f, ensure_ascii=False, indent=2)
            os.replace(tmp, self.path_for(cp.session_id))
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise
        return cp

    def load(self, session_id: str) -> Checkpoint | None:
        path = self.path_for(session_id)
        if not path.exists():
            return None
        return Checkpoint.from_dict(json.loads(path.read_text(encoding="utf-8")))

    def _require_active(self, session_id: str) -> Checkpoint:
        cp = self.load(session_id)
        if cp is None:
            raise CheckpointStateError(f"checkpoint not found: {session_id}")
        if cp.status is not CheckpointStatus.ACTIVE:
            raise CheckpointStateError(f"checkpoint {session_id} is {cp.status.value}")
        return cp

    # -- state machine ----------------------------------------------------
    def create(
        self,
        session_id: str,
        file_name: str,
        total_rows: int | None,
        header_rows: dict[str, int] | None = None,
    ) -> Checkpoint:
        now = _now()
        cp = Checkpoint(
            session_id=session_id,
            file_name=file_name,
            total_rows=total_rows,
            processed_rows=0,
            last_checkpoint_row=0,
            status=CheckpointStatus.ACTIVE,
            created_at=now,
            updated_at=now,
            header_rows=dict(header_rows or {}),
        )
        with self._lock:
            self._write(cp)
        logger.debug(f"checkpoint created: {session_id} total_rows={total_rows}")
        return cp

    def advance(self, session_id: str, sheet_name: str, last_row: int) -> Checkpoint:
        """Record that every row of ``sheet_name`` up to ``last_row`` is staged."""
        with self._lock:
            cp = self._require_active(session_id)
            progress = dict(cp.sheet_progress)
            if last_row <= progress.get(sheet_name, 0):
                return cp
            progress[sheet_name] = last_row
            processed = sum(
                max(0, row - cp.header_rows.get(sheet, 0)) for sheet, row in progress.items()
            )
            if cp.total_rows is not None:
                processed = min(processed, cp.total_rows)
            processed = max(processed, cp.processed_rows)
            cp = cp.with_changes(
                sheet_progress=progress,
                processed_rows=processed,
                last_checkpoint_row=last_row,
                updated_at=_now(),
            )
            return self._write(cp)

    def complete(self, session_id: str) -> Checkpoint:
        with self._lock:
            cp = self._require_active(session_id)
            now = _now()
            total = cp.total_rows if cp.total_rows is not None else cp.processed_rows
            cp = cp.with_changes(
                status=CheckpointStatus.COMPLETED,
                total_rows=total,
                updated_at=now,
                completed_at=now,
            )
            self._write(cp)
        logger.debug(f"checkpoint completed: {session_id} processed_rows={cp.processed_rows}")
        return cp

    def fail(self, session_id: str, message: str, exc: BaseException | None = None) -> Checkpoint | None:
        with self._lock:
            cp = self.load(session_id)
            if cp is None or cp.status is not CheckpointStatus.ACTIVE:
                return cp
            now = _now()
            detail = None
            if exc is not None:
                detail = "".join(traceback.format_exception_only(type(exc), exc)).strip()
            cp = cp.with_changes(
                status=CheckpointStatus.FAILED,
                error_message=message,
                exception=detail,
                updated_at=now,
                failed_at=now,
            )
            self._write(cp)
        logger.debug(f"checkpoint failed: {session_id}: {message}")
        return cp

    # -- queries ----------------------------------------------------------
    def is_resumable(self, session_id: str) -> bool:
        cp = self.load(session_id)
        return cp is not None and cp.is_resumable

    def _iter_all(self) -> list[Checkpoint]:
        if not self.directory.exists():
            return []
        result = []
        for path in sorted(self.directory.glob(f"*{SUFFIX}")):
            try:
                result.append(Checkpoint.from_dict(json.loads(path.read_text(encoding="utf-8"))))
            except (OSError, ValueError, KeyError) as e:
                logger.warning(f"unreadable checkpoint {path.name}: {e}")
        return result

    def find_resumable(self) -> list[Checkpoint]:
        return [cp for cp in self._iter_all() if cp.is_resumable]

    def statistics(self) -> dict[str, int]:
        stats = {s.value.lower(): 0 for s in CheckpointStatus}
        for cp in self._iter_all():
            stats[cp.status.value.lower()] += 1
        stats["total"] = sum(stats.values())
        return stats

    def delete(self, session_id: str) -> bool:
        with self._lock:
            path = self.path_for(session_id)
            if path.exists():
                path.unlink()
                return True
            return False

    def cleanup_old(self, max_age_hours: int) -> int:
        """Delete COMPLETED/FAILED checkpoints last updated before the cutoff."""
        cutoff = _now() - timedelta(hours=max_age_hours)
        removed = 0
        for cp in self._iter_all():
            if cp.status is CheckpointStatus.ACTIVE or cp.updated_at > cutoff:
                continue
            if self.delete(cp.session_id):
                removed += 1
        if removed:
            logger.info(f"removed {removed} old checkpoint(s)")
        return removed
