from __future__ import annotations

import logging
import shutil
import threading
import uuid
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import Any, BinaryIO

from ..db.connection import ConnectionFactory, transaction
from ..db.schema import ensure_schema
from ..errors import JobStateError, PipelineError, WorkbookTooLargeError
from ..excel.registry import FieldRegistry
from ..logging.error_log import ErrorLogBuffer
from ..models.checkpoint import CheckpointStatus
from ..models.config_models import PipelineConfig
from ..models.job import JobSnapshot, JobStatus, Phase, SubmissionMetadata
from ..models.processing_result import (
    ApplyResult,
    IngestResult,
    PhaseOutcome,
    PhaseResult,
    ReconciliationReport,
    ValidationResult,
)
from ..output.export import export_errors
from ..output.writers import WriteResult
from ..staging.jobs import JobRepository, utcnow_iso
from ..staging.store import EXPORT_COLUMNS, StagingStore
from .apply import ApplyEngine
from .checkpoint import CheckpointManager, CheckpointStateError
from .ingest import IngestService
from .progress import ProgressEvent
from .reconcile import ReconciliationReporter
from .validation import BatchValidationEngine

"""Phase controller: job lifecycle around ingest -> validate -> apply -> reconcile.

The controller is the only writer of ``import_job``. Phases return typed
results; FATAL outcomes and ``PipelineError`` exceptions mark the job FAILED,
record the message, and append an ``ErrorRecord`` to the job error log.
Row-level errors never fail a job: a run with rejected rows still ends
COMPLETED, with outcome VALIDATION_ERRORS.

Cancellation is cooperative (``threading.Event`` per running job). A
cancelled job keeps its last status with ``current_phase = CANCELLED`` and
can be resumed.

COMPLETED and FAILED are terminal. Validate, apply and reconcile may be re-run
on a COMPLETED job (idempotent) without touching its status. A FAILED job
accepts only a retry of the apply phase (``start_level``) after an apply
failure; that retry clears the error and moves the job on again.
"""

__all__ = [
    "ALL_PHASES",
    "PipelineController",
]

logger = logging.getLogger(__name__)

ALL_PHASES = (Phase.INGEST, Phase.VALIDATE, Phase.APPLY, Phase.RECONCILE)

# 全体進捗 (%) の配分
_PROGRESS_AFTER = {Phase.INGEST: 70.0, Phase.VALIDATE: 85.0, Phase.APPLY: 95.0, Phase.RECONCILE: 100.0}

Source = bytes | str | Path | BinaryIO
ProgressCallback = Callable[[ProgressEvent], None]


class PipelineController:
    def __init__(
        self,
        config: PipelineConfig,
        factory: ConnectionFactory | None = None,
        *,
        checkpoints: CheckpointManager | None = None,
        error_log: ErrorLogBuffer | None = None,
        init_schema: bool = True,
    ) -> None:
        self.config = config
        self.factory = factory or ConnectionFactory(config.database)
        self.jobs = JobRepository(self.factory)
        self.checkpoints = checkpoints or CheckpointManager(config.checkpoint.directory)
        self.error_log = error_log or ErrorLogBuffer()
        self.work_directory = Path(config.ingest.work_directory)
        registry = FieldRegistry(config.templates)
        self.ingest_service = IngestService(config, self.factory, self.checkpoints, registry)
        self.validator = BatchValidationEngine(config, self.factory, registry)
        self.applier = ApplyEngine(config, self.factory)
        self.reconciler = ReconciliationReporter(config, self.factory)
        self._cancel_events: dict[str, threading.Event] = {}
        self._threads: dict[str, threading.Thread] = {}
        self._lock = threading.Lock()
        if init_schema:
            self.init_db()

    def init_db(self) -> None:
        with self.factory.connection() as conn:
            ensure_schema(conn, self.factory.dialect)

    # -- job boundary -----------------------------------------------------
    def spool_path(self, job_id: str) -> Path:
        return self.work_directory / f"{job_id}.xlsx"

    def _spool(self, job_id: str, source: Source) -> Path:
        path = self.spool_path(job_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(source, bytes):
            path.write_bytes(source)
        elif isinstance(source, (str, Path)):
            shutil.copyfile(source, path)
        else:
            with path.open("wb") as f:
                shutil.copyfileobj(source, f)
        return path

    def create_job(self, source: Source, metadata: SubmissionMetadata) -> str:
        """Spool ``source`` into the work directory and register the job (no phase runs)."""
        job_id = metadata.job_id or uuid.uuid4().hex
        if self.jobs.exists(job_id):
            raise PipelineError(f"job already exists: {job_id}")
        file_name = metadata.file_name
        if file_name is None:
            file_name = Path(source).name if isinstance(source, (str, Path)) else f"{job_id}.xlsx"
        self._spool(job_id, source)
        self.jobs.create(job_id, file_name, metadata.submitted_by)
        logger.info(f"job {job_id}: submitted {file_name} by {metadata.submitted_by}")
        return job_id

    def submit(
        self,
        source: Source,
        metadata: SubmissionMetadata | None = None,
        *,
        progress_callback: ProgressCallback | None = None,
    ) -> str:
        """Register a job for ``source`` and run all phases; returns the job id.

        With ``metadata.synchronous`` the call returns after the run; otherwise
        the run continues on a worker thread (see ``wait``).
        """
        metadata = metadata or SubmissionMetadata()
        job_id = self.create_job(source, metadata)
        kwargs = {
            "source": self.spool_path(job_id),
            "max_rows": metadata.max_rows,
            "progress_callback": progress_callback,
        }
        if metadata.synchronous:
            self.run(job_id, **kwargs)
        else:
            self._start_thread(job_id, kwargs)
        return job_id

    def _start_thread(self, job_id: str, kwargs: dict[str, Any]) -> None:
        self._cancel_event(job_id)
        thread = threading.Thread(target=self.run, args=(job_id,), kwargs=kwargs, name=f"job-{job_id[:8]}")
        with self._lock:
            self._threads[job_id] = thread
        thread.start()

    def wait(self, job_id: str, timeout: float | None = None) -> JobSnapshot:
        with self._lock:
            thread = self._threads.get(job_id)
        if thread is not None:
            thread.join(timeout)
            if not thread.is_alive():
                with self._lock:
                    self._threads.pop(job_id, None)
        return self.get_status(job_id)

    def get_status(self, job_id: str) -> JobSnapshot:
        return self.jobs.get(job_id)

    def cancel(self, job_id: str) -> bool:
        """Request cancellation; False when the job is not running in this process."""
        with self._lock:
            event = self._cancel_events.get(job_id)
        if event is None:
            return False
        event.set()
        logger.info(f"job {job_id}: cancel requested")
        return True

    def resume(
        self,
        job_id: str,
        source: str | Path | None = None,
        *,
        synchronous: bool = True,
        progress_callback: ProgressCallback | None = None,
    ) -> PhaseResult | None:
        """Continue an interrupted job from its ingest checkpoint.

        Without ``source`` the workbook spooled at submission is used.
        """
        snapshot = self.jobs.get(job_id)
        if snapshot.is_terminal:
            raise CheckpointStateError(f"job {job_id} is {snapshot.status.value}")
        cp = self.checkpoints.load(job_id)
        if cp is None:
            raise CheckpointStateError(f"job {job_id}: no checkpoint to resume from")
        path = Path(source) if source is not None else self.spool_path(job_id)
        phases: Sequence[Phase] = ALL_PHASES
        resume_ingest = cp.status is CheckpointStatus.ACTIVE
        if cp.status is CheckpointStatus.COMPLETED:
            phases = ALL_PHASES[1:]
        elif cp.status is CheckpointStatus.FAILED:
            raise CheckpointStateError(f"job {job_id}: ingest failed, submit the file again")
        logger.info(f"job {job_id}: resuming {[p.value for p in phases]} (processed_rows={cp.processed_rows})")
        kwargs = {"source": path, "phases": phases, "resume": resume_ingest, "progress_callback": progress_callback}
        if synchronous:
            return self.run(job_id, **kwargs)
        self._start_thread(job_id, kwargs)
        return None

    # -- phases -----------------------------------------------------------
    def _cancel_event(self, job_id: str) -> threading.Event:
        with self._lock:
            event = self._cancel_events.get(job_id)
            if event is None:
                event = threading.Event()
                self._cancel_events[job_id] = event
            return event

    def run_phase(
        self,
        job_id: str,
        phase: Phase | str,
        *,
        source: str | Path | None = None,
        start_level: int = 0,
        max_rows: int | None = None,
    ) -> PhaseResult:
        phase = Phase(phase)
        if phase not in ALL_PHASES:
            raise ValueError(f"not a runnable phase: {phase.value}")
        return self.run(job_id, source=source, phases=(phase,), start_level=start_level, max_rows=max_rows)

    def run(
        self,
        job_id: str,
        *,
        source: str | Path | None = None,
        phases: Sequence[Phase] = ALL_PHASES,
        resume: bool = False,
        max_rows: int | None = None,
        start_level: int = 0,
        progress_callback: ProgressCallback | None = None,
    ) -> PhaseResult:
        """Run ``phases`` in order for an existing job and return the combined result.

        Raises:
            JobStateError: ``phases`` are not allowed for a COMPLETED / FAILED job
        """
        snapshot = self.jobs.get(job_id)
        track = self._check_runnable(snapshot, phases)
        cancel_event = self._cancel_event(job_id)
        results: dict[str, Any] = {}
        phases_run: list[str] = []
        current = phases[0] if phases else Phase.DONE
        try:
            for phase in phases:
                current = phase
                phases_run.append(phase.value)
                if phase is Phase.INGEST:
                    src = Path(source) if source is not None else self.spool_path(job_id)
                    result = self._ingest(job_id, src, snapshot.file_name, resume, max_rows, cancel_event, progress_callback)
                    results["ingest"] = result
                elif phase is Phase.VALIDATE:
                    result = self._validate(job_id, cancel_event, track)
                    results["validation"] = result
                elif phase is Phase.APPLY:
                    result = self._apply(job_id, start_level, cancel_event, track)
                    results["apply"] = result
                else:
                    result = self._reconcile(job_id, track)
                    results["report"] = result
                outcome = getattr(result, "outcome", PhaseOutcome.SUCCESS)
                if outcome is PhaseOutcome.CANCELLED:
                    if track:
                        self.jobs.update(job_id, current_phase=Phase.CANCELLED.value)
                    logger.info(f"job {job_id}: cancelled during {phase.value}")
                    return PhaseResult(job_id, PhaseOutcome.CANCELLED, phases_run=tuple(phases_run), **results)
                if outcome is PhaseOutcome.FATAL:
                    reason = getattr(result, "failure_reason", None) or "FATAL"
                    message = getattr(result, "message", None) or f"{phase.value} failed"
                    self._fail(job_id, snapshot.file_name, phase, reason, message, track)
                    return PhaseResult(
                        job_id,
                        PhaseOutcome.FATAL,
                        failure_reason=reason,
                        message=message,
                        phases_run=tuple(phases_run),
                        **results,
                    )
        except PipelineError as e:
            message = str(e)
            if isinstance(e, WorkbookTooLargeError) and e.recommendation:
                message = f"{message} ({e.recommendation})"
            self._fail(job_id, snapshot.file_name, current, e.reason, message, track)
            return PhaseResult(
                job_id,
                PhaseOutcome.FATAL,
                failure_reason=e.reason,
                message=message,
                phases_run=tuple(phases_run),
                **results,
            )
        except Exception as e:
            logger.exception(f"job {job_id}: unexpected error in {current.value}")
            message = f"{type(e).__name__}: {e}"
            self._fail(job_id, snapshot.file_name, current, "UNEXPECTED_ERROR", message, track)
            return PhaseResult(
                job_id,
                PhaseOutcome.FATAL,
                failure_reason="UNEXPECTED_ERROR",
                message=message,
                phases_run=tuple(phases_run),
                **results,
            )
        finally:
            with self._lock:
                self._cancel_events.pop(job_id, None)

        if track and phases and phases[-1] is Phase.RECONCILE:
            self.jobs.update(
                job_id,
                status=JobStatus.COMPLETED,
                current_phase=Phase.DONE.value,
                progress_percent=100.0,
                completed_at=utcnow_iso(),
            )
            logger.info(f"job {job_id}: completed")
        outcome = PhaseOutcome.SUCCESS
        if self._has_row_errors(results):
            outcome = PhaseOutcome.VALIDATION_ERRORS
        return PhaseResult(job_id, outcome, phases_run=tuple(phases_run), **results)

    @staticmethod
    def _has_row_errors(results: dict[str, Any]) -> bool:
        ingest: IngestResult | None = results.get("ingest")
        validation: ValidationResult | None = results.get("validation")
        report: ReconciliationReport | None = results.get("report")
        if report is not None and (report.error_rows or report.parse_error_rows):
            return True
        if validation is not None and (validation.error_rows or validation.parse_error_rows):
            return True
        return ingest is not None and ingest.parse_error_rows > 0

    def _check_runnable(self, snapshot: JobSnapshot, phases: Sequence[Phase]) -> bool:
        """Whether the run may write job status; raises when ``phases`` are not allowed."""
        job_id = snapshot.job_id
        if snapshot.status is JobStatus.COMPLETED:
            if Phase.INGEST in phases:
                raise JobStateError(f"job {job_id} is COMPLETED; submit the file as a new job")
            logger.info(f"job {job_id}: re-running {[p.value for p in phases]} on a completed job")
            return False
        if snapshot.status is JobStatus.FAILED:
            retry_apply = (
                snapshot.current_phase == Phase.APPLY.value
                and bool(phases)
                and phases[0] is Phase.APPLY
                and set(phases) <= {Phase.APPLY, Phase.RECONCILE}
            )
            if not retry_apply:
                raise JobStateError(
                    f"job {job_id} is FAILED in {snapshot.current_phase}; "
                    "only an apply retry is allowed after an apply failure"
                )
            logger.info(f"job {job_id}: retrying apply after: {snapshot.error_message}")
            self.jobs.update(job_id, error_message=None, completed_at=None)
        return True

    def _fail(
        self, job_id: str, file_name: str, phase: Phase, reason: str, message: str, track: bool = True
    ) -> None:
        logger.error(f"job {job_id}: {phase.value} failed [{reason}] {message}")
        self.error_log.record(job_id, file_name, reason, message)
        self.error_log.flush()
        if not track:
            return
        self.jobs.update(
            job_id,
            status=JobStatus.FAILED,
            current_phase=phase.value,
            completed_at=utcnow_iso(),
            error_message=f"[{reason}] {message}",
        )

    def _ingest(
        self,
        job_id: str,
        source: Path,
        file_name: str,
        resume: bool,
        max_rows: int | None,
        cancel_event: threading.Event,
        progress_callback: ProgressCallback | None,
    ) -> IngestResult:
        changes: dict[str, Any] = {"status": JobStatus.INGESTING, "current_phase": Phase.INGEST.value}
        if not resume:
            changes["started_at"] = utcnow_iso()
        self.jobs.update(job_id, **changes)

        def on_progress(event: ProgressEvent) -> None:
            self.jobs.update(
                job_id,
                processed_rows=event.processed_rows,
                total_rows=event.total_rows,
                progress_percent=round(event.percent * _PROGRESS_AFTER[Phase.INGEST] / 100.0, 2),
            )
            if progress_callback is not None:
                progress_callback(event)

        result = self.ingest_service.ingest(
            job_id,
            source,
            file_name=file_name,
            resume=resume,
            cancel_event=cancel_event,
            progress_callback=on_progress,
            max_rows=max_rows,
        )
        changes = {"processed_rows": result.processed_rows, "total_rows": result.total_rows}
        if result.outcome is not PhaseOutcome.CANCELLED:
            changes["progress_percent"] = _PROGRESS_AFTER[Phase.INGEST]
        self.jobs.update(job_id, **changes)
        return result

    def _validate(self, job_id: str, cancel_event: threading.Event, track: bool = True) -> ValidationResult:
        cp = self.checkpoints.load(job_id)
        if cp is not None and cp.status is not CheckpointStatus.COMPLETED:
            raise CheckpointStateError(f"job {job_id}: ingest not completed ({cp.status.value})")
        if track:
            self.jobs.update(job_id, status=JobStatus.VALIDATING, current_phase=Phase.VALIDATE.value)
        result = self.validator.validate(job_id, cancel_event=cancel_event)
        changes: dict[str, Any] = {
            "valid_rows": result.valid_rows,
            "error_rows": result.error_rows + result.parse_error_rows,
        }
        if track:
            changes["progress_percent"] = _PROGRESS_AFTER[Phase.VALIDATE]
        self.jobs.update(job_id, **changes)
        return result

    def _apply(self, job_id: str, start_level: int, cancel_event: threading.Event, track: bool = True) -> ApplyResult:
        before = self.jobs.get(job_id).inserted_rows
        if track:
            self.jobs.update(job_id, status=JobStatus.APPLYING, current_phase=Phase.APPLY.value)
        result = self.applier.apply(job_id, start_level=start_level, cancel_event=cancel_event)
        changes: dict[str, Any] = {"inserted_rows": before + result.inserted_rows}
        if track and result.outcome is PhaseOutcome.SUCCESS:
            changes["progress_percent"] = _PROGRESS_AFTER[Phase.APPLY]
        self.jobs.update(job_id, **changes)
        if result.outcome is PhaseOutcome.FATAL:
            # 失敗レベルと挿入済み件数を残し、そのレベルから再実行できるようにする
            result = ApplyResult(
                job_id=result.job_id,
                outcome=result.outcome,
                inserted_rows=result.inserted_rows,
                levels=result.levels,
                start_level=result.start_level,
                failed_level=result.failed_level,
                failure_reason=result.failure_reason,
                message=(
                    f"apply failed at level {result.failed_level} after inserting "
                    f"{before + result.inserted_rows} row(s): {result.message}"
                ),
                elapsed_seconds=result.elapsed_seconds,
            )
        return result

    def _reconcile(self, job_id: str, track: bool = True) -> ReconciliationReport:
        snapshot = self.jobs.get(job_id)
        if track:
            self.jobs.update(job_id, current_phase=Phase.RECONCILE.value)
        report = self.reconciler.report(job_id, inserted_rows=snapshot.inserted_rows)
        self.jobs.update(job_id, valid_rows=report.valid_rows, error_rows=report.error_rows + report.parse_error_rows)
        return report

    # -- maintenance ------------------------------------------------------
    def cleanup(self, job_id: str) -> dict[str, int]:
        """Delete the job's staging rows, checkpoint and spooled workbook (the job record stays)."""
        self.jobs.get(job_id)
        with self.factory.connection() as conn:
            store = StagingStore(conn, self.factory.dialect)
            with transaction(conn, self.factory.dialect) as cur:
                counts = store.purge(cur, job_id)
        self.checkpoints.delete(job_id)
        self.spool_path(job_id).unlink(missing_ok=True)
        return counts

    def cleanup_checkpoints(self) -> int:
        return self.checkpoints.cleanup_old(self.config.checkpoint.max_age_hours)

    def list_errors(self, job_id: str, limit: int | None = None) -> list[dict[str, Any]]:
        """Staged errors of a job (original row data included), in insertion order."""
        self.jobs.get(job_id)
        rows: list[dict[str, Any]] = []
        with self.factory.connection() as conn:
            store = StagingStore(conn, self.factory.dialect)
            for row in store.iter_errors(job_id):
                rows.append(dict(zip(EXPORT_COLUMNS, row, strict=True)))
                if limit is not None and len(rows) >= limit:
                    break
        return rows

    def export_errors(
        self,
        job_id: str,
        path: str | Path | None = None,
        *,
        force_streaming: bool = False,
        prefer_flat_text: bool = False,
    ) -> WriteResult:
        self.jobs.get(job_id)
        return export_errors(
            self.factory,
            job_id,
            self.config.output,
            Path(path) if path is not None else None,
            force_streaming=force_streaming,
            prefer_flat_text=prefer_flat_text,
        )
