from __future__ import annotations

import json
import logging
import threading
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path

from ..db.connection import ConnectionFactory, transaction
from ..errors import ErrorCeilingExceeded, StructuralError, WorkbookTooLargeError
from ..excel.normalize import RawRow
from ..excel.reader import WorkbookReader, early_validate
from ..excel.registry import FieldRegistry
from ..models.config_models import PipelineConfig, SheetTemplate
from ..models.processing_result import BatchStatsAccumulator, IngestResult, PhaseOutcome, ReadSummary
from ..models.staging import ErrorType, StagedError, StagedRawRow
from ..staging.store import StagingStore
from .checkpoint import CheckpointManager, CheckpointStateError
from .progress import ProgressEvent, RowProgressTracker
from .retry import retry_transient

"""Ingest phase: streaming reader -> staging_raw, with checkpoints.

Per sheet, rows are buffered up to ``ingest.batch_size`` and flushed in one
transaction (raw rows + PARSE_ERROR rows, ``ON CONFLICT DO NOTHING``); the
checkpoint is advanced after each commit. A crash between commit and
checkpoint only means the last batch is re-sent on resume, which the conflict
clause absorbs.

Sheets may be ingested on separate threads (``ingest.sheet_workers``); each
worker owns its zip handle and database connection.
"""

__all__ = [
    "IngestService",
    "business_key_for",
]

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressEvent], None]


def business_key_for(template: SheetTemplate, fields: dict[str, str | None]) -> str | None:
    """JSON array of the key values; None when any key component is empty."""
    if not template.business_key:
        return None
    values = [fields.get(name) for name in template.business_key]
    if any(v is None for v in values):
        return None
    return json.dumps(values, ensure_ascii=False)


@dataclass
class _RunState:
    """Counters shared by all sheet workers of one ingest run."""
    job_id: str
    total_rows: int | None
    resumed_from: int
    max_errors: int
    max_rows: int
    progress_interval: int
    cancel_event: threading.Event
    progress_callback: ProgressCallback | None
    tracker: RowProgressTracker | None
    stats: BatchStatsAccumulator = field(default_factory=BatchStatsAccumulator)
    prior_parse_errors: int = 0  # staged by the interrupted run being resumed
    rows_seen: int = 0
    parse_error_rows: int = 0
    staged_rows: int = 0
    _last_reported: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def add_parse_error(self) -> None:
        with self._lock:
            self.parse_error_rows += 1
            count = self.prior_parse_errors + self.parse_error_rows
        if count > self.max_errors:
            raise ErrorCeilingExceeded(count, self.max_errors)

    def on_flush(self, sheet_name: str, rows_seen_delta: int, staged: int) -> None:
        with self._lock:
            self.rows_seen += rows_seen_delta
            self.staged_rows += staged
            processed = self.resumed_from + self.rows_seen
            report = (
                self.progress_callback is not None
                and processed // self.progress_interval > self._last_reported // self.progress_interval
            )
            if report:
                self._last_reported = processed
        if processed > self.max_rows:
            raise WorkbookTooLargeError(f"row limit exceeded: more than {self.max_rows} rows", processed, 0)
        if self.tracker is not None:
            self.tracker.update(rows_seen_delta, sheet_name)
        if report:
            self.progress_callback(ProgressEvent(self.job_id, sheet_name, processed, self.total_rows))


class IngestService:
    def __init__(
        self,
        config: PipelineConfig,
        factory: ConnectionFactory,
        checkpoints: CheckpointManager,
        registry: FieldRegistry | None = None,
    ) -> None:
        self.config = config
        self.factory = factory
        self.checkpoints = checkpoints
        self.registry = registry or FieldRegistry(config.templates)

    def ingest(
        self,
        job_id: str,
        source: Path,
        *,
        file_name: str | None = None,
        resume: bool = False,
        cancel_event: threading.Event | None = None,
        progress_callback: ProgressCallback | None = None,
        max_rows: int | None = None,
    ) -> IngestResult:
        """Stage every configured sheet of ``source`` under ``job_id``.

        Raises:
            StructuralError: unreadable workbook / sheet layout (checkpoint FAILED)
            ErrorCeilingExceeded: too many parse-error rows (checkpoint FAILED)
            CheckpointStateError: ``resume`` requested without an ACTIVE checkpoint
        """
        cfg = self.config.ingest
        started = time.perf_counter()
        cancel_event = cancel_event or threading.Event()
        file_name = file_name or source.name
        row_limit = max_rows or cfg.max_rows

        with WorkbookReader(source, self.config.null_sentinels) as wb:
            sheets = [s for s in self.registry.sheets if s in wb.sheet_names]
            missing = [s for s in self.registry.sheets if s not in wb.sheet_names]
            if not sheets:
                raise StructuralError(f"{file_name}: none of the configured sheets found {list(self.registry.sheets)}")
            if missing:
                logger.warning(f"{file_name}: configured sheets not in workbook: {missing}")

            if resume:
                cp = self.checkpoints.load(job_id)
                if cp is None or not cp.is_resumable:
                    status = cp.status.value if cp else "missing"
                    raise CheckpointStateError(f"job {job_id}: checkpoint not resumable ({status})")
                logger.info(f"job {job_id}: resuming ingest at processed_rows={cp.processed_rows}")
            else:
                estimates = early_validate(wb, self.registry, sheets, row_limit, cfg.max_cells)
                total_rows: int | None = None
                if all(e.source == "dimension" for e in estimates):
                    total_rows = sum(
                        max(0, e.rows - self.registry.template(e.sheet_name).header_row) for e in estimates
                    )
                header_rows = {s: self.registry.template(s).header_row for s in sheets}
                cp = self.checkpoints.create(job_id, file_name, total_rows, header_rows)

        prior_parse_errors = 0
        if resume:
            with self.factory.connection() as conn:
                prior_parse_errors = StagingStore(conn, self.factory.dialect).count_raw(job_id, parse_error=True)

        resume_points = dict(cp.sheet_progress)
        tracker = RowProgressTracker(cp.total_rows, description=f"ingest {file_name}", initial=cp.processed_rows)
        state = _RunState(
            job_id=job_id,
            total_rows=cp.total_rows,
            resumed_from=cp.processed_rows,
            max_errors=cfg.max_errors,
            max_rows=row_limit,
            progress_interval=max(1, cfg.progress_interval),
            cancel_event=cancel_event,
            progress_callback=progress_callback,
            tracker=tracker,
            prior_parse_errors=prior_parse_errors,
        )

        summaries: list[ReadSummary] = []
        try:
            try:
                if cfg.sheet_workers > 1 and len(sheets) > 1:
                    with ThreadPoolExecutor(max_workers=cfg.sheet_workers, thread_name_prefix="ingest") as pool:
                        futures = [
                            pool.submit(self._ingest_sheet, state, source, s, resume_points.get(s, 0))
                            for s in sheets
                        ]
                        for fut in futures:
                            summary = fut.result()
                            if summary is not None:
                                summaries.append(summary)
                else:
                    for s in sheets:
                        summary = self._ingest_sheet(state, source, s, resume_points.get(s, 0))
                        if summary is not None:
                            summaries.append(summary)
            finally:
                tracker.close()
        except Exception as e:
            # BaseException (KeyboardInterrupt 等) は ACTIVE のまま残し resume 可能にする
            self.checkpoints.fail(job_id, str(e), e)
            logger.error(f"job {job_id}: ingest failed: {e}")
            raise

        total_batches, avg_batch, p95_batch = state.stats.get_stats()
        elapsed = time.perf_counter() - started
        if cancel_event.is_set():
            cp = self.checkpoints.load(job_id) or cp
            logger.info(f"job {job_id}: ingest cancelled at processed_rows={cp.processed_rows}")
            outcome = PhaseOutcome.CANCELLED
        else:
            cp = self.checkpoints.complete(job_id)
            outcome = PhaseOutcome.VALIDATION_ERRORS if state.parse_error_rows else PhaseOutcome.SUCCESS
            logger.info(
                f"job {job_id}: ingest done staged={state.staged_rows} parse_errors={state.parse_error_rows} "
                f"processed_rows={cp.processed_rows}"
            )
        return IngestResult(
            job_id=job_id,
            outcome=outcome,
            staged_rows=state.staged_rows,
            parse_error_rows=state.parse_error_rows,
            total_rows=cp.total_rows,
            processed_rows=cp.processed_rows,
            resumed_from=state.resumed_from,
            elapsed_seconds=elapsed,
            sheets=tuple(summaries),
            total_batches=total_batches,
            avg_batch_seconds=avg_batch,
            p95_batch_seconds=p95_batch,
        )

    def _ingest_sheet(self, state: _RunState, source: Path, sheet_name: str, resume_after_row: int) -> ReadSummary | None:
        if state.cancel_event.is_set():
            return None
        cfg = self.config.ingest
        template = self.registry.template(sheet_name)
        dialect = self.factory.dialect

        with WorkbookReader(source, self.config.null_sentinels) as wb, self.factory.slot() as slot:
            store = StagingStore(slot.conn, dialect, page_size=cfg.batch_size)
            stream = wb.read_rows(self.registry, sheet_name, resume_after_row=resume_after_row)
            raws: list[StagedRawRow] = []
            errors: list[StagedError] = []
            flushed_seen = 0

            def flush(last_row: int) -> None:
                nonlocal flushed_seen
                batch_raws, batch_errors = list(raws), list(errors)

                def write() -> None:
                    with transaction(slot.conn, dialect) as cur:
                        store.insert_raw_rows(cur, batch_raws, metrics_callback=lambda m: state.stats.add_batch_time(m.elapsed_seconds))
                        if batch_errors:
                            store.insert_errors(cur, batch_errors)

                if batch_raws:
                    retry_transient(
                        write,
                        is_transient=dialect.is_transient,
                        max_retries=self.config.apply.max_retries,
                        backoff_seconds=self.config.apply.backoff_seconds,
                        label=f"ingest flush {sheet_name}",
                        on_retry=slot.recover,
                    )
                self.checkpoints.advance(state.job_id, sheet_name, last_row)
                raws.clear()
                errors.clear()
                delta = stream.rows_seen - flushed_seen
                flushed_seen = stream.rows_seen
                state.on_flush(sheet_name, delta, len(batch_raws))

            for row in stream:
                raws.append(self._staged(state.job_id, sheet_name, template, row))
                if row.is_parse_error:
                    errors.append(
                        StagedError(
                            job_id=state.job_id,
                            sheet_name=sheet_name,
                            row_num=row.row_num,
                            error_type=ErrorType.PARSE_ERROR,
                            error_field=None,
                            error_value=None,
                            message="; ".join(row.issues),
                            original_data=row.fields,
                        )
                    )
                    state.add_parse_error()
                if len(raws) >= cfg.batch_size:
                    flush(stream.last_row_num)
                    if state.cancel_event.is_set():
                        logger.info(f"job {state.job_id}: sheet '{sheet_name}' stopped at row {stream.last_row_num}")
                        return None
            flush(stream.last_row_num)
            return stream.summary

    @staticmethod
    def _staged(job_id: str, sheet_name: str, template: SheetTemplate, row: RawRow) -> StagedRawRow:
        return StagedRawRow(
            job_id=job_id,
            sheet_name=sheet_name,
            row_num=row.row_num,
            fields=row.fields,
            business_key=None if row.is_parse_error else business_key_for(template, row.fields),
            parse_error=row.is_parse_error,
        )

