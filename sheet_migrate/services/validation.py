from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any

from ..db.connection import ConnectionFactory, transaction
from ..errors import ConfigError, ErrorCeilingExceeded, StepTimeoutError
from ..excel.registry import FieldRegistry
from ..models.config_models import PipelineConfig, SheetTemplate
from ..models.processing_result import PhaseOutcome, StepStatus, ValidationResult, ValidationStepStatus
from ..staging.store import StagingStore
from . import validation_sql as vsql
from .deadline import StatementDeadline

"""Batch Validation Engine.

Classifies every staged row of a job as valid or error with a fixed number of
set-based statements per (sheet, row range):

1. validate_fields              REQUIRED_MISSING / INVALID_FORMAT / INVALID_ENUM
2. detect_duplicates_in_file    DUP_IN_FILE (window ranking over the whole sheet)
3. check_references             REF_NOT_FOUND (distinct keys, one join)
4. check_existing_duplicates    DUP_IN_DB (distinct keys, one join)
5. promote_valid                anti-join into staging_valid

Sheets run in waves: a sheet whose references name a staged sheet waits until
that sheet is promoted, so rejected parent rows never satisfy a reference.
Sheets larger than ``validation.partition_threshold`` are split into
row-number ranges of ``partition_size``; ranges run on a worker pool with at
most ``max_in_flight`` in flight, each on its own connection. Every step is
its own transaction under a statement deadline.
"""

__all__ = [
    "STEPS",
    "Partition",
    "BatchValidationEngine",
    "validation_waves",
]

logger = logging.getLogger(__name__)

STEP_FIELDS = "validate_fields"
STEP_DUP_FILE = "detect_duplicates_in_file"
STEP_REFERENCES = "check_references"
STEP_DUP_DB = "check_existing_duplicates"
STEP_PROMOTE = "promote_valid"

STEPS = (STEP_FIELDS, STEP_DUP_FILE, STEP_REFERENCES, STEP_DUP_DB, STEP_PROMOTE)

StatementBuilder = Callable[..., list[vsql.Statement]]


def validation_waves(templates: tuple[SheetTemplate, ...]) -> list[list[str]]:
    """Sheet names grouped so every staged parent sheet precedes its dependents.

    Raises:
        ConfigError: staged references form a cycle
    """
    names = {t.sheet for t in templates}
    deps = {
        t.sheet: {r.staged_sheet for r in t.references if r.staged_sheet in names}
        for t in templates
    }
    done: set[str] = set()
    waves: list[list[str]] = []
    remaining = [t.sheet for t in templates]
    while remaining:
        wave = [s for s in remaining if deps[s] <= done]
        if not wave:
            raise ConfigError(f"staged sheet references form a cycle: {sorted(remaining)}")
        waves.append(wave)
        done.update(wave)
        remaining = [s for s in remaining if s not in done]
    return waves


@dataclass(frozen=True)
class Partition:
    sheet_name: str
    lo: int
    hi: int


class BatchValidationEngine:
    def __init__(self, config: PipelineConfig, factory: ConnectionFactory, registry: FieldRegistry | None = None) -> None:
        self.config = config
        self.factory = factory
        self.registry = registry or FieldRegistry(config.templates)

    def partitions(self, job_id: str) -> list[Partition]:
        """Row ranges to validate, in sheet order."""
        cfg = self.config.validation
        with self.factory.connection() as conn:
            store = StagingStore(conn, self.factory.dialect)
            staged = set(store.staged_sheets(job_id))
            result: list[Partition] = []
            for sheet in self.registry.sheets:
                if sheet not in staged:
                    continue
                lo, hi, count = store.row_range(job_id, sheet)
                if count > cfg.partition_threshold:
                    start = lo
                    while start <= hi:
                        end = min(hi, start + cfg.partition_size - 1)
                        result.append(Partition(sheet, start, end))
                        start = end + 1
                else:
                    result.append(Partition(sheet, lo, hi))
        return result

    def _builders(self, template: SheetTemplate) -> list[tuple[str, StatementBuilder]]:
        steps: list[tuple[str, StatementBuilder]] = [(STEP_FIELDS, vsql.field_checks)]
        if template.business_key:
            steps.append((STEP_DUP_FILE, vsql.duplicates_in_file))
        if template.references:
            steps.append((STEP_REFERENCES, vsql.reference_checks))
        if template.existing_duplicates is not None:
            steps.append((STEP_DUP_DB, vsql.existing_duplicates))
        steps.append((STEP_PROMOTE, vsql.promote_valid))
        return steps

    def validate(self, job_id: str, *, cancel_event: threading.Event | None = None) -> ValidationResult:
        """Run every step for every partition of ``job_id``.

        A step timeout or database failure stops the remaining steps of that
        partition (other partitions finish); the result is FATAL and earlier
        committed steps stay in place.

        Raises:
            ErrorCeilingExceeded: distinct error rows (parse errors included) exceed ``ingest.max_errors``
        """
        cfg = self.config.validation
        started = time.perf_counter()
        cancel_event = cancel_event or threading.Event()
        parts = self.partitions(job_id)
        logger.info(f"job {job_id}: validating {len(parts)} partition(s)")

        plans: list[tuple[Partition, list[ValidationStepStatus]]] = []
        for part in parts:
            template = self.registry.template(part.sheet_name)
            statuses = [
                ValidationStepStatus(step=name, sheet_name=part.sheet_name, row_range=(part.lo, part.hi))
                for name, _ in self._builders(template)
            ]
            plans.append((part, statuses))

        gate = threading.BoundedSemaphore(max(1, cfg.max_in_flight))
        templates = tuple(self.registry.template(s) for s in self.registry.sheets)
        for wave in validation_waves(templates):
            batch = [(p, s) for p, s in plans if p.sheet_name in wave]
            self._run_wave(job_id, batch, gate, cancel_event)
            # later waves stay PENDING once a step broke
            if any(st.status in (StepStatus.FAILED, StepStatus.TIMEOUT) for _, s in batch for st in s):
                break

        steps = tuple(s for _, statuses in plans for s in statuses)
        timed_out = [s for s in steps if s.status is StepStatus.TIMEOUT]
        failed = [s for s in steps if s.status is StepStatus.FAILED]

        with self.factory.connection() as conn:
            store = StagingStore(conn, self.factory.dialect)
            valid_rows = store.count_valid(job_id)
            error_rows = store.count_error_rows(job_id)
            parse_error_rows = store.count_raw(job_id, parse_error=True)
            errors_by_type = store.errors_by_type(job_id)
            ceiling_rows = store.count_error_rows(job_id, include_parse_errors=True)

        elapsed = time.perf_counter() - started
        failure_reason = message = None
        if timed_out or failed:
            outcome = PhaseOutcome.FATAL
            first = (timed_out or failed)[0]
            failure_reason = StepTimeoutError.reason if timed_out else "STEP_FAILED"
            message = f"{first.step} on {first.sheet_name} rows {first.row_range[0]}-{first.row_range[1]}: {first.error}"
            logger.error(f"job {job_id}: validation failed: {message}")
        elif cancel_event.is_set() and any(s.status is StepStatus.PENDING for s in steps):
            outcome = PhaseOutcome.CANCELLED
            logger.info(f"job {job_id}: validation cancelled")
        else:
            if ceiling_rows > self.config.ingest.max_errors:
                raise ErrorCeilingExceeded(ceiling_rows, self.config.ingest.max_errors)
            outcome = PhaseOutcome.VALIDATION_ERRORS if error_rows or parse_error_rows else PhaseOutcome.SUCCESS
            logger.info(
                f"job {job_id}: validation done valid={valid_rows} error_rows={error_rows} "
                f"parse_errors={parse_error_rows} in {elapsed:.2f}s"
            )
        return ValidationResult(
            job_id=job_id,
            outcome=outcome,
            valid_rows=valid_rows,
            error_rows=error_rows,
            parse_error_rows=parse_error_rows,
            errors_by_type=errors_by_type,
            steps=steps,
            partitions=len(parts),
            elapsed_seconds=elapsed,
            failure_reason=failure_reason,
            message=message,
        )

    def _run_wave(
        self,
        job_id: str,
        plans: list[tuple[Partition, list[ValidationStepStatus]]],
        gate: threading.BoundedSemaphore,
        cancel_event: threading.Event,
    ) -> None:
        workers = self.config.validation.max_workers
        if len(plans) > 1 and workers > 1:
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="validate") as pool:
                futures = [pool.submit(self._run_partition, job_id, p, s, gate, cancel_event) for p, s in plans]
                for fut in futures:
                    fut.result()
        else:
            for p, s in plans:
                self._run_partition(job_id, p, s, gate, cancel_event)

    def _run_partition(
        self,
        job_id: str,
        part: Partition,
        statuses: list[ValidationStepStatus],
        gate: threading.BoundedSemaphore,
        cancel_event: threading.Event,
    ) -> None:
        template = self.registry.template(part.sheet_name)
        builders = dict(self._builders(template))
        dialect = self.factory.dialect
        with gate, self.factory.connection() as conn:
            for status in statuses:
                if cancel_event.is_set():
                    return
                statements = builders[status.step](dialect, template, job_id, part.lo, part.hi)
                if not self._run_step(conn, status, statements):
                    return

    def _run_step(self, conn: Any, status: ValidationStepStatus, statements: list[vsql.Statement]) -> bool:
        cfg = self.config.validation
        dialect = self.factory.dialect
        timeout = cfg.promote_timeout_seconds if status.step == STEP_PROMOTE else cfg.step_timeout_seconds
        status.status = StepStatus.RUNNING
        t0 = time.perf_counter()
        try:
            with StatementDeadline(conn, dialect, timeout, status.step):
                with transaction(conn, dialect) as cur:
                    affected = 0
                    for sql, params, counted in statements:
                        cur.execute(dialect.sql(sql), params)
                        if counted:
                            affected += max(cur.rowcount, 0)
        except StepTimeoutError as e:
            status.status = StepStatus.TIMEOUT
            status.error = str(e)
            return False
        except Exception as e:
            status.status = StepStatus.FAILED
            status.error = f"{type(e).__name__}: {e}"
            logger.error(f"step {status.step} ({status.sheet_name} {status.row_range}) failed: {e}")
            return False
        finally:
            status.duration_seconds = time.perf_counter() - t0
        status.status = StepStatus.COMPLETED
        status.affected_rows = affected
        logger.debug(
            f"step {status.step} ({status.sheet_name} {status.row_range}) affected={affected} "
            f"in {status.duration_seconds:.3f}s"
        )
        return True
