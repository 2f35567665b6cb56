from __future__ import annotations

import statistics
from dataclasses import dataclass, field
from enum import Enum

"""Typed phase results.

Each phase returns a result carrying a ``PhaseOutcome`` instead of raising for
recoverable conditions. Only structural corruption and an exceeded error
ceiling are raised as exceptions.
"""

__all__ = [
    "PhaseOutcome",
    "StepStatus",
    "ReadSummary",
    "IngestResult",
    "ValidationStepStatus",
    "ValidationResult",
    "LevelResult",
    "ApplyResult",
    "TargetReconciliation",
    "ReconciliationReport",
    "PhaseResult",
    "BatchStatsAccumulator",
]


class PhaseOutcome(str, Enum):
    SUCCESS = "SUCCESS"
    VALIDATION_ERRORS = "VALIDATION_ERRORS"  # 行エラーあり (ジョブは継続)
    FATAL = "FATAL"
    CANCELLED = "CANCELLED"


class StepStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    TIMEOUT = "TIMEOUT"


@dataclass(frozen=True)
class ReadSummary:
    """Terminal summary of one streamed sheet."""
    sheet_name: str
    rows_seen: int  # data rows consumed after the header (incl. blank/parse-error)
    rows_emitted: int
    blank_rows: int
    parse_error_rows: int
    skipped_rows: int  # rows skipped on resume
    last_row_num: int
    elapsed_seconds: float


@dataclass(frozen=True)
class IngestResult:
    job_id: str
    outcome: PhaseOutcome
    staged_rows: int
    parse_error_rows: int
    total_rows: int | None
    processed_rows: int
    resumed_from: int
    elapsed_seconds: float
    sheets: tuple[ReadSummary, ...] = ()
    total_batches: int = 0
    avg_batch_seconds: float = 0.0
    p95_batch_seconds: float = 0.0
    message: str | None = None


@dataclass
class ValidationStepStatus:
    """Execution record of one validation step for one sheet/row range."""
    step: str
    sheet_name: str
    row_range: tuple[int, int]
    status: StepStatus = StepStatus.PENDING
    affected_rows: int = 0
    duration_seconds: float = 0.0
    error: str | None = None


@dataclass(frozen=True)
class ValidationResult:
    job_id: str
    outcome: PhaseOutcome
    valid_rows: int
    error_rows: int  # distinct rows with at least one error (parse errors excluded)
    parse_error_rows: int
    errors_by_type: dict[str, int]
    steps: tuple[ValidationStepStatus, ...]
    partitions: int
    elapsed_seconds: float
    failure_reason: str | None = None
    message: str | None = None

    @property
    def new_error_rows_inserted(self) -> int:
        return sum(s.affected_rows for s in self.steps if s.step != "promote_valid")


@dataclass(frozen=True)
class LevelResult:
    level: int
    tables: tuple[str, ...]
    inserted_rows: dict[str, int]
    attempts: int = 1


@dataclass(frozen=True)
class ApplyResult:
    job_id: str
    outcome: PhaseOutcome
    inserted_rows: int
    levels: tuple[LevelResult, ...]
    start_level: int = 0
    failed_level: int | None = None
    failure_reason: str | None = None
    message: str | None = None
    elapsed_seconds: float = 0.0


@dataclass(frozen=True)
class TargetReconciliation:
    table: str
    sheet_name: str
    expected_keys: int  # distinct natural keys among valid rows
    present_keys: int  # of those, keys found in the target table

    @property
    def missing_keys(self) -> int:
        return self.expected_keys - self.present_keys


@dataclass(frozen=True)
class ReconciliationReport:
    job_id: str
    staged_rows: int
    parse_error_rows: int
    valid_rows: int
    error_rows: int
    inserted_rows: int
    errors_by_type: dict[str, int]
    targets: tuple[TargetReconciliation, ...]
    elapsed_seconds: float

    @property
    def classified_rows(self) -> int:
        return self.valid_rows + self.error_rows

    @property
    def is_complete(self) -> bool:
        """Every non-parse-error staged row is classified exactly once."""
        return self.classified_rows == self.staged_rows - self.parse_error_rows

    @property
    def is_balanced(self) -> bool:
        return self.is_complete and all(t.missing_keys == 0 for t in self.targets)


@dataclass(frozen=True)
class PhaseResult:
    """Overall result of a controller run (one or more phases)."""
    job_id: str
    outcome: PhaseOutcome
    ingest: IngestResult | None = None
    validation: ValidationResult | None = None
    apply: ApplyResult | None = None
    report: ReconciliationReport | None = None
    failure_reason: str | None = None
    message: str | None = None
    phases_run: tuple[str, ...] = field(default_factory=tuple)


class BatchStatsAccumulator:
    """Accumulates batch flush timings (count / mean / p95)."""

    def __init__(self) -> None:
        self.batch_times: list[float] = []

    def add_batch_time(self, elapsed_seconds: float) -> None:
        self.batch_times.append(elapsed_seconds)

    def get_stats(self) -> tuple[int, float, float]:
        """Returns (total_batches, avg_batch_seconds, p95_batch_seconds)."""
        if not self.batch_times:
            return (0, 0.0, 0.0)
        total_batches = len(self.batch_times)
        avg_batch_seconds = statistics.mean(self.batch_times)
        if total_batches == 1:
            p95_batch_seconds = self.batch_times[0]
        else:
            # 19 cut points at n=20 -> index 18 is p95
            p95_batch_seconds = statistics.quantiles(self.batch_times, n=20, method="inclusive")[18]
        return (total_batches, avg_batch_seconds, p95_batch_seconds)
