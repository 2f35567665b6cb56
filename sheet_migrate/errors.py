from __future__ import annotations

"""Exception taxonomy for the import pipeline.

Only unrecoverable conditions are raised to callers:

- ``StructuralError``: the workbook cannot be read as configured (broken zip/XML,
  missing sheet, missing header or required header columns). Aborts the job.
- ``ErrorCeilingExceeded``: row-level errors crossed ``ingest.max_errors``.
- ``StepTimeoutError``: a validation/apply step ran past its deadline. Surfaced
  with the distinct reason ``STEP_TIMEOUT``.
- ``TransientStoreError``: lock / connection trouble left over after retries.

Row-level problems (required field missing, bad format, duplicates, missing
references) are never raised; they are staged as error rows and reported.
"""

__all__ = [
    "PipelineError",
    "ConfigError",
    "StructuralError",
    "WorkbookTooLargeError",
    "ErrorCeilingExceeded",
    "StepTimeoutError",
    "TransientStoreError",
    "BatchInsertError",
    "JobNotFoundError",
    "JobStateError",
]


class PipelineError(Exception):
    """Base class for all pipeline failures."""

    reason = "FATAL"


class ConfigError(PipelineError):
    reason = "CONFIG_ERROR"


class StructuralError(PipelineError):
    """Malformed workbook or sheet layout. Fatal for the job."""

    reason = "STRUCTURAL_ERROR"


class WorkbookTooLargeError(StructuralError):
    """Early validation estimated more rows/cells than configured limits."""

    reason = "WORKBOOK_TOO_LARGE"

    def __init__(self, message: str, estimated_rows: int, estimated_cells: int, recommendation: str = "") -> None:
        super().__init__(message)
        self.estimated_rows = estimated_rows
        self.estimated_cells = estimated_cells
        self.recommendation = recommendation


class ErrorCeilingExceeded(PipelineError):
    reason = "ERROR_CEILING_EXCEEDED"

    def __init__(self, error_rows: int, max_errors: int) -> None:
        super().__init__(f"error rows {error_rows} exceeded ceiling max_errors={max_errors}")
        self.error_rows = error_rows
        self.max_errors = max_errors


class StepTimeoutError(PipelineError):
    reason = "STEP_TIMEOUT"

    def __init__(self, step: str, timeout_seconds: float) -> None:
        super().__init__(f"step '{step}' exceeded timeout of {timeout_seconds:g}s")
        self.step = step
        self.timeout_seconds = timeout_seconds


class TransientStoreError(PipelineError):
    reason = "TRANSIENT_STORE_ERROR"


class BatchInsertError(PipelineError):
    reason = "BATCH_INSERT_ERROR"


class JobNotFoundError(PipelineError):
    reason = "JOB_NOT_FOUND"


class JobStateError(PipelineError):
    """The requested phase is not allowed in the job's current status."""

    reason = "JOB_STATE"
