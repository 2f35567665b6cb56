"""Domain models for the staged spreadsheet import pipeline."""

from .checkpoint import Checkpoint, CheckpointStatus
from .config_models import FieldDescriptor, PipelineConfig, SheetTemplate
from .job import JobSnapshot, JobStatus, SubmissionMetadata
from .processing_result import PhaseOutcome, PhaseResult
from .staging import ErrorType, StagedError, StagedRawRow

__all__ = [
    # Configuration
    "FieldDescriptor",
    "PipelineConfig",
    "SheetTemplate",
    # Staging
    "ErrorType",
    "StagedError",
    "StagedRawRow",
    # Jobs / checkpoints
    "Checkpoint",
    "CheckpointStatus",
    "JobSnapshot",
    "JobStatus",
    "SubmissionMetadata",
    # Results
    "PhaseOutcome",
    "PhaseResult",
]
