from .apply import ApplyEngine
from .checkpoint import CheckpointManager, CheckpointStateError
from .ingest import IngestService
from .orchestrator import PipelineController
from .reconcile import ReconciliationReporter
from .validation import BatchValidationEngine

__all__ = [
    "ApplyEngine",
    "BatchValidationEngine",
    "CheckpointManager",
    "CheckpointStateError",
    "IngestService",
    "PipelineController",
    "ReconciliationReporter",
]
