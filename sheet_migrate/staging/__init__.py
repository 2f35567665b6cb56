from .jobs import JobRepository
from .store import StagingStore

__all__ = ["JobRepository", "StagingStore"]
