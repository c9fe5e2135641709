"""Core components for the tabular deidentification engine."""

from .pipeline import DeidentificationPipeline, FieldError, RecordResult
from .batch_processor import BatchProcessor, BatchResult, BatchState, BatchSummary
from .config import Config

__all__ = [
    "DeidentificationPipeline",
    "FieldError",
    "RecordResult",
    "BatchProcessor",
    "BatchResult",
    "BatchState",
    "BatchSummary",
    "Config",
]
