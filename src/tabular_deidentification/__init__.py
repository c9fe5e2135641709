"""
Tabular Deidentification Engine

Policy-driven deidentification of structured records: masking,
pseudonymization, generalization, perturbation and suppression, with
re-identification risk evaluation over the transformed batch.
"""

__version__ = "1.0.0"

from .core.pipeline import DeidentificationPipeline
from .core.batch_processor import BatchProcessor, BatchResult, BatchSummary
from .core.config import Config
from .policy.policy_set import FieldPolicy, FieldType, PolicySet

__all__ = [
    "DeidentificationPipeline",
    "BatchProcessor",
    "BatchResult",
    "BatchSummary",
    "Config",
    "FieldPolicy",
    "FieldType",
    "PolicySet",
]
