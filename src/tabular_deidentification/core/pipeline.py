"""Per-record deidentification pipeline."""

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import numpy as np

from ..correspondence.factory import create_store
from ..correspondence.store import CallerCredential, CorrespondenceStore
from ..deidentification.deidentification_engine import DeidentificationEngine
from ..policy.policy_resolver import PolicyResolver, Resolution
from ..policy.policy_set import PolicySet, Schema, infer_field_type
from ..risk.risk_evaluator import RiskEvaluator, RiskReport
from .config import Config, get_config
from .errors import (
    DeidentificationError,
    NoPolicyForField,
    RecordSuppressed,
    ReversibilityConflict,
    StoreUnavailable,
)


@dataclass
class FieldError:
    """A classified failure on one field of one record."""
    record_index: Optional[int]
    field: Optional[str]
    code: str
    message: str

    @classmethod
    def from_exception(cls, record_index: Optional[int], error: DeidentificationError) -> "FieldError":
        return cls(record_index=record_index, field=error.field, code=error.code, message=error.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'record_index': self.record_index,
            'field': self.field,
            'code': self.code,
            'message': self.message,
        }


@dataclass
class RecordResult:
    """
    Result of transforming one record.

    A ``fatal`` failure came from a strict policy and aborts the batch; other
    errors only fail this record.
    """
    index: int
    record: Optional[Dict[str, Any]] = None
    suppressed: bool = False
    suppressed_by: Optional[str] = None
    warnings: List[FieldError] = field(default_factory=list)
    errors: List[FieldError] = field(default_factory=list)
    passthrough_fields: List[str] = field(default_factory=list)
    fatal: bool = False

    @property
    def failed(self) -> bool:
        return bool(self.errors)

    @property
    def transformed(self) -> bool:
        return self.record is not None


class DeidentificationPipeline:
    """
    Transforms records field by field under a policy set.

    For every field the pipeline:
    1. Determines the declared type (schema, else inferred from the value)
    2. Asks the policy resolver for the techniques
    3. Applies them in order through the deidentification engine
    4. Recovers or escalates failures according to strictness
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        policy_set: Optional[PolicySet] = None,
        store: Optional[CorrespondenceStore] = None,
        rng: Optional[np.random.Generator] = None,
        **kwargs
    ):
        """
        Initialize the deidentification pipeline.

        Args:
            config: Configuration object. If None, loads from default sources.
            policy_set: Field policies to apply
            store: Correspondence store; built from configuration if None
            rng: Random source for perturbation outside of per-record streams
            **kwargs: Configuration section overrides
        """
        self.config = config or get_config()

        # Apply any configuration overrides
        if kwargs:
            self.config = self.config.with_overrides(**kwargs)

        self.logger = logging.getLogger(__name__)
        self.policy_set = policy_set or PolicySet()

        self._owns_store = store is None
        self.store = store or create_store(self.config)

        self._initialize_components(rng)

        self._stats_lock = threading.Lock()
        self.reset_stats()

    def _initialize_components(self, rng: Optional[np.random.Generator]) -> None:
        """Initialize all pipeline components."""
        self.logger.info("Initializing deidentification pipeline components...")

        settings = self.config.deidentification
        self.resolver = PolicyResolver(
            self.policy_set,
            default_technique=settings.default_technique,
            strict_mode=settings.strict_mode,
        )
        self.engine = DeidentificationEngine(self.config, self.store, rng=rng)
        self.risk_evaluator = RiskEvaluator(self.config.risk)

        self.logger.info("Pipeline components initialized successfully")

    def classify(self, schema: Schema) -> Dict[str, Resolution]:
        """
        Resolve the techniques of every declared field up front.

        Raises:
            NoPolicyForField: In strict mode, for the first unmatched field
        """
        return self.resolver.resolve_schema(schema)

    def process_record(
        self,
        record: Dict[str, Any],
        index: int = 0,
        schema: Optional[Schema] = None,
    ) -> RecordResult:
        """
        Transform one record.

        Args:
            record: Field name -> value
            index: Position of the record in its batch
            schema: Declared field types

        Returns:
            RecordResult; ``record`` is None when the record was suppressed
            or failed under a strict policy
        """
        schema = schema or {}
        result = RecordResult(index=index)
        transformed: Dict[str, Any] = {}
        rng = self.engine.rng_for(index)

        for field_name, value in record.items():
            field_type = schema.get(field_name) or infer_field_type(value)

            try:
                resolution = self.resolver.resolve(field_name, field_type)
            except NoPolicyForField as e:
                result.errors.append(FieldError.from_exception(index, e))
                result.fatal = True
                break

            if resolution.passes_through:
                transformed[field_name] = value
                result.passthrough_fields.append(field_name)
                continue

            try:
                transformed[field_name] = self.engine.apply(
                    value, resolution.techniques, field_name, field_type, rng
                )
            except RecordSuppressed:
                result.suppressed = True
                result.suppressed_by = field_name
                self.logger.debug(f"Record {index} suppressed by policy on '{field_name}'")
                break
            except DeidentificationError as e:
                error = FieldError.from_exception(index, e)
                # Pseudonymization failures never leak the original value
                if resolution.strict or isinstance(e, (StoreUnavailable, ReversibilityConflict)):
                    result.errors.append(error)
                    result.fatal = resolution.strict
                    self.logger.warning(f"Record {index} failed on '{field_name}': {e.code}")
                    break
                transformed[field_name] = value
                result.warnings.append(error)
                self.logger.warning(
                    f"Record {index}: '{field_name}' passed through unmodified after {e.code}"
                )

        if not result.suppressed and not result.errors:
            result.record = transformed

        self._update_stats(result)
        return result

    def process_records(
        self, records: Sequence[Dict[str, Any]], schema: Optional[Schema] = None
    ) -> List[RecordResult]:
        """Transform records sequentially."""
        return [self.process_record(record, i, schema) for i, record in enumerate(records)]

    def evaluate_risk(
        self,
        dataset: Sequence[Dict[str, Any]],
        quasi_identifiers: Optional[Sequence[Sequence[str]]] = None,
        indices: Optional[Sequence[int]] = None,
    ) -> RiskReport:
        """Run the risk evaluator over a dataset."""
        return self.risk_evaluator.evaluate(dataset, quasi_identifiers, indices=indices)

    def reverse(self, technique_id: str, pseudonym: str, credential: CallerCredential) -> Any:
        """Authorized reverse lookup through the correspondence store."""
        return self.store.reverse(technique_id, pseudonym, credential)

    def _update_stats(self, result: RecordResult) -> None:
        """Update pipeline statistics."""
        with self._stats_lock:
            self.stats['records_processed'] += 1
            if result.transformed:
                self.stats['records_transformed'] += 1
            if result.suppressed:
                self.stats['records_suppressed'] += 1
            if result.failed:
                self.stats['records_failed'] += 1
            self.stats['field_warnings'] += len(result.warnings)

    def get_stats(self) -> Dict[str, Any]:
        """Get pipeline processing statistics."""
        with self._stats_lock:
            stats = self.stats.copy()
        stats['engine'] = self.engine.get_stats()
        return stats

    def reset_stats(self) -> None:
        """Reset pipeline statistics."""
        with self._stats_lock:
            self.stats = {
                'records_processed': 0,
                'records_transformed': 0,
                'records_suppressed': 0,
                'records_failed': 0,
                'field_warnings': 0,
            }

    def close(self) -> None:
        """Release the engine executor and any store this pipeline built."""
        self.engine.close()
        if self._owns_store:
            self.store.close()

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()
