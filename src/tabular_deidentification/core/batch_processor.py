"""Batch processor: orchestrates a batch of records through the pipeline."""

import json
import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple, Union

from ..correspondence.store import CorrespondenceStore
from ..policy.policy_set import PolicySet, Schema
from ..risk.risk_evaluator import RiskReport
from .config import Config, get_config
from .errors import NoPolicyForField
from .pipeline import DeidentificationPipeline, FieldError, RecordResult


INTERNAL_ERROR = "INTERNAL_ERROR"


class BatchState(str, Enum):
    """Lifecycle states of a batch."""
    RECEIVED = "received"
    CLASSIFIED = "classified"
    TRANSFORMED = "transformed"
    RISK_ASSESSED = "risk_assessed"
    FINALIZED = "finalized"
    ERRORED = "errored"
    CANCELLED = "cancelled"

    def is_terminal(self) -> bool:
        return self in (BatchState.FINALIZED, BatchState.ERRORED, BatchState.CANCELLED)


# Valid transitions from each state
VALID_TRANSITIONS: Dict[BatchState, Set[BatchState]] = {
    BatchState.RECEIVED: {
        BatchState.CLASSIFIED,
        BatchState.ERRORED,
        BatchState.CANCELLED,
    },
    BatchState.CLASSIFIED: {
        BatchState.TRANSFORMED,
        BatchState.ERRORED,
        BatchState.CANCELLED,
    },
    BatchState.TRANSFORMED: {
        BatchState.RISK_ASSESSED,
        BatchState.FINALIZED,
        BatchState.ERRORED,
    },
    BatchState.RISK_ASSESSED: {
        BatchState.FINALIZED,
        BatchState.ERRORED,
    },
    # Terminal states - no transitions out
    BatchState.FINALIZED: set(),
    BatchState.ERRORED: set(),
    BatchState.CANCELLED: set(),
}


class InvalidStateTransition(RuntimeError):
    """A batch was moved along an edge the state machine does not allow."""


@dataclass
class BatchSummary:
    """
    Structured outcome of a batch.

    ``transformed + suppressed + errored + abandoned == total_records``.
    """
    total_records: int
    transformed: int = 0
    suppressed: int = 0
    suppressed_by_policy: int = 0
    suppressed_by_risk: int = 0
    errored: int = 0
    abandoned: int = 0
    passthrough_fields: List[str] = field(default_factory=list)
    warnings: List[FieldError] = field(default_factory=list)
    errors: List[FieldError] = field(default_factory=list)
    state: BatchState = BatchState.RECEIVED
    state_history: List[BatchState] = field(default_factory=lambda: [BatchState.RECEIVED])
    risk_report: Optional[RiskReport] = None
    input_risk_report: Optional[RiskReport] = None
    processing_time: float = 0.0

    @property
    def success(self) -> bool:
        return self.state == BatchState.FINALIZED

    def to_dict(self) -> Dict[str, Any]:
        return {
            'total_records': self.total_records,
            'transformed': self.transformed,
            'suppressed': self.suppressed,
            'suppressed_by_policy': self.suppressed_by_policy,
            'suppressed_by_risk': self.suppressed_by_risk,
            'errored': self.errored,
            'abandoned': self.abandoned,
            'passthrough_fields': list(self.passthrough_fields),
            'warnings': [w.to_dict() for w in self.warnings],
            'errors': [e.to_dict() for e in self.errors],
            'state': self.state.value,
            'state_history': [s.value for s in self.state_history],
            'success': self.success,
            'risk_report': self.risk_report.to_dict() if self.risk_report else None,
            'input_risk_report': self.input_risk_report.to_dict() if self.input_risk_report else None,
            'processing_time': self.processing_time,
        }


@dataclass
class BatchResult:
    """Transformed records of a batch plus its summary."""
    records: List[Dict[str, Any]]
    summary: BatchSummary


class BatchProcessor:
    """
    Orchestrates batches of records.

    This processor provides:
    1. The batch state machine, from Received to Finalized
    2. Parallel record transformation over a bounded worker pool
    3. Stable output ordering through a pre-sized slot array
    4. Risk evaluation and risk-driven record suppression
    5. Cancellation with transformed versus abandoned accounting
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        policy_set: Optional[PolicySet] = None,
        store: Optional[CorrespondenceStore] = None,
        pipeline: Optional[DeidentificationPipeline] = None,
        **kwargs
    ):
        """
        Initialize the batch processor.

        Args:
            config: Configuration object
            policy_set: Field policies to apply
            store: Correspondence store shared by all workers
            pipeline: Ready-made pipeline; built from the other arguments if None
            **kwargs: Configuration section overrides
        """
        if pipeline is not None:
            self.pipeline = pipeline
            self._owns_pipeline = False
        else:
            self.pipeline = DeidentificationPipeline(config or get_config(), policy_set, store, **kwargs)
            self._owns_pipeline = True

        self.config = self.pipeline.config
        self.logger = logging.getLogger(__name__)

        self._cancel_event = threading.Event()

        self.logger.info(
            f"Batch processor initialized with {self.config.processing.max_workers} workers"
        )

    def cancel(self) -> None:
        """
        Stop dispatching records of the running batch.

        In-flight records complete or time out; the rest are abandoned.
        """
        self.logger.info("Batch cancellation requested")
        self._cancel_event.set()

    def process_batch(
        self,
        records: Sequence[Dict[str, Any]],
        schema: Optional[Schema] = None,
        stable_ordering: Optional[bool] = None,
        quasi_identifiers: Optional[Sequence[Sequence[str]]] = None,
    ) -> BatchResult:
        """
        Deidentify a batch of records.

        Args:
            records: Input records
            schema: Declared field types; undeclared fields are inferred
            stable_ordering: Keep input order in the output (defaults to config)
            quasi_identifiers: Risk combinations (defaults to config)

        Returns:
            BatchResult; failures are reported in the summary, never raised
        """
        start_time = time.time()
        records = list(records)
        schema = schema or {}
        if stable_ordering is None:
            stable_ordering = self.config.processing.stable_ordering

        self._cancel_event.clear()
        summary = BatchSummary(total_records=len(records))
        output: List[Dict[str, Any]] = []

        self.logger.info(f"Starting batch of {len(records)} records")

        try:
            output = self._run(records, schema, stable_ordering, quasi_identifiers, summary)
        except Exception as e:
            self.logger.exception(f"Batch processing failed: {e}")
            summary.errors.append(FieldError(
                record_index=None, field=None, code=INTERNAL_ERROR, message=str(e)
            ))
            summary.abandoned = summary.total_records - (
                summary.transformed + summary.suppressed + summary.errored
            )
            self._transition(summary, BatchState.ERRORED)
            output = []

        summary.processing_time = time.time() - start_time

        self.logger.info(
            f"Batch {summary.state.value}: {summary.transformed} transformed, "
            f"{summary.suppressed} suppressed, {summary.errored} errored, "
            f"{summary.abandoned} abandoned"
        )
        return BatchResult(records=output, summary=summary)

    def _run(
        self,
        records: List[Dict[str, Any]],
        schema: Schema,
        stable_ordering: bool,
        quasi_identifiers: Optional[Sequence[Sequence[str]]],
        summary: BatchSummary,
    ) -> List[Dict[str, Any]]:
        risk_config = self.config.risk

        if risk_config.enabled and risk_config.evaluate_input:
            summary.input_risk_report = self.pipeline.evaluate_risk(records, quasi_identifiers)

        # Classify
        try:
            self.pipeline.classify(schema)
        except NoPolicyForField as e:
            summary.errors.append(FieldError.from_exception(None, e))
            summary.abandoned = summary.total_records
            self._transition(summary, BatchState.ERRORED)
            return []
        self._transition(summary, BatchState.CLASSIFIED)

        # Transform
        results, aborted = self._transform(records, schema, stable_ordering)
        self._collect(results, summary)

        if aborted:
            self._transition(summary, BatchState.ERRORED)
            if self.config.processing.return_partial_on_error:
                return [r.record for r in results if r.transformed]
            return []

        if self._cancel_event.is_set() and summary.abandoned:
            self._transition(summary, BatchState.CANCELLED)
            return [r.record for r in results if r.transformed]

        self._transition(summary, BatchState.TRANSFORMED)
        kept = [r for r in results if r.transformed]

        # Risk assessment
        if risk_config.enabled:
            kept = self._assess_risk(kept, quasi_identifiers, summary)
            self._transition(summary, BatchState.RISK_ASSESSED)

        summary.transformed = len(kept)
        self._transition(summary, BatchState.FINALIZED)
        return [r.record for r in kept]

    def _transform(
        self,
        records: List[Dict[str, Any]],
        schema: Schema,
        stable_ordering: bool,
    ) -> Tuple[List[RecordResult], bool]:
        """
        Run records through the worker pool.

        At most ``2 * max_workers`` records are in flight; dispatch stops on
        cancellation or on the first fatal record failure.

        Returns:
            Completed record results and whether a strict failure occurred
        """
        total = len(records)
        max_workers = self.config.processing.max_workers
        window = max_workers * 2

        slots: List[Optional[RecordResult]] = [None] * total
        completed: List[RecordResult] = []
        pending: Dict[Future, int] = {}
        next_index = 0
        aborted = False

        with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="deid-worker") as executor:
            while next_index < total or pending:
                stopping = aborted or self._cancel_event.is_set()

                while not stopping and next_index < total and len(pending) < window:
                    future = executor.submit(
                        self.pipeline.process_record, records[next_index], next_index, schema
                    )
                    pending[future] = next_index
                    next_index += 1

                if stopping:
                    # Drop queued records that no worker has picked up yet
                    for future in [f for f in pending if f.cancel()]:
                        del pending[future]

                if not pending:
                    break

                done, _ = wait(pending, return_when=FIRST_COMPLETED)
                for future in done:
                    index = pending.pop(future)
                    result = future.result()
                    if stable_ordering:
                        slots[index] = result
                    else:
                        completed.append(result)
                    if result.fatal:
                        aborted = True

        results = [r for r in slots if r is not None] if stable_ordering else completed
        return results, aborted

    def _collect(self, results: List[RecordResult], summary: BatchSummary) -> None:
        """Fold per-record outcomes into the summary."""
        passthrough = set()
        for result in results:
            if result.transformed:
                summary.transformed += 1
            elif result.suppressed:
                summary.suppressed_by_policy += 1
            elif result.failed:
                summary.errored += 1
            summary.warnings.extend(result.warnings)
            summary.errors.extend(result.errors)
            passthrough.update(result.passthrough_fields)

        summary.suppressed = summary.suppressed_by_policy
        summary.abandoned = summary.total_records - len(results)
        summary.passthrough_fields = sorted(passthrough)

    def _assess_risk(
        self,
        kept: List[RecordResult],
        quasi_identifiers: Optional[Sequence[Sequence[str]]],
        summary: BatchSummary,
    ) -> List[RecordResult]:
        """Evaluate the transformed records and drop those recommended for suppression."""
        report = self.pipeline.evaluate_risk(
            [r.record for r in kept], quasi_identifiers, indices=[r.index for r in kept]
        )
        summary.risk_report = report

        to_suppress = set(report.records_to_suppress)
        if not to_suppress:
            return kept

        self.logger.info(f"Dropping {len(to_suppress)} records on risk recommendation")
        summary.suppressed_by_risk = len(to_suppress)
        summary.suppressed = summary.suppressed_by_policy + summary.suppressed_by_risk
        return [r for r in kept if r.index not in to_suppress]

    def _transition(self, summary: BatchSummary, to_state: BatchState) -> None:
        valid_targets = VALID_TRANSITIONS.get(summary.state, set())
        if to_state not in valid_targets:
            raise InvalidStateTransition(
                f"Invalid transition: {summary.state.value} -> {to_state.value}"
            )
        self.logger.debug(f"Batch state {summary.state.value} -> {to_state.value}")
        summary.state = to_state
        summary.state_history.append(to_state)

    def save_summary(self, summary: BatchSummary, output_path: Union[str, Path]) -> None:
        """Save a batch summary as JSON."""
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)

        with open(output_path, 'w', encoding='utf-8') as f:
            json.dump(summary.to_dict(), f, indent=2, ensure_ascii=False)

        self.logger.info(f"Batch summary saved to {output_path}")

    def close(self) -> None:
        """Release the pipeline if this processor built it."""
        if self._owns_pipeline:
            self.pipeline.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
