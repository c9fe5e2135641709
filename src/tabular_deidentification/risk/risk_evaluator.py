"""Re-identification risk evaluation over datasets."""

import logging
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Hashable, List, Optional, Sequence, Tuple

from ..core.config import RiskConfig


Record = Dict[str, Any]
QuasiIdentifiers = Tuple[str, ...]


class RecommendedAction(str, Enum):
    """Action recommended for a record after risk evaluation."""
    KEEP = "keep"
    GENERALIZE_FURTHER = "generalize-further"
    SUPPRESS = "suppress"


@dataclass
class RecordRisk:
    """Risk assessment of one record."""
    index: int
    class_size: int
    risk_score: float
    action: RecommendedAction
    limiting_quasi_identifiers: QuasiIdentifiers = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'index': self.index,
            'class_size': self.class_size,
            'risk_score': self.risk_score,
            'action': self.action.value,
            'limiting_quasi_identifiers': list(self.limiting_quasi_identifiers),
        }


@dataclass
class RiskReport:
    """Result of a risk evaluation."""
    dataset_size: int
    k_min: int
    quasi_identifier_sets: List[QuasiIdentifiers]
    record_risks: List[RecordRisk]
    class_size_histograms: Dict[str, Dict[int, int]] = field(default_factory=dict)
    l_diversity: Dict[str, int] = field(default_factory=dict)
    outlier_fields: Dict[str, List[int]] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)

    @property
    def min_class_size(self) -> int:
        """The dataset's k: smallest equivalence class any record falls in."""
        return min((r.class_size for r in self.record_risks), default=0)

    @property
    def max_risk(self) -> float:
        return max((r.risk_score for r in self.record_risks), default=0.0)

    @property
    def average_risk(self) -> float:
        if not self.record_risks:
            return 0.0
        return sum(r.risk_score for r in self.record_risks) / len(self.record_risks)

    def indices_with_action(self, action: RecommendedAction) -> List[int]:
        return [r.index for r in self.record_risks if r.action == action]

    @property
    def records_to_suppress(self) -> List[int]:
        return self.indices_with_action(RecommendedAction.SUPPRESS)

    @property
    def records_to_generalize(self) -> List[int]:
        return self.indices_with_action(RecommendedAction.GENERALIZE_FURTHER)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'dataset_size': self.dataset_size,
            'k_min': self.k_min,
            'min_class_size': self.min_class_size,
            'max_risk': self.max_risk,
            'average_risk': self.average_risk,
            'quasi_identifier_sets': [list(qi) for qi in self.quasi_identifier_sets],
            'record_risks': [r.to_dict() for r in self.record_risks],
            'records_to_suppress': self.records_to_suppress,
            'records_to_generalize': self.records_to_generalize,
            'class_size_histograms': {
                name: {str(size): count for size, count in histogram.items()}
                for name, histogram in self.class_size_histograms.items()
            },
            'l_diversity': dict(self.l_diversity),
            'outlier_fields': {name: list(indices) for name, indices in self.outlier_fields.items()},
            'warnings': list(self.warnings),
        }


def _hashable(value: Any) -> Hashable:
    try:
        hash(value)
        return value
    except TypeError:
        return repr(value)


def equivalence_classes(
    dataset: Sequence[Record], quasi_identifiers: Sequence[str]
) -> Dict[Tuple[Hashable, ...], List[int]]:
    """Group record positions by their values across the quasi-identifiers."""
    classes: Dict[Tuple[Hashable, ...], List[int]] = defaultdict(list)
    for position, record in enumerate(dataset):
        key = tuple(_hashable(record.get(name)) for name in quasi_identifiers)
        classes[key].append(position)
    return dict(classes)


def combination_name(quasi_identifiers: Sequence[str]) -> str:
    return "+".join(quasi_identifiers)


class RiskEvaluator:
    """
    Estimates the risk that records of a dataset can be re-identified.

    For each declared quasi-identifier combination, records are grouped into
    equivalence classes; a record's class size ``k`` gives a prosecutor risk
    of ``1/k``. Combinations are evaluated independently and each record
    keeps its smallest class. The evaluator never mutates the dataset.
    """

    def __init__(self, config: Optional[RiskConfig] = None):
        self.config = config or RiskConfig()
        self.logger = logging.getLogger(__name__)

    def evaluate(
        self,
        dataset: Sequence[Record],
        quasi_identifiers: Optional[Sequence[Sequence[str]]] = None,
        k_min: Optional[int] = None,
        indices: Optional[Sequence[int]] = None,
    ) -> RiskReport:
        """
        Evaluate a dataset.

        Args:
            dataset: Records sharing one schema
            quasi_identifiers: Field combinations; defaults to the configured ones
            k_min: Class size threshold; defaults to the configured one
            indices: Labels for the records in the report (defaults to positions)

        Returns:
            RiskReport with per-record class sizes and recommendations
        """
        combinations = [
            tuple(qi) for qi in (quasi_identifiers if quasi_identifiers is not None
                                 else self.config.quasi_identifiers)
        ]
        k_min = k_min if k_min is not None else self.config.k_min_threshold
        labels = list(indices) if indices is not None else list(range(len(dataset)))
        if len(labels) != len(dataset):
            raise ValueError("indices must label every record of the dataset")

        report = RiskReport(
            dataset_size=len(dataset),
            k_min=k_min,
            quasi_identifier_sets=combinations,
            record_risks=[],
        )

        if not dataset:
            return report

        too_small = len(dataset) < 2
        if too_small:
            report.warnings.append("Dataset too small for equivalence-class analysis")
        if not combinations:
            report.warnings.append("No quasi-identifiers declared; class sizes cover the whole dataset")

        # Smallest class per record across combinations
        best_size = [len(dataset)] * len(dataset)
        limiting: List[QuasiIdentifiers] = [()] * len(dataset)

        for combination in combinations:
            classes = equivalence_classes(dataset, combination)
            name = combination_name(combination)
            report.class_size_histograms[name] = dict(
                sorted(Counter(len(members) for members in classes.values()).items())
            )
            if self.config.sensitive_fields:
                report.l_diversity[name] = self._l_diversity(dataset, classes)

            for members in classes.values():
                size = len(members)
                for position in members:
                    if size < best_size[position] or not limiting[position]:
                        best_size[position] = min(size, best_size[position])
                        limiting[position] = combination

        for position, size in enumerate(best_size):
            report.record_risks.append(RecordRisk(
                index=labels[position],
                class_size=size,
                risk_score=1.0 / size,
                action=self._recommend(size, k_min, too_small),
                limiting_quasi_identifiers=limiting[position],
            ))

        if self.config.outlier_scan and not too_small:
            report.outlier_fields = self._outlier_fields(dataset, labels)

        self.logger.info(
            f"Risk evaluated for {len(dataset)} records: k={report.min_class_size}, "
            f"{len(report.records_to_suppress)} to suppress, "
            f"{len(report.records_to_generalize)} to generalize further"
        )
        return report

    def _recommend(self, class_size: int, k_min: int, too_small: bool) -> RecommendedAction:
        if too_small or class_size >= k_min:
            return RecommendedAction.KEEP
        if class_size == 1 or self.config.suppress_all_below_k:
            return RecommendedAction.SUPPRESS
        return RecommendedAction.GENERALIZE_FURTHER

    def _l_diversity(self, dataset: Sequence[Record], classes: Dict[Tuple, List[int]]) -> int:
        """Smallest number of distinct sensitive values within any class."""
        sensitive = self.config.sensitive_fields
        return min(
            len({tuple(_hashable(dataset[p].get(name)) for name in sensitive) for p in members})
            for members in classes.values()
        )

    def _outlier_fields(self, dataset: Sequence[Record], labels: List[int]) -> Dict[str, List[int]]:
        """Fields holding a value that occurs once in the dataset, with the affected records."""
        excluded = set(self.config.outlier_exclude_fields)
        field_names: List[str] = []
        for record in dataset:
            for name in record:
                if name not in excluded and name not in field_names:
                    field_names.append(name)

        outliers: Dict[str, List[int]] = {}
        for name in field_names:
            counts = Counter(
                _hashable(record.get(name)) for record in dataset if record.get(name) is not None
            )
            unique = [
                labels[position]
                for position, record in enumerate(dataset)
                if record.get(name) is not None and counts[_hashable(record.get(name))] == 1
            ]
            if unique:
                outliers[name] = unique
        return outliers
