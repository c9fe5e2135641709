"""Re-identification risk evaluation."""

from .risk_evaluator import RecommendedAction, RecordRisk, RiskEvaluator, RiskReport

__all__ = [
    "RecommendedAction",
    "RecordRisk",
    "RiskEvaluator",
    "RiskReport",
]
