"""API routes for deidentification, risk assessment and reverse lookup."""

import logging
from typing import Any, Dict

from fastapi import APIRouter, HTTPException, Request
from pydantic import ValidationError

from ..core.batch_processor import BatchProcessor
from ..core.errors import (
    DeidentificationError,
    NotFound,
    ReversibilityConflict,
    StoreUnavailable,
    Unauthorized,
)
from ..core.pipeline import DeidentificationPipeline
from ..correspondence.store import CallerCredential
from ..policy.policy_set import PolicySet, parse_schema
from ..risk.risk_evaluator import RiskEvaluator
from .models import (
    DeidentificationRequest,
    DeidentificationResponse,
    ReverseRequest,
    ReverseResponse,
    RiskRequest,
    RiskResponse,
)


logger = logging.getLogger(__name__)

router = APIRouter()

# Error code -> HTTP status
STATUS_BY_CODE = {
    Unauthorized.code: 403,
    NotFound.code: 404,
    ReversibilityConflict.code: 409,
    StoreUnavailable.code: 503,
}


def error_status(error: DeidentificationError) -> int:
    return STATUS_BY_CODE.get(error.code, 422)


def _record_metrics(request: Request, summary: Dict[str, Any]) -> None:
    metrics = request.app.state.metrics
    with request.app.state.metrics_lock:
        metrics['batches_processed'] += 1
        if not summary['success']:
            metrics['batches_failed'] += 1
        for key in ('transformed', 'suppressed', 'errored', 'abandoned'):
            metrics[f'records_{key}'] += summary[key]


@router.post("/deidentify", response_model=DeidentificationResponse)
def deidentify(body: DeidentificationRequest, request: Request):
    """Deidentify a batch of records and return them with the batch summary."""
    state = request.app.state

    try:
        schema = parse_schema(body.field_types)
        policy_set = PolicySet(policies=body.policies) if body.policies is not None else state.policy_set
    except (ValueError, ValidationError) as e:
        raise HTTPException(status_code=422, detail=str(e))

    config = state.config
    if body.strict_mode is not None:
        config = config.with_overrides(deidentification={'strict_mode': body.strict_mode})

    # The shared store outlives the per-request pipeline
    pipeline = DeidentificationPipeline(config, policy_set, state.store)
    try:
        result = BatchProcessor(pipeline=pipeline).process_batch(
            body.records,
            schema=schema,
            stable_ordering=body.stable_ordering,
            quasi_identifiers=body.quasi_identifiers,
        )
    finally:
        pipeline.close()

    summary = result.summary.to_dict()
    _record_metrics(request, summary)
    return DeidentificationResponse(records=result.records, summary=summary)


@router.post("/risk", response_model=RiskResponse)
def assess_risk(body: RiskRequest, request: Request):
    """Evaluate re-identification risk of a dataset without transforming it."""
    evaluator = RiskEvaluator(request.app.state.config.risk)
    report = evaluator.evaluate(body.records, body.quasi_identifiers, k_min=body.k_min)
    return RiskResponse(report=report.to_dict())


@router.post("/reverse", response_model=ReverseResponse)
def reverse(body: ReverseRequest, request: Request):
    """Recover the original value behind a reversible pseudonym."""
    credential = CallerCredential(principal=body.principal, scopes=frozenset(body.scopes))

    try:
        value = request.app.state.store.reverse(body.technique_id, body.pseudonym, credential)
    except DeidentificationError as e:
        logger.warning(f"Reverse lookup by '{body.principal}' on '{body.technique_id}' refused: {e.code}")
        raise HTTPException(status_code=error_status(e), detail=e.to_dict())

    logger.info(f"Reverse lookup by '{body.principal}' on '{body.technique_id}'")
    return ReverseResponse(technique_id=body.technique_id, pseudonym=body.pseudonym, value=value)
