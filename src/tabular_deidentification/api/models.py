"""Request and response models for the deidentification API."""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..policy.policy_set import FieldPolicy


class DeidentificationRequest(BaseModel):
    """A batch of records to deidentify."""
    model_config = ConfigDict(populate_by_name=True)

    records: List[Dict[str, Any]] = Field(..., description="Records sharing one schema")
    field_types: Dict[str, str] = Field(
        default_factory=dict, alias="schema", description="Field name -> declared type"
    )
    policies: Optional[List[FieldPolicy]] = Field(
        default=None, description="Policy set for this batch; the server default applies if omitted"
    )
    strict_mode: Optional[bool] = Field(default=None)
    stable_ordering: Optional[bool] = Field(default=None)
    quasi_identifiers: Optional[List[List[str]]] = Field(default=None)


class DeidentificationResponse(BaseModel):
    """Transformed records and the batch summary."""
    records: List[Dict[str, Any]]
    summary: Dict[str, Any]


class RiskRequest(BaseModel):
    """A dataset to assess."""
    records: List[Dict[str, Any]]
    quasi_identifiers: Optional[List[List[str]]] = Field(default=None)
    k_min: Optional[int] = Field(default=None, ge=1)


class RiskResponse(BaseModel):
    report: Dict[str, Any]


class ReverseRequest(BaseModel):
    """
    Reverse lookup of a pseudonym.

    The caller is expected to be authenticated upstream; the principal and
    scopes are the outcome of that authentication.
    """
    technique_id: str
    pseudonym: str
    principal: str
    scopes: List[str] = Field(default_factory=list)


class ReverseResponse(BaseModel):
    technique_id: str
    pseudonym: str
    value: Any

