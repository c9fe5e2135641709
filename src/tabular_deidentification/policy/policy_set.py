"""Field policies, policy sets and record schemas."""

import fnmatch
from datetime import date, datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from .techniques import PseudonymizeTechnique, Technique


class FieldType(str, Enum):
    """Declared types a schema may assign to a field."""
    STRING = "string"
    NUMBER = "number"
    DATE = "date"
    EMAIL = "email"
    PHONE = "phone"
    CARD_NUMBER = "card_number"
    POSTAL_CODE = "postal_code"
    IDENTIFIER = "identifier"


# Field name -> declared type
Schema = Dict[str, FieldType]


def infer_field_type(value: Any) -> FieldType:
    """Infer a declared type for a field missing from the schema."""
    if isinstance(value, bool):
        return FieldType.STRING
    if isinstance(value, (int, float)):
        return FieldType.NUMBER
    if isinstance(value, (date, datetime)):
        return FieldType.DATE
    return FieldType.STRING


def parse_schema(raw: Optional[Dict[str, Union[str, FieldType]]]) -> Schema:
    """Normalize a name -> type mapping into a Schema."""
    if not raw:
        return {}
    return {name: FieldType(field_type) for name, field_type in raw.items()}


class FieldPolicy(BaseModel):
    """
    Techniques applied to a field, selected by exact name or by pattern.

    A policy selects fields either by exact ``field`` name, or by a
    ``field_pattern`` glob and/or declared ``field_type``. Pattern policies
    are ordered by ``precedence`` (lower wins).
    """
    field: Optional[str] = Field(default=None, description="Exact field name")
    field_pattern: Optional[str] = Field(default=None, description="Glob over field names")
    field_type: Optional[FieldType] = Field(default=None, description="Declared type to match")
    techniques: List[Technique] = Field(min_length=1)
    precedence: int = Field(default=100)
    strict: Optional[bool] = Field(default=None, description="None inherits the global strict mode")

    @model_validator(mode="after")
    def _check_selector(self):
        if self.field is not None:
            if self.field_pattern is not None or self.field_type is not None:
                raise ValueError("an exact 'field' policy cannot also declare a pattern or type")
        elif self.field_pattern is None and self.field_type is None:
            raise ValueError("policy needs 'field', 'field_pattern' or 'field_type'")
        return self

    @property
    def is_exact(self) -> bool:
        return self.field is not None

    @property
    def selector(self) -> str:
        """Human-readable description of what this policy matches."""
        if self.field is not None:
            return f"field={self.field}"
        parts = []
        if self.field_pattern is not None:
            parts.append(f"pattern={self.field_pattern}")
        if self.field_type is not None:
            parts.append(f"type={self.field_type.value}")
        return ",".join(parts)

    def matches_pattern(self, field_name: str, field_type: FieldType) -> bool:
        """Check whether this pattern policy selects the given field."""
        if self.is_exact:
            return False
        if self.field_pattern is not None and not fnmatch.fnmatchcase(field_name, self.field_pattern):
            return False
        if self.field_type is not None and self.field_type != field_type:
            return False
        return True


class PolicySet(BaseModel):
    """Collection of field policies with unambiguous resolution."""
    policies: List[FieldPolicy] = Field(default_factory=list)

    @field_validator('policies')
    @classmethod
    def validate_unambiguous(cls, v):
        seen_fields = set()
        seen_precedence = {}
        for policy in v:
            if policy.is_exact:
                if policy.field in seen_fields:
                    raise ValueError(f"Duplicate policy for field '{policy.field}'")
                seen_fields.add(policy.field)
            else:
                if policy.precedence in seen_precedence:
                    raise ValueError(
                        f"Pattern policies '{seen_precedence[policy.precedence]}' and "
                        f"'{policy.selector}' share precedence {policy.precedence}"
                    )
                seen_precedence[policy.precedence] = policy.selector

        # One reversibility mode per technique id
        declared_modes = {}
        for policy in v:
            for technique in policy.techniques:
                if not isinstance(technique, PseudonymizeTechnique) or technique.reversible is None:
                    continue
                declared = declared_modes.setdefault(technique.technique_id, technique.reversible)
                if declared != technique.reversible:
                    raise ValueError(
                        f"Technique id '{technique.technique_id}' is declared both reversible "
                        "and non-reversible; use a distinct technique id per mode"
                    )
        return v

    @property
    def exact_policies(self) -> Dict[str, FieldPolicy]:
        return {p.field: p for p in self.policies if p.is_exact}

    @property
    def pattern_policies(self) -> List[FieldPolicy]:
        return sorted((p for p in self.policies if not p.is_exact), key=lambda p: p.precedence)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PolicySet":
        """Create a policy set from its dictionary form."""
        return cls.model_validate(data)

    @classmethod
    def from_yaml(cls, policy_path: Union[str, Path]) -> "PolicySet":
        """Load a policy set from a YAML file."""
        policy_path = Path(policy_path)
        if not policy_path.exists():
            raise FileNotFoundError(f"Policy file not found: {policy_path}")

        with open(policy_path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}

        return cls.from_dict(data)

    def to_yaml(self, output_path: Union[str, Path]) -> None:
        """Save the policy set to a YAML file."""
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)

        with open(output_path, 'w', encoding='utf-8') as f:
            yaml.safe_dump(
                self.model_dump(mode="json", exclude_none=True),
                f,
                default_flow_style=False,
                sort_keys=False,
            )
