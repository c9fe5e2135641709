"""Technique definitions: a tagged variant with typed parameters per kind."""

from enum import Enum
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator


class MaskShape(str, Enum):
    """Shape a masked value is expected to have."""
    AUTO = "auto"  # derived from the declared field type
    EMAIL = "email"
    DIGITS = "digits"
    TEXT = "text"


class DateUnit(str, Enum):
    """Integer unit a date is converted to before bucketing."""
    YEAR = "year"
    AGE = "age"


class NoiseDistribution(str, Enum):
    """Noise distributions supported by perturbation."""
    UNIFORM = "uniform"
    LAPLACE = "laplace"


class SuppressionScope(str, Enum):
    """Reach of a suppression."""
    FIELD = "field"
    RECORD = "record"


class BaseTechnique(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    def describe(self) -> Dict[str, Any]:
        """Return a JSON-friendly description of this technique."""
        return self.model_dump(mode="json")


class MaskTechnique(BaseTechnique):
    """Format-preserving partial reveal."""
    kind: Literal["mask"] = "mask"
    mask_char: str = Field(default="*", min_length=1, max_length=1)
    token_length: int = Field(default=4, ge=1, description="Fixed mask length for email local parts")
    keep_first: int = Field(default=1, ge=0)
    keep_last: int = Field(default=0, ge=0)
    shape: MaskShape = MaskShape.AUTO


class PseudonymizeTechnique(BaseTechnique):
    """Replacement by a pseudonym owned by the correspondence store."""
    kind: Literal["pseudonymize"] = "pseudonymize"
    technique_id: str = Field(default="default", min_length=1)
    reversible: Optional[bool] = Field(default=None, description="None inherits reversible_by_default")


class GeneralizeTechnique(BaseTechnique):
    """Numeric/date bucketing or prefix truncation."""
    kind: Literal["generalize"] = "generalize"
    width: Optional[Union[int, float]] = Field(default=None, gt=0)
    prefix_length: Optional[int] = Field(default=None, ge=0)
    wildcard: str = Field(default="*", min_length=1)
    date_unit: DateUnit = DateUnit.YEAR

    @model_validator(mode="after")
    def _check_mode(self):
        if (self.width is None) == (self.prefix_length is None):
            raise ValueError("generalize requires exactly one of 'width' or 'prefix_length'")
        return self


class PerturbTechnique(BaseTechnique):
    """Bounded random noise on numeric values."""
    kind: Literal["perturb"] = "perturb"
    distribution: NoiseDistribution = NoiseDistribution.UNIFORM
    bound: Optional[float] = Field(default=None, gt=0)
    epsilon: Optional[float] = Field(default=None, gt=0)
    sensitivity: float = Field(default=1.0, gt=0)
    min_value: Optional[float] = None
    max_value: Optional[float] = None

    @model_validator(mode="after")
    def _check_parameters(self):
        if self.distribution == NoiseDistribution.UNIFORM and self.bound is None:
            raise ValueError("uniform perturbation requires 'bound'")
        if self.distribution == NoiseDistribution.LAPLACE and self.epsilon is None:
            raise ValueError("laplace perturbation requires 'epsilon'")
        if (
            self.min_value is not None
            and self.max_value is not None
            and self.min_value > self.max_value
        ):
            raise ValueError("'min_value' must not exceed 'max_value'")
        return self

    @property
    def laplace_scale(self) -> float:
        return self.sensitivity / self.epsilon


class SuppressTechnique(BaseTechnique):
    """Sentinel replacement (field scope) or record drop (record scope)."""
    kind: Literal["suppress"] = "suppress"
    scope: SuppressionScope = SuppressionScope.FIELD
    sentinel: Optional[str] = Field(default=None, description="None uses the configured sentinel")


Technique = Annotated[
    Union[
        MaskTechnique,
        PseudonymizeTechnique,
        GeneralizeTechnique,
        PerturbTechnique,
        SuppressTechnique,
    ],
    Field(discriminator="kind"),
]

_technique_adapter = TypeAdapter(Technique)


def parse_technique(data: Union[Dict[str, Any], BaseTechnique]) -> Technique:
    """Build a technique from its dict form; unknown kinds are rejected."""
    if isinstance(data, BaseTechnique):
        return data
    return _technique_adapter.validate_python(data)
