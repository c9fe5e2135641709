"""Field policies, techniques and their resolution."""

from .techniques import (
    GeneralizeTechnique,
    MaskTechnique,
    PerturbTechnique,
    PseudonymizeTechnique,
    SuppressTechnique,
    Technique,
    parse_technique,
)
from .policy_set import FieldPolicy, FieldType, PolicySet, infer_field_type, parse_schema
from .policy_resolver import PolicyResolver, Resolution, ResolutionSource

__all__ = [
    "GeneralizeTechnique",
    "MaskTechnique",
    "PerturbTechnique",
    "PseudonymizeTechnique",
    "SuppressTechnique",
    "Technique",
    "parse_technique",
    "FieldPolicy",
    "FieldType",
    "PolicySet",
    "infer_field_type",
    "parse_schema",
    "PolicyResolver",
    "Resolution",
    "ResolutionSource",
]
