"""Deidentification engine and technique operators."""

from .deidentification_engine import DeidentificationEngine
from .operators import generalize, mask, perturb, pseudonymize, suppress

__all__ = [
    "DeidentificationEngine",
    "generalize",
    "mask",
    "perturb",
    "pseudonymize",
    "suppress",
]
