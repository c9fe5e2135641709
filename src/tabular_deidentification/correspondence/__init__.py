"""Correspondence store: original value <-> pseudonym mappings."""

from .store import (
    CallerCredential,
    CorrespondenceEntry,
    CorrespondenceStore,
    InMemoryCorrespondenceStore,
)
from .database import DatabaseCorrespondenceStore
from .encryption import ValueProtector, generate_key
from .factory import create_store

__all__ = [
    "CallerCredential",
    "CorrespondenceEntry",
    "CorrespondenceStore",
    "InMemoryCorrespondenceStore",
    "DatabaseCorrespondenceStore",
    "ValueProtector",
    "generate_key",
    "create_store",
]
