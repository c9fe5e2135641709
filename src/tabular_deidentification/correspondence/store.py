"""Correspondence store contract and the in-memory implementation."""

import logging
import secrets
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, FrozenSet, Optional, Tuple

from ..core.errors import NotFound, ReversibilityConflict, StoreUnavailable, Unauthorized
from .encryption import ValueProtector


logger = logging.getLogger(__name__)

PSEUDONYM_LENGTH = 16
MAX_CREATE_ATTEMPTS = 5


@dataclass(frozen=True)
class CallerCredential:
    """Identity of a caller asking for a reverse lookup."""
    principal: str
    scopes: FrozenSet[str] = field(default_factory=frozenset)

    REVERSE_ALL = "reverse:*"

    def can_reverse(self, technique_id: str) -> bool:
        return self.REVERSE_ALL in self.scopes or f"reverse:{technique_id}" in self.scopes


@dataclass
class CorrespondenceEntry:
    """One original value <-> pseudonym mapping."""
    technique_id: str
    original_digest: str
    pseudonym: str
    reversible: bool
    ciphertext: Optional[bytes] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class CorrespondenceStore(ABC):
    """
    Mapping between original identifiers and pseudonyms.

    Implementations must provide get-or-create semantics: concurrent callers
    for the same ``(technique_id, value)`` observe a single pseudonym, while
    calls for distinct keys do not serialize on each other.
    """

    def __init__(self, protector: Optional[ValueProtector] = None):
        self.protector = protector or ValueProtector.generate()
        self.logger = logging.getLogger(self.__class__.__module__)

    @abstractmethod
    def get_or_create(self, technique_id: str, original_value: Any, reversible: bool = True) -> str:
        """Return the pseudonym for a value, creating it on first use."""

    @abstractmethod
    def reverse(self, technique_id: str, pseudonym: str, credential: CallerCredential) -> Any:
        """
        Recover the original value behind a pseudonym.

        Raises:
            Unauthorized: If the credential carries no reversal rights
            NotFound: If the pseudonym is unknown or was created non-reversibly
        """

    @abstractmethod
    def delete_namespace(self, technique_id: str) -> int:
        """Delete every entry of a technique id; returns the number removed."""

    @abstractmethod
    def rotate_key(self, encryption_key: bytes) -> int:
        """Re-encrypt reversible entries under a new key; returns the number rotated."""

    @abstractmethod
    def count(self, technique_id: Optional[str] = None) -> int:
        """Number of entries, optionally restricted to one technique id."""

    def close(self) -> None:
        """Release any resources held by the store."""

    def _check_authorized(self, technique_id: str, credential: CallerCredential) -> None:
        if credential is None or not credential.can_reverse(technique_id):
            principal = credential.principal if credential else "anonymous"
            self.logger.warning(
                f"Reverse lookup denied for principal '{principal}' on '{technique_id}'"
            )
            raise Unauthorized(f"Caller lacks reversal rights for '{technique_id}'")

    def _check_mode(self, entry: CorrespondenceEntry, reversible: bool) -> None:
        if entry.reversible != reversible:
            raise ReversibilityConflict(
                f"Technique id '{entry.technique_id}' holds "
                f"{'reversible' if entry.reversible else 'non-reversible'} entries; "
                "use a distinct technique id per reversibility mode"
            )

    def _new_pseudonym(self, technique_id: str, original_value: Any, reversible: bool, attempt: int) -> str:
        if reversible:
            return secrets.token_hex(PSEUDONYM_LENGTH // 2)
        # Deterministic, lengthened on collision
        return self.protector.derive_pseudonym(
            technique_id, original_value, PSEUDONYM_LENGTH + 8 * attempt
        )

    def _build_entry(
        self, technique_id: str, original_value: Any, digest: str, reversible: bool, attempt: int
    ) -> CorrespondenceEntry:
        return CorrespondenceEntry(
            technique_id=technique_id,
            original_digest=digest,
            pseudonym=self._new_pseudonym(technique_id, original_value, reversible, attempt),
            reversible=reversible,
            ciphertext=self.protector.encrypt(technique_id, original_value) if reversible else None,
            created_at=utc_now(),
        )

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


class InMemoryCorrespondenceStore(CorrespondenceStore):
    """Thread-safe in-process store with per-key critical sections."""

    def __init__(self, protector: Optional[ValueProtector] = None):
        super().__init__(protector)
        self._entries: Dict[Tuple[str, str], CorrespondenceEntry] = {}
        self._by_pseudonym: Dict[Tuple[str, str], CorrespondenceEntry] = {}
        self._key_locks: Dict[Tuple[str, str], threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, key: Tuple[str, str]) -> threading.Lock:
        with self._guard:
            return self._key_locks.setdefault(key, threading.Lock())

    def get_or_create(self, technique_id: str, original_value: Any, reversible: bool = True) -> str:
        key = (technique_id, self.protector.digest(technique_id, original_value))

        entry = self._entries.get(key)
        if entry is None:
            with self._lock_for(key):
                entry = self._entries.get(key)
                if entry is None:
                    entry = self._create(technique_id, original_value, key[1], reversible)

        self._check_mode(entry, reversible)
        return entry.pseudonym

    def _create(
        self, technique_id: str, original_value: Any, digest: str, reversible: bool
    ) -> CorrespondenceEntry:
        for attempt in range(MAX_CREATE_ATTEMPTS):
            entry = self._build_entry(technique_id, original_value, digest, reversible, attempt)
            with self._guard:
                if (technique_id, entry.pseudonym) in self._by_pseudonym:
                    continue
                self._by_pseudonym[(technique_id, entry.pseudonym)] = entry
                self._entries[(technique_id, digest)] = entry
            self.logger.debug(f"Created correspondence entry in '{technique_id}'")
            return entry
        raise StoreUnavailable(f"Could not allocate a unique pseudonym in '{technique_id}'")

    def reverse(self, technique_id: str, pseudonym: str, credential: CallerCredential) -> Any:
        self._check_authorized(technique_id, credential)

        entry = self._by_pseudonym.get((technique_id, pseudonym))
        if entry is None or not entry.reversible:
            raise NotFound(f"Unknown pseudonym in '{technique_id}'")

        self.logger.info(f"Reverse lookup by '{credential.principal}' on '{technique_id}'")
        return self.protector.decrypt(technique_id, entry.ciphertext)

    def delete_namespace(self, technique_id: str) -> int:
        with self._guard:
            keys = [k for k in self._entries if k[0] == technique_id]
            for key in keys:
                entry = self._entries.pop(key)
                self._by_pseudonym.pop((technique_id, entry.pseudonym), None)
                self._key_locks.pop(key, None)
        self.logger.info(f"Deleted {len(keys)} entries from '{technique_id}'")
        return len(keys)

    def rotate_key(self, encryption_key: bytes) -> int:
        new_protector = self.protector.with_encryption_key(encryption_key)
        rotated = 0
        with self._guard:
            for entry in self._entries.values():
                if entry.reversible:
                    value = self.protector.decrypt(entry.technique_id, entry.ciphertext)
                    entry.ciphertext = new_protector.encrypt(entry.technique_id, value)
                    rotated += 1
            self.protector = new_protector
        self.logger.info(f"Rotated encryption key for {rotated} entries")
        return rotated

    def count(self, technique_id: Optional[str] = None) -> int:
        if technique_id is None:
            return len(self._entries)
        return sum(1 for k in self._entries if k[0] == technique_id)
