"""Deidentification engine: applies technique chains to field values."""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from typing import Any, Dict, List, Optional, Set, Tuple

import numpy as np

from ..core.config import Config, StoreFallback
from ..core.errors import DeidentificationError, StoreUnavailable
from ..correspondence.store import PSEUDONYM_LENGTH, CorrespondenceStore
from ..policy.policy_set import FieldType
from ..policy.techniques import (
    BaseTechnique,
    GeneralizeTechnique,
    MaskTechnique,
    PerturbTechnique,
    PseudonymizeTechnique,
    SuppressTechnique,
)
from . import operators


# Marks pseudonyms derived locally while the store was unavailable
FALLBACK_PREFIX = "h-"


class DeidentificationEngine:
    """
    Applies ordered technique lists to single field values.

    The engine provides:
    1. Dispatch over the technique variants
    2. Correspondence store calls bounded by a timeout
    3. Configurable fallback to a one-way hash on store failure
    4. Reproducible perturbation under a fixed seed
    """

    def __init__(
        self,
        config: Config,
        store: CorrespondenceStore,
        rng: Optional[np.random.Generator] = None,
    ):
        """
        Initialize the deidentification engine.

        Args:
            config: Configuration object
            store: Correspondence store consulted by pseudonymization
            rng: Random source for perturbation; seeded from config if None
        """
        self.config = config
        self.store = store
        self.logger = logging.getLogger(__name__)

        self.seed = config.deidentification.perturbation_seed
        self.rng = rng or np.random.default_rng(self.seed)
        self._rng_lock = threading.Lock()

        self._store_executor = ThreadPoolExecutor(
            max_workers=config.processing.max_workers,
            thread_name_prefix="correspondence",
        )

        # (technique id, value digest) pairs served by the hash fallback
        self._fallback_keys: Set[Tuple[str, str]] = set()
        self._fallback_lock = threading.Lock()

        self._stats_lock = threading.Lock()
        self.reset_stats()

    def rng_for(self, record_index: int) -> np.random.Generator:
        """
        Random source for one record.

        Under a fixed seed each record gets its own stream, so output does
        not depend on which worker handles which record.
        """
        if self.seed is None:
            return np.random.default_rng()
        return np.random.default_rng([self.seed, record_index])

    def apply(
        self,
        value: Any,
        techniques: List[BaseTechnique],
        field_name: str,
        field_type: FieldType = FieldType.STRING,
        rng: Optional[np.random.Generator] = None,
    ) -> Any:
        """
        Apply techniques to a value in declared order.

        Raises:
            DeidentificationError: Classified failure, tagged with the field name
            RecordSuppressed: A record-scope suppression was reached
        """
        result = value
        for technique in techniques:
            try:
                result = self._apply_one(result, technique, field_name, field_type, rng)
            except DeidentificationError as e:
                if e.field is None:
                    e.field = field_name
                self._count('errors')
                raise
            self._count_technique(technique.kind)
        return result

    def _apply_one(
        self,
        value: Any,
        technique: BaseTechnique,
        field_name: str,
        field_type: FieldType,
        rng: Optional[np.random.Generator],
    ) -> Any:
        if isinstance(technique, MaskTechnique):
            return operators.mask(value, technique, field_type)

        if isinstance(technique, GeneralizeTechnique):
            return operators.generalize(
                value, technique, field_type, self.config.deidentification.get_reference_date()
            )

        if isinstance(technique, PerturbTechnique):
            if rng is not None:
                return operators.perturb(value, technique, rng)
            with self._rng_lock:
                return operators.perturb(value, technique, self.rng)

        if isinstance(technique, SuppressTechnique):
            return operators.suppress(value, technique, self.config.deidentification.suppression_sentinel)

        if isinstance(technique, PseudonymizeTechnique):
            return self._pseudonymize(value, technique, field_name)

        raise TypeError(f"Unsupported technique: {type(technique).__name__}")

    def _pseudonymize(self, value: Any, technique: PseudonymizeTechnique, field_name: str) -> Any:
        if value is None:
            return None

        reversible = technique.reversible
        if reversible is None:
            reversible = self.config.deidentification.reversible_by_default

        use_fallback = self.config.correspondence.fallback == StoreFallback.HASH
        if use_fallback:
            # Once a value fell back, keep it on the fallback pseudonym
            key = (technique.technique_id, self.store.protector.digest(technique.technique_id, value))
            with self._fallback_lock:
                fell_back = key in self._fallback_keys
            if fell_back:
                self._count('store_fallbacks')
                return self.fallback_pseudonym(technique.technique_id, value)

        timeout = self.config.correspondence.timeout_seconds
        future = self._store_executor.submit(
            operators.pseudonymize, value, technique, self.store, reversible
        )

        try:
            return future.result(timeout=timeout)
        except FuturesTimeout:
            error = StoreUnavailable(f"Correspondence store timed out after {timeout}s", field=field_name)
        except StoreUnavailable as e:
            error = e
        except OSError as e:
            error = StoreUnavailable(f"Correspondence store failure: {type(e).__name__}", field=field_name)

        if use_fallback:
            with self._fallback_lock:
                self._fallback_keys.add(key)
            self._count('store_fallbacks')
            self.logger.warning(
                f"Store unavailable for field '{field_name}'; using one-way fallback pseudonym"
            )
            return self.fallback_pseudonym(technique.technique_id, value)

        raise error

    def fallback_pseudonym(self, technique_id: str, value: Any) -> str:
        """
        Deterministic one-way pseudonym computed without the store.

        A timed-out store call keeps running and may still create an entry
        with a different pseudonym. This engine keeps returning the fallback
        for that value, but a later engine reading the same store will see
        the stored pseudonym instead.
        """
        return FALLBACK_PREFIX + self.store.protector.derive_pseudonym(
            technique_id, value, PSEUDONYM_LENGTH
        )

    def _count(self, key: str) -> None:
        with self._stats_lock:
            self.stats[key] += 1

    def _count_technique(self, kind: str) -> None:
        with self._stats_lock:
            self.stats['techniques_applied'][kind] = self.stats['techniques_applied'].get(kind, 0) + 1

    def get_stats(self) -> Dict[str, Any]:
        """Get processing statistics."""
        with self._stats_lock:
            stats = self.stats.copy()
            stats['techniques_applied'] = dict(self.stats['techniques_applied'])
        return stats

    def reset_stats(self) -> None:
        """Reset processing statistics."""
        with self._stats_lock:
            self.stats = {
                'techniques_applied': {},
                'errors': 0,
                'store_fallbacks': 0,
            }

    def close(self) -> None:
        """Stop the store call executor; in-flight calls finish."""
        self._store_executor.shutdown(wait=False)
