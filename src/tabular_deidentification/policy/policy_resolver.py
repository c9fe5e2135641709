"""Resolution of field names and declared types to techniques."""

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

from ..core.errors import NoPolicyForField
from .policy_set import FieldPolicy, FieldType, PolicySet, Schema
from .techniques import BaseTechnique


class ResolutionSource(str, Enum):
    """Which resolution step produced the techniques for a field."""
    EXACT = "exact"
    PATTERN = "pattern"
    DEFAULT = "default"
    PASS_THROUGH = "pass_through"


@dataclass
class Resolution:
    """Outcome of resolving one field."""
    field_name: str
    field_type: FieldType
    source: ResolutionSource
    strict: bool
    techniques: List[BaseTechnique] = field(default_factory=list)
    policy: Optional[FieldPolicy] = None

    @property
    def passes_through(self) -> bool:
        return not self.techniques


class PolicyResolver:
    """
    Maps a field to its techniques.

    Resolution order: exact field name, then pattern/type policies by
    precedence, then the global default technique, then failure with
    ``NoPolicyForField`` in strict mode or an explicit pass-through.
    """

    def __init__(
        self,
        policy_set: PolicySet,
        default_technique: Optional[BaseTechnique] = None,
        strict_mode: bool = False,
    ):
        self.policy_set = policy_set
        self.default_technique = default_technique
        self.strict_mode = strict_mode
        self.logger = logging.getLogger(__name__)

        self._exact = policy_set.exact_policies
        self._patterns = policy_set.pattern_policies
        self._cache: Dict[Tuple[str, FieldType], Resolution] = {}
        self._cache_lock = threading.Lock()

    def resolve(self, field_name: str, field_type: FieldType) -> Resolution:
        """
        Resolve the techniques for a field.

        Raises:
            NoPolicyForField: In strict mode, when nothing matches
        """
        key = (field_name, field_type)
        resolution = self._cache.get(key)
        if resolution is not None:
            return resolution

        resolution = self._resolve(field_name, field_type)
        with self._cache_lock:
            if key not in self._cache:
                self._cache[key] = resolution
                self._log_resolution(resolution)
        return resolution

    def _resolve(self, field_name: str, field_type: FieldType) -> Resolution:
        policy = self._exact.get(field_name)
        if policy is not None:
            return self._from_policy(field_name, field_type, policy, ResolutionSource.EXACT)

        for policy in self._patterns:
            if policy.matches_pattern(field_name, field_type):
                return self._from_policy(field_name, field_type, policy, ResolutionSource.PATTERN)

        if self.default_technique is not None:
            return Resolution(
                field_name=field_name,
                field_type=field_type,
                source=ResolutionSource.DEFAULT,
                strict=self.strict_mode,
                techniques=[self.default_technique],
            )

        if self.strict_mode:
            raise NoPolicyForField(f"No policy matches field '{field_name}'", field=field_name)

        return Resolution(
            field_name=field_name,
            field_type=field_type,
            source=ResolutionSource.PASS_THROUGH,
            strict=False,
        )

    def _from_policy(
        self, field_name: str, field_type: FieldType, policy: FieldPolicy, source: ResolutionSource
    ) -> Resolution:
        strict = policy.strict if policy.strict is not None else self.strict_mode
        return Resolution(
            field_name=field_name,
            field_type=field_type,
            source=source,
            strict=strict,
            techniques=list(policy.techniques),
            policy=policy,
        )

    def _log_resolution(self, resolution: Resolution) -> None:
        if resolution.source == ResolutionSource.PASS_THROUGH:
            self.logger.info(
                f"No policy for field '{resolution.field_name}' "
                f"({resolution.field_type.value}); passing through unchanged"
            )
        else:
            kinds = ",".join(t.kind for t in resolution.techniques)
            self.logger.debug(
                f"Field '{resolution.field_name}' resolved via {resolution.source.value}: {kinds}"
            )

    def resolve_schema(self, schema: Schema) -> Dict[str, Resolution]:
        """Resolve every field of a schema."""
        return {name: self.resolve(name, field_type) for name, field_type in schema.items()}
