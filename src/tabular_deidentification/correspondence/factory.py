"""Construction of the configured correspondence store."""

import logging
import os

from ..core.config import Config, StoreBackend
from .database import DatabaseCorrespondenceStore
from .encryption import ValueProtector
from .store import CorrespondenceStore, InMemoryCorrespondenceStore


logger = logging.getLogger(__name__)


def create_store(config: Config) -> CorrespondenceStore:
    """
    Build the store named by ``config.correspondence.backend``.

    The database backend requires keys in the environment, since entries
    outlive the process. The memory backend falls back to ephemeral keys.
    """
    settings = config.correspondence

    if settings.backend == StoreBackend.DATABASE:
        protector = ValueProtector.from_env(settings.key_env)
        return DatabaseCorrespondenceStore(
            database=config.database,
            protector=protector,
            timeout_seconds=settings.timeout_seconds,
        )

    if os.getenv(settings.key_env):
        protector = ValueProtector.from_env(settings.key_env)
    else:
        logger.warning(
            f"{settings.key_env} not set; in-memory store uses ephemeral keys "
            "and pseudonyms will not survive the process"
        )
        protector = ValueProtector.generate()
    return InMemoryCorrespondenceStore(protector)
