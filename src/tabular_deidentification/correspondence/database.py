"""SQLAlchemy-backed correspondence store."""

from typing import Any, Optional

from sqlalchemy import (
    Boolean, Column, DateTime, Integer, LargeBinary, String, UniqueConstraint, create_engine, func,
)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from ..core.config import DatabaseConfig
from ..core.errors import NotFound, StoreUnavailable
from .encryption import ValueProtector
from .store import MAX_CREATE_ATTEMPTS, CallerCredential, CorrespondenceEntry, CorrespondenceStore, utc_now


Base = declarative_base()


class CorrespondenceRow(Base):
    """
    Persistent correspondence entry.

    Unique constraints make get-or-create safe across processes: a losing
    concurrent insert fails and re-reads the winner's row.
    """
    __tablename__ = "correspondence_entries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    technique_id = Column(String(128), nullable=False, index=True)
    original_digest = Column(String(64), nullable=False)
    pseudonym = Column(String(128), nullable=False)
    reversible = Column(Boolean, nullable=False)
    ciphertext = Column(LargeBinary, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)

    __table_args__ = (
        UniqueConstraint("technique_id", "original_digest", name="uq_correspondence_original"),
        UniqueConstraint("technique_id", "pseudonym", name="uq_correspondence_pseudonym"),
    )

    def to_entry(self) -> CorrespondenceEntry:
        return CorrespondenceEntry(
            technique_id=self.technique_id,
            original_digest=self.original_digest,
            pseudonym=self.pseudonym,
            reversible=self.reversible,
            ciphertext=self.ciphertext,
            created_at=self.created_at,
        )


def create_store_engine(database: DatabaseConfig, timeout_seconds: float = 30.0):
    """Create an engine suited to the configured URL."""
    if database.url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False, "timeout": timeout_seconds}}
        if database.url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
    else:
        kwargs = {
            "pool_size": database.pool_size,
            "max_overflow": database.max_overflow,
            "pool_timeout": timeout_seconds,
            "pool_pre_ping": True,
        }
    return create_engine(database.url, echo=database.echo, **kwargs)


class DatabaseCorrespondenceStore(CorrespondenceStore):
    """Correspondence store persisted through SQLAlchemy."""

    def __init__(
        self,
        database: Optional[DatabaseConfig] = None,
        protector: Optional[ValueProtector] = None,
        timeout_seconds: float = 30.0,
    ):
        super().__init__(protector)
        self.database = database or DatabaseConfig()
        self.engine = create_store_engine(self.database, timeout_seconds)
        self._session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)
        Base.metadata.create_all(self.engine)

    def get_or_create(self, technique_id: str, original_value: Any, reversible: bool = True) -> str:
        digest = self.protector.digest(technique_id, original_value)

        try:
            for attempt in range(MAX_CREATE_ATTEMPTS):
                with self._session_factory() as session:
                    row = (
                        session.query(CorrespondenceRow)
                        .filter_by(technique_id=technique_id, original_digest=digest)
                        .one_or_none()
                    )
                    if row is not None:
                        self._check_mode(row.to_entry(), reversible)
                        return row.pseudonym

                    entry = self._build_entry(technique_id, original_value, digest, reversible, attempt)
                    session.add(CorrespondenceRow(
                        technique_id=entry.technique_id,
                        original_digest=entry.original_digest,
                        pseudonym=entry.pseudonym,
                        reversible=entry.reversible,
                        ciphertext=entry.ciphertext,
                        created_at=entry.created_at,
                    ))
                    try:
                        session.commit()
                        return entry.pseudonym
                    except IntegrityError:
                        # Lost a race for this key, or pseudonym collision: re-read
                        session.rollback()
                        self.logger.debug(f"Get-or-create conflict in '{technique_id}', retrying")
        except SQLAlchemyError as e:
            self.logger.error(f"Correspondence store failure: {type(e).__name__}")
            raise StoreUnavailable(f"Correspondence store failure: {type(e).__name__}")

        raise StoreUnavailable(f"Could not settle a pseudonym in '{technique_id}'")

    def reverse(self, technique_id: str, pseudonym: str, credential: CallerCredential) -> Any:
        self._check_authorized(technique_id, credential)

        try:
            with self._session_factory() as session:
                row = (
                    session.query(CorrespondenceRow)
                    .filter_by(technique_id=technique_id, pseudonym=pseudonym)
                    .one_or_none()
                )
        except SQLAlchemyError as e:
            raise StoreUnavailable(f"Correspondence store failure: {type(e).__name__}")

        if row is None or not row.reversible:
            raise NotFound(f"Unknown pseudonym in '{technique_id}'")

        self.logger.info(f"Reverse lookup by '{credential.principal}' on '{technique_id}'")
        return self.protector.decrypt(technique_id, row.ciphertext)

    def delete_namespace(self, technique_id: str) -> int:
        with self._session_factory() as session:
            deleted = (
                session.query(CorrespondenceRow)
                .filter_by(technique_id=technique_id)
                .delete(synchronize_session=False)
            )
            session.commit()
        self.logger.info(f"Deleted {deleted} entries from '{technique_id}'")
        return deleted

    def rotate_key(self, encryption_key: bytes) -> int:
        new_protector = self.protector.with_encryption_key(encryption_key)
        rotated = 0
        with self._session_factory() as session:
            rows = session.query(CorrespondenceRow).filter_by(reversible=True).all()
            for row in rows:
                value = self.protector.decrypt(row.technique_id, row.ciphertext)
                row.ciphertext = new_protector.encrypt(row.technique_id, value)
                rotated += 1
            session.commit()
        self.protector = new_protector
        self.logger.info(f"Rotated encryption key for {rotated} entries")
        return rotated

    def count(self, technique_id: Optional[str] = None) -> int:
        with self._session_factory() as session:
            query = session.query(func.count(CorrespondenceRow.id))
            if technique_id is not None:
                query = query.filter(CorrespondenceRow.technique_id == technique_id)
            return query.scalar()

    def close(self) -> None:
        self.engine.dispose()
