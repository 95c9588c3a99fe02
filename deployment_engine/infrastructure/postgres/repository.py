#deployment_engine\infrastructure\postgres\repository.py

"""PostgreSQL repository implementations using SQLAlchemy."""

import logging
from datetime import datetime, timezone
from typing import Iterable, List, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from deployment_engine.core.errors import PersistenceError
from deployment_engine.core.models import (
    CertificateRecord,
    CertificateResult,
    RolloutRecord,
    ServiceOutcome,
    ServiceRevision,
    ServiceSpec,
)
from deployment_engine.core.repository import (
    CertificateRepository,
    RevisionRepository,
    RolloutRepository,
)
from deployment_engine.infrastructure.postgres.database import get_session_factory
from deployment_engine.infrastructure.postgres.models import (
    CertificateRecordORM,
    RolloutRecordORM,
    ServiceRevisionORM,
)

logger = logging.getLogger(__name__)


# ============================================
# Mapping Functions
# ============================================

def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """Some backends (sqlite) drop tzinfo on the way back."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def rollout_to_domain(orm: RolloutRecordORM) -> RolloutRecord:
    """Convert ORM model to domain model."""
    return RolloutRecord(
        rollout_id=orm.rollout_id,
        environment=orm.environment,
        action=orm.action,
        status=orm.status,
        services={
            identity: ServiceOutcome.from_dict(data)
            for identity, data in (orm.services or {}).items()
        },
        cancelled=orm.cancelled,
        error_message=orm.error_message,
        started_at=_aware(orm.started_at),
        finished_at=_aware(orm.finished_at),
    )


def rollout_to_orm(record: RolloutRecord) -> RolloutRecordORM:
    """Convert domain model to ORM model."""
    return RolloutRecordORM(
        rollout_id=record.rollout_id,
        environment=record.environment,
        action=record.action,
        status=record.status,
        services={identity: o.to_dict() for identity, o in record.services.items()},
        cancelled=record.cancelled,
        error_message=record.error_message,
        started_at=record.started_at,
        finished_at=record.finished_at,
    )


def certificate_to_domain(orm: CertificateRecordORM) -> CertificateRecord:
    return CertificateRecord(
        domain=orm.domain,
        expires_at=_aware(orm.expires_at),
        issued_at=_aware(orm.issued_at),
        last_attempt_at=_aware(orm.last_attempt_at),
        last_result=CertificateResult(orm.last_result) if orm.last_result else None,
        last_error=orm.last_error,
    )


# ============================================
# Repository Implementations
# ============================================

class _SessionMixin:
    def __init__(self, session_factory: Optional[sessionmaker] = None):
        """
        Initialize repository with optional session factory.

        Args:
            session_factory: SQLAlchemy session factory. If None, uses default production factory.
        """
        self._session_factory = session_factory

    def _get_session(self) -> Session:
        """Get new session from the injected factory."""
        if self._session_factory is None:
            self._session_factory = get_session_factory()
        return self._session_factory()


class PostgresRolloutRepository(_SessionMixin, RolloutRepository):
    """Rollout records in PostgreSQL."""

    def save(self, record: RolloutRecord) -> None:
        session = self._get_session()
        try:
            session.merge(rollout_to_orm(record))
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(f"Failed to save rollout {record.rollout_id}: {e}") from e
        finally:
            session.close()

    def get(self, rollout_id: UUID) -> Optional[RolloutRecord]:
        session = self._get_session()
        try:
            orm = session.get(RolloutRecordORM, rollout_id)
            return rollout_to_domain(orm) if orm else None
        finally:
            session.close()

    def latest(self, environment: str) -> Optional[RolloutRecord]:
        session = self._get_session()
        try:
            orm = session.execute(
                select(RolloutRecordORM)
                .where(RolloutRecordORM.environment == environment)
                .order_by(RolloutRecordORM.started_at.desc())
                .limit(1)
            ).scalar_one_or_none()
            return rollout_to_domain(orm) if orm else None
        finally:
            session.close()


class PostgresRevisionRepository(_SessionMixin, RevisionRepository):
    """Converged service revisions in PostgreSQL."""

    def append(self, revision: ServiceRevision) -> None:
        session = self._get_session()
        try:
            session.add(ServiceRevisionORM(
                revision_id=revision.revision_id,
                identity=revision.identity,
                spec=revision.spec.to_dict(),
                rollout_id=revision.rollout_id,
                created_at=revision.created_at,
            ))
            session.commit()
            logger.debug(f"[postgres] revision {revision.revision_id} for {revision.identity}")
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(f"Failed to store revision for {revision.identity}: {e}") from e
        finally:
            session.close()

    def history(self, identity: str, limit: int = 10) -> List[ServiceRevision]:
        session = self._get_session()
        try:
            rows = session.execute(
                select(ServiceRevisionORM)
                .where(ServiceRevisionORM.identity == identity)
                .order_by(ServiceRevisionORM.created_at.desc())
                .limit(limit)
            ).scalars().all()
            return [
                ServiceRevision(
                    revision_id=row.revision_id,
                    identity=row.identity,
                    spec=ServiceSpec.from_dict(row.spec),
                    rollout_id=row.rollout_id,
                    created_at=_aware(row.created_at),
                )
                for row in rows
            ]
        finally:
            session.close()


class PostgresCertificateRepository(_SessionMixin, CertificateRepository):
    """Certificate records in PostgreSQL."""

    def get(self, domain: str) -> Optional[CertificateRecord]:
        session = self._get_session()
        try:
            orm = session.get(CertificateRecordORM, domain)
            return certificate_to_domain(orm) if orm else None
        finally:
            session.close()

    def save(self, record: CertificateRecord) -> None:
        session = self._get_session()
        try:
            session.merge(CertificateRecordORM(
                domain=record.domain,
                expires_at=record.expires_at,
                issued_at=record.issued_at,
                last_attempt_at=record.last_attempt_at,
                last_result=record.last_result.value if record.last_result else None,
                last_error=record.last_error,
            ))
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(f"Failed to save certificate record {record.domain}: {e}") from e
        finally:
            session.close()

    def list_all(self) -> Iterable[CertificateRecord]:
        session = self._get_session()
        try:
            rows = session.execute(
                select(CertificateRecordORM).order_by(CertificateRecordORM.domain)
            ).scalars().all()
            return [certificate_to_domain(row) for row in rows]
        finally:
            session.close()
