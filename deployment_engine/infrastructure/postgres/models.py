#deployment_engine\infrastructure\postgres\models.py
"""SQLAlchemy ORM models for database tables."""

from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import (
    Boolean, Column, DateTime, Enum as SQLEnum, Index, JSON, String, Text, Uuid
)

from deployment_engine.core.models import RolloutStatus
from deployment_engine.infrastructure.postgres.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RolloutRecordORM(Base):
    """
    Rollout table - one row per rollout/rollback invocation.

    Indexes:
    - Primary key on rollout_id
    - Composite index on (environment, started_at) for latest-status lookups
    """

    __tablename__ = "rollout_records"

    rollout_id = Column(Uuid, primary_key=True, default=uuid4, nullable=False)

    environment = Column(String(63), nullable=False)
    action = Column(String(20), nullable=False, default="rollout")

    status = Column(
        SQLEnum(RolloutStatus, name="rollout_status"),
        nullable=False,
        default=RolloutStatus.RUNNING,
    )

    # {identity: ServiceOutcome.to_dict()}
    services = Column(JSON, nullable=False, default=dict)

    cancelled = Column(Boolean, nullable=False, default=False)
    error_message = Column(Text, nullable=True)

    started_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    finished_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_rollout_records_environment_started", "environment", "started_at"),
    )


class ServiceRevisionORM(Base):
    """Service revisions - every spec that converged HEALTHY."""

    __tablename__ = "service_revisions"

    revision_id = Column(Uuid, primary_key=True, default=uuid4, nullable=False)
    identity = Column(String(127), nullable=False, index=True)
    spec = Column(JSON, nullable=False)
    rollout_id = Column(Uuid, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, index=True)


class CertificateRecordORM(Base):
    """Certificate records - one row per domain, never deleted by the engine."""

    __tablename__ = "certificate_records"

    domain = Column(String(253), primary_key=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    issued_at = Column(DateTime(timezone=True), nullable=True)
    last_attempt_at = Column(DateTime(timezone=True), nullable=True)
    last_result = Column(String(50), nullable=True)
    last_error = Column(Text, nullable=True)
