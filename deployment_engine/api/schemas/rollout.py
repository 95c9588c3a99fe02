from datetime import datetime
from typing import Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel

from deployment_engine.core.models import RolloutRecord


class ServiceOutcomeResponse(BaseModel):
    identity: str
    operation: str
    state: str
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


class RolloutResponse(BaseModel):
    rollout_id: UUID
    environment: str
    action: str
    status: str
    cancelled: bool
    error_message: Optional[str] = None
    failed: List[str]
    pending: List[str]
    services: Dict[str, ServiceOutcomeResponse]
    started_at: datetime
    finished_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, record: RolloutRecord) -> "RolloutResponse":
        return cls(
            rollout_id=record.rollout_id,
            environment=record.environment,
            action=record.action,
            status=record.status.value,
            cancelled=record.cancelled,
            error_message=record.error_message,
            failed=record.failed_services(),
            pending=record.pending_services(),
            services={
                identity: ServiceOutcomeResponse(
                    identity=outcome.identity,
                    operation=outcome.operation,
                    state=outcome.state.value,
                    error_message=outcome.error_message,
                    started_at=outcome.started_at,
                    finished_at=outcome.finished_at,
                )
                for identity, outcome in sorted(record.services.items())
            },
            started_at=record.started_at,
            finished_at=record.finished_at,
        )


class RolloutAccepted(BaseModel):
    environment: str
    status: str


class CancelResponse(BaseModel):
    environment: str
    rollout_id: Optional[UUID] = None
    cancelled: bool
