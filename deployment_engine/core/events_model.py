"""Event models for the deployment engine."""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class EngineEvent:
    """Base engine event."""

    event_type: str
    subject: str  # environment, service identity or domain
    timestamp: datetime
    metadata: Dict[str, Any]

    @staticmethod
    def rollout_started(record):
        """Rollout started event."""
        return EngineEvent(
            event_type="rollout.started",
            subject=record.environment,
            timestamp=_now(),
            metadata={
                "rollout_id": str(record.rollout_id),
                "action": record.action,
                "services": sorted(record.services),
            }
        )

    @staticmethod
    def rollout_finished(record):
        """Rollout finished event."""
        return EngineEvent(
            event_type="rollout.finished",
            subject=record.environment,
            timestamp=_now(),
            metadata={
                "rollout_id": str(record.rollout_id),
                "status": record.status.value,
                "failed": record.failed_services(),
                "pending": record.pending_services(),
                "cancelled": record.cancelled,
            }
        )

    @staticmethod
    def service_converging(outcome):
        """Service started converging."""
        return EngineEvent(
            event_type="service.converging",
            subject=outcome.identity,
            timestamp=_now(),
            metadata={"operation": outcome.operation}
        )

    @staticmethod
    def service_healthy(outcome):
        """Service converged."""
        return EngineEvent(
            event_type="service.healthy",
            subject=outcome.identity,
            timestamp=_now(),
            metadata={"operation": outcome.operation}
        )

    @staticmethod
    def service_failed(outcome):
        """Service failed to converge."""
        return EngineEvent(
            event_type="service.failed",
            subject=outcome.identity,
            timestamp=_now(),
            metadata={
                "operation": outcome.operation,
                "error_message": outcome.error_message,
            }
        )

    @staticmethod
    def certificate_obtained(record):
        """Certificate issued or renewed."""
        return EngineEvent(
            event_type="certificate.obtained",
            subject=record.domain,
            timestamp=_now(),
            metadata={
                "result": record.last_result.value if record.last_result else None,
                "expires_at": record.expires_at.isoformat() if record.expires_at else None,
            }
        )

    @staticmethod
    def certificate_failed(record):
        """Certificate issuance or renewal failed."""
        return EngineEvent(
            event_type="certificate.failed",
            subject=record.domain,
            timestamp=_now(),
            metadata={
                "result": record.last_result.value if record.last_result else None,
                "error_message": record.last_error,
            }
        )

    @staticmethod
    def proxy_reloaded(reason: str):
        """Proxy hot-reloaded."""
        return EngineEvent(
            event_type="proxy.reloaded",
            subject="proxy",
            timestamp=_now(),
            metadata={"reason": reason}
        )
