"""Core domain models (service specs, instances, rollouts, certificates)."""

import hashlib
import json
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID, uuid4


# ============================================
# ENUMS
# ============================================

class ServiceKind(Enum):
    """Fixed catalogue of workloads an environment can run."""
    WEB = "web"
    CACHE = "cache"
    WORKER_DEFAULT = "worker-default"
    WORKER_SECONDARY = "worker-secondary"
    SCHEDULER = "scheduler"
    MONITOR = "monitor"


class HealthStatus(Enum):
    """Health check status."""
    UNKNOWN = "UNKNOWN"
    HEALTHY = "HEALTHY"
    UNHEALTHY = "UNHEALTHY"
    STARTING = "STARTING"


class ServiceState(Enum):
    """Per-spec convergence state during one rollout."""
    PENDING = "PENDING"
    CONVERGING = "CONVERGING"
    HEALTHY = "HEALTHY"
    FAILED = "FAILED"


class RolloutStatus(Enum):
    """Overall rollout result."""
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    PARTIAL = "PARTIAL"


class UpdateOrder(Enum):
    """How old and new instances overlap during an update."""
    START_FIRST = "start-first"
    STOP_FIRST = "stop-first"


def make_identity(environment: str, kind: ServiceKind) -> str:
    return f"{environment}/{kind.value}"


# ============================================
# SERVICE SPEC
# ============================================

@dataclass(frozen=True)
class HealthCheckDefinition:
    """Health check configuration."""
    type: str  # "http", "tcp", "command", "process"
    path: Optional[str] = None
    port: Optional[int] = None
    command: Optional[str] = None
    interval_seconds: int = 10
    timeout_seconds: int = 5
    retries: int = 3
    initial_delay_seconds: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "path": self.path,
            "port": self.port,
            "command": self.command,
            "interval_seconds": self.interval_seconds,
            "timeout_seconds": self.timeout_seconds,
            "retries": self.retries,
            "initial_delay_seconds": self.initial_delay_seconds,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HealthCheckDefinition":
        return cls(**data)


@dataclass(frozen=True)
class ServiceSpec:
    """Desired state of one service group within an environment."""
    environment: str
    kind: ServiceKind
    image: str
    replicas: int

    command: Tuple[str, ...] = ()
    env: Tuple[Tuple[str, str], ...] = ()
    memory_limit: Optional[str] = None

    container_port: Optional[int] = None
    host_port_base: Optional[int] = None  # web only: slot N publishes on base + N

    health_check: Optional[HealthCheckDefinition] = None
    depends_on: Tuple[str, ...] = ()
    update_order: UpdateOrder = UpdateOrder.START_FIRST

    secrets_ref: Optional[str] = None

    @property
    def identity(self) -> str:
        return make_identity(self.environment, self.kind)

    @property
    def max_slots(self) -> int:
        """Slots available to the group: one spare for start-first surge."""
        if self.update_order == UpdateOrder.START_FIRST:
            return self.replicas + 1
        return max(self.replicas, 1)

    @property
    def fingerprint(self) -> str:
        """Stable hash of everything that requires replacing instances (replicas excluded)."""
        payload = self.to_dict()
        payload.pop("replicas")
        payload.pop("depends_on")
        raw = json.dumps(payload, sort_keys=True).encode("utf-8")
        return hashlib.sha256(raw).hexdigest()[:16]

    def env_dict(self) -> Dict[str, str]:
        return dict(self.env)

    def with_replicas(self, replicas: int) -> "ServiceSpec":
        return replace(self, replicas=replicas)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "environment": self.environment,
            "kind": self.kind.value,
            "image": self.image,
            "replicas": self.replicas,
            "command": list(self.command),
            "env": dict(self.env),
            "memory_limit": self.memory_limit,
            "container_port": self.container_port,
            "host_port_base": self.host_port_base,
            "health_check": self.health_check.to_dict() if self.health_check else None,
            "depends_on": list(self.depends_on),
            "update_order": self.update_order.value,
            "secrets_ref": self.secrets_ref,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ServiceSpec":
        health_check = data.get("health_check")
        return cls(
            environment=data["environment"],
            kind=ServiceKind(data["kind"]),
            image=data["image"],
            replicas=int(data["replicas"]),
            command=tuple(data.get("command") or ()),
            env=tuple(sorted((data.get("env") or {}).items())),
            memory_limit=data.get("memory_limit"),
            container_port=data.get("container_port"),
            host_port_base=data.get("host_port_base"),
            health_check=HealthCheckDefinition.from_dict(health_check) if health_check else None,
            depends_on=tuple(data.get("depends_on") or ()),
            update_order=UpdateOrder(data.get("update_order", UpdateOrder.START_FIRST.value)),
            secrets_ref=data.get("secrets_ref"),
        )


# ============================================
# LIVE INSTANCES
# ============================================

@dataclass
class Instance:
    """One live container of a service group, as observed on the control plane."""
    instance_id: str
    environment: str
    kind: ServiceKind
    slot: int
    image: str
    fingerprint: str
    health: HealthStatus = HealthStatus.UNKNOWN
    host_port: Optional[int] = None

    @property
    def identity(self) -> str:
        return make_identity(self.environment, self.kind)


# ============================================
# ROLLOUT RECORDS
# ============================================

@dataclass
class ServiceOutcome:
    """Convergence tracking for one spec within a rollout."""
    identity: str
    operation: str
    state: ServiceState = ServiceState.PENDING
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "identity": self.identity,
            "operation": self.operation,
            "state": self.state.value,
            "error_message": self.error_message,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ServiceOutcome":
        return cls(
            identity=data["identity"],
            operation=data["operation"],
            state=ServiceState(data["state"]),
            error_message=data.get("error_message"),
            started_at=datetime.fromisoformat(data["started_at"]) if data.get("started_at") else None,
            finished_at=datetime.fromisoformat(data["finished_at"]) if data.get("finished_at") else None,
        )


@dataclass
class RolloutRecord:
    """One rollout (or rollback) invocation and its result."""
    rollout_id: UUID
    environment: str
    action: str = "rollout"  # "rollout" | "rollback"

    status: RolloutStatus = RolloutStatus.RUNNING
    services: Dict[str, ServiceOutcome] = field(default_factory=dict)

    cancelled: bool = False
    error_message: Optional[str] = None

    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = None

    @classmethod
    def start(cls, environment: str, action: str = "rollout") -> "RolloutRecord":
        return cls(rollout_id=uuid4(), environment=environment, action=action)

    def failed_services(self) -> List[str]:
        return sorted(
            identity for identity, outcome in self.services.items()
            if outcome.state == ServiceState.FAILED
        )

    def pending_services(self) -> List[str]:
        return sorted(
            identity for identity, outcome in self.services.items()
            if outcome.state == ServiceState.PENDING
        )

    def finish(self) -> None:
        """Compute the overall status once no spec is converging."""
        converged = all(o.state == ServiceState.HEALTHY for o in self.services.values())
        self.status = RolloutStatus.SUCCESS if converged and not self.cancelled else RolloutStatus.PARTIAL
        self.finished_at = datetime.now(timezone.utc)

    @property
    def is_success(self) -> bool:
        return self.status == RolloutStatus.SUCCESS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rollout_id": str(self.rollout_id),
            "environment": self.environment,
            "action": self.action,
            "status": self.status.value,
            "cancelled": self.cancelled,
            "error_message": self.error_message,
            "failed": self.failed_services(),
            "pending": self.pending_services(),
            "services": {identity: o.to_dict() for identity, o in sorted(self.services.items())},
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


# Result of a rollout invocation is the finished record itself.
RolloutResult = RolloutRecord


@dataclass
class ServiceRevision:
    """A spec that converged HEALTHY; history backs rollback."""
    revision_id: UUID
    identity: str
    spec: ServiceSpec
    rollout_id: Optional[UUID] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


# ============================================
# CERTIFICATES
# ============================================

class CertificateResult(Enum):
    ISSUED = "issued"
    RENEWED = "renewed"
    RATE_LIMITED = "rate-limited"
    DOMAIN_VALIDATION_FAILED = "domain-validation-failed"
    NETWORK_ERROR = "network-error"
    ERROR = "error"


@dataclass
class CertificateMaterial:
    """What the certificate authority returns on success."""
    domain: str
    expires_at: datetime
    fullchain_path: Optional[str] = None
    privkey_path: Optional[str] = None


@dataclass
class CertificateRecord:
    """Issuance/renewal history of one domain. Never deleted automatically."""
    domain: str
    expires_at: Optional[datetime] = None
    issued_at: Optional[datetime] = None
    last_attempt_at: Optional[datetime] = None
    last_result: Optional[CertificateResult] = None
    last_error: Optional[str] = None

    def has_material(self) -> bool:
        return self.expires_at is not None

    def is_servable(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at > now

    def due_action(self, now: datetime, threshold: timedelta) -> Optional[str]:
        """Return "issue", "renew" or None."""
        if self.expires_at is None:
            return "issue"
        if self.expires_at - now <= threshold:
            return "renew"
        return None

    def record_success(self, material: CertificateMaterial, now: datetime) -> None:
        self.last_result = CertificateResult.RENEWED if self.has_material() else CertificateResult.ISSUED
        self.expires_at = material.expires_at
        self.issued_at = now
        self.last_attempt_at = now
        self.last_error = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "domain": self.domain,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "issued_at": self.issued_at.isoformat() if self.issued_at else None,
            "last_attempt_at": self.last_attempt_at.isoformat() if self.last_attempt_at else None,
            "last_result": self.last_result.value if self.last_result else None,
            "last_error": self.last_error,
        }

    def record_failure(self, reason: str, message: str, now: datetime) -> None:
        # expires_at is left alone: the last good material keeps serving
        try:
            self.last_result = CertificateResult(reason)
        except ValueError:
            self.last_result = CertificateResult.ERROR
        self.last_error = message
        self.last_attempt_at = now
