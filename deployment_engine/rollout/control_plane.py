# deployment_engine/rollout/control_plane.py
"""Control plane - the container runtime the controller converges against."""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List

from runtime_agent.client import AgentRequestError, AgentUnavailable, RuntimeAgentClient
from deployment_engine.core.errors import ControlPlaneError, PreconditionError
from deployment_engine.core.models import HealthStatus, Instance, ServiceKind, ServiceSpec

logger = logging.getLogger(__name__)


class ControlPlane(ABC):
    """Abstract container runtime."""

    @abstractmethod
    def observe(self, environment: str) -> List[Instance]:
        """
        Live instances of an environment.

        Raises:
            PreconditionError: If the control plane cannot be reached
        """
        raise NotImplementedError

    @abstractmethod
    def create_instance(self, spec: ServiceSpec, slot: int) -> Instance:
        """Start one instance of a spec in the given slot."""
        raise NotImplementedError

    @abstractmethod
    def remove_instance(self, instance_id: str) -> None:
        """Stop and remove an instance. Idempotent."""
        raise NotImplementedError

    @abstractmethod
    def instance_health(self, instance_id: str) -> HealthStatus:
        """Probe an instance once."""
        raise NotImplementedError


def instance_from_dict(data: Dict[str, Any]) -> Instance:
    return Instance(
        instance_id=data["instance_id"],
        environment=data["environment"],
        kind=ServiceKind(data["kind"]),
        slot=int(data["slot"]),
        image=data["image"],
        fingerprint=data["fingerprint"],
        health=HealthStatus(data.get("health", HealthStatus.UNKNOWN.value)),
        host_port=data.get("host_port"),
    )


class AgentControlPlane(ControlPlane):
    """
    Control plane backed by the runtime agent running on the host.

    Every call is bounded by the client's timeout; a hung agent surfaces
    as an error, never as a stalled rollout.
    """

    def __init__(self, client: RuntimeAgentClient, project: str):
        self._client = client
        self._project = project

    def observe(self, environment: str) -> List[Instance]:
        try:
            raw = self._client.list_instances(self._project, environment)
        except (AgentUnavailable, AgentRequestError) as e:
            raise PreconditionError(f"control plane unavailable: {e}") from e

        instances = [instance_from_dict(item) for item in raw]
        logger.info(f"[control-plane] observed {len(instances)} instance(s) in '{environment}'")
        return instances

    def create_instance(self, spec: ServiceSpec, slot: int) -> Instance:
        try:
            data = self._client.create_instance(
                self._project,
                spec.to_dict(),
                slot=slot,
                fingerprint=spec.fingerprint,
            )
        except (AgentUnavailable, AgentRequestError) as e:
            raise ControlPlaneError(f"{spec.identity}: cannot create instance in slot {slot}: {e}") from e
        return instance_from_dict(data)

    def remove_instance(self, instance_id: str) -> None:
        try:
            self._client.remove_instance(instance_id)
        except (AgentUnavailable, AgentRequestError) as e:
            raise ControlPlaneError(f"cannot remove instance {instance_id[:12]}: {e}") from e

    def instance_health(self, instance_id: str) -> HealthStatus:
        try:
            data = self._client.instance_health(instance_id)
        except (AgentUnavailable, AgentRequestError) as e:
            raise ControlPlaneError(f"cannot probe instance {instance_id[:12]}: {e}") from e
        return HealthStatus(data["status"])
