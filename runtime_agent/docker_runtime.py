# runtime_agent/docker_runtime.py
"""
Docker-backed instance management.

Every managed container carries labels that identify it completely
(project, environment, kind, slot, fingerprint), so the live set is always
read back from docker itself and never from agent memory.
"""

import json
import logging
import re
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional

import docker
from docker.errors import APIError, ImageNotFound, NotFound
from dotenv import dotenv_values

from runtime_agent.probes import probe_container

logger = logging.getLogger(__name__)


MANAGED_BY = "deployment_engine"

LABEL_MANAGED_BY = "managed_by"
LABEL_PROJECT = "deployment.project"
LABEL_ENVIRONMENT = "deployment.environment"
LABEL_KIND = "deployment.kind"
LABEL_SLOT = "deployment.slot"
LABEL_FINGERPRINT = "deployment.fingerprint"
LABEL_HOST_PORT = "deployment.host_port"
LABEL_HEALTH_CHECK = "deployment.health_check"

_MEMORY_RE = re.compile(r"^(\d+)(b|k|kb|m|mb|g|gb)$", re.IGNORECASE)


class InstanceNotFound(Exception):
    pass


class RuntimeFailure(Exception):
    """Docker refused or failed an operation."""
    pass


def docker_memory(limit: Optional[str]) -> Optional[str]:
    """'256mb' -> '256m' (docker units)."""
    if not limit:
        return None
    match = _MEMORY_RE.match(limit)
    if not match:
        return limit
    number, unit = match.groups()
    unit = unit.lower()[0]
    return f"{number}{unit}" if unit != "b" else number


def network_name(project: str, environment: str) -> str:
    return f"{project}-{environment}"


class DockerRuntime:
    """Manages the containers of every project/environment on this host."""

    def __init__(self, client=None, stop_timeout: int = 10, restart_policy: str = "unless-stopped", pull_images: bool = True):
        self._client = client or docker.from_env()
        self._stop_timeout = stop_timeout
        self._restart_policy = restart_policy
        self._pull_images = pull_images

    # ============================================
    # OBSERVE
    # ============================================

    def list_instances(self, project: str, environment: str) -> List[Dict[str, Any]]:
        containers = self._client.containers.list(
            all=True,
            filters={
                "label": [
                    f"{LABEL_MANAGED_BY}={MANAGED_BY}",
                    f"{LABEL_PROJECT}={project}",
                    f"{LABEL_ENVIRONMENT}={environment}",
                ]
            },
        )
        return [self._describe(container) for container in containers]

    def instance_health(self, instance_id: str) -> str:
        container = self._get(instance_id)
        container.reload()
        return probe_container(
            container,
            self._health_check_of(container),
            host_port=self._host_port_of(container),
        )

    # ============================================
    # MUTATE
    # ============================================

    def create_instance(self, project: str, spec: Dict[str, Any], slot: int, fingerprint: str) -> Dict[str, Any]:
        """
        Create and start one instance of a service group.

        Steps:
        1. Pull image
        2. Ensure the environment network
        3. Create container (labels, env, ports, memory)
        4. Attach with the service alias
        5. Start
        """
        environment = spec["environment"]
        kind = spec["kind"]
        label = f"{environment}/{kind}"

        if self._pull_images:
            logger.info(f"[{label}] Pulling image: {spec['image']}")
            try:
                self._client.images.pull(spec["image"])
            except ImageNotFound as e:
                raise RuntimeFailure(f"Image not found: {spec['image']}") from e
            except APIError as e:
                raise RuntimeFailure(f"Cannot pull {spec['image']}: {e}") from e

        network = self._ensure_network(project, environment)

        host_port = None
        ports = None
        if spec.get("host_port_base") is not None and spec.get("container_port"):
            host_port = spec["host_port_base"] + slot
            # Only the proxy on this host talks to web slots
            ports = {f"{spec['container_port']}/tcp": ("127.0.0.1", host_port)}

        health_check = spec.get("health_check")
        labels = {
            LABEL_MANAGED_BY: MANAGED_BY,
            LABEL_PROJECT: project,
            LABEL_ENVIRONMENT: environment,
            LABEL_KIND: kind,
            LABEL_SLOT: str(slot),
            LABEL_FINGERPRINT: fingerprint,
        }
        if host_port is not None:
            labels[LABEL_HOST_PORT] = str(host_port)
        if health_check:
            labels[LABEL_HEALTH_CHECK] = _encode_health_check(health_check)

        container_config = {
            "image": spec["image"],
            "name": f"{project}-{environment}-{kind}-{slot}-{uuid.uuid4().hex[:6]}",
            "detach": True,
            "labels": labels,
            "environment": {**self._secrets(spec.get("secrets_ref")), **(spec.get("env") or {})},
            "network": network.name,
            "restart_policy": {"Name": self._restart_policy},
        }
        if spec.get("command"):
            container_config["command"] = list(spec["command"])
        if ports:
            container_config["ports"] = ports
        memory = docker_memory(spec.get("memory_limit"))
        if memory:
            container_config["mem_limit"] = memory

        try:
            container = self._client.containers.create(**container_config)
            logger.info(f"[{label}] ✅ Container created: {container.id[:12]}")

            # Re-attach with the service alias so siblings reach it as e.g. "cache"
            network.disconnect(container)
            network.connect(container, aliases=[kind])

            container.start()
            container.reload()
        except APIError as e:
            logger.error(f"[{label}] Docker API error: {e}")
            raise RuntimeFailure(f"Docker error: {e}") from e

        logger.info(f"[{label}] ✅ Container started in slot {slot}")
        return self._describe(container)

    def remove_instance(self, instance_id: str) -> None:
        container = self._get(instance_id)
        try:
            container.stop(timeout=self._stop_timeout)
            container.remove(force=True)
        except NotFound:
            raise InstanceNotFound(instance_id)
        except APIError as e:
            raise RuntimeFailure(f"Docker error: {e}") from e
        logger.info(f"Removed container {instance_id[:12]}")

    # ============================================
    # HELPERS
    # ============================================

    def _get(self, instance_id: str):
        try:
            container = self._client.containers.get(instance_id)
        except NotFound:
            raise InstanceNotFound(instance_id)
        if container.labels.get(LABEL_MANAGED_BY) != MANAGED_BY:
            raise InstanceNotFound(instance_id)
        return container

    def _ensure_network(self, project: str, environment: str):
        name = network_name(project, environment)
        existing = self._client.networks.list(names=[name])
        if existing:
            return existing[0]
        logger.info(f"Creating network {name}")
        return self._client.networks.create(
            name,
            driver="bridge",
            labels={LABEL_MANAGED_BY: MANAGED_BY, LABEL_PROJECT: project, LABEL_ENVIRONMENT: environment},
        )

    def _secrets(self, secrets_ref: Optional[str]) -> Dict[str, str]:
        """The secret bundle is an env file already rendered on the host."""
        if not secrets_ref:
            return {}
        path = Path(secrets_ref)
        if not path.exists():
            raise RuntimeFailure(f"Secret bundle not found: {secrets_ref}")
        return {key: value for key, value in dotenv_values(path).items() if value is not None}

    def _describe(self, container) -> Dict[str, Any]:
        labels = container.labels
        image = container.attrs.get("Config", {}).get("Image") or ""
        return {
            "instance_id": container.id,
            "name": container.name,
            "environment": labels.get(LABEL_ENVIRONMENT),
            "kind": labels.get(LABEL_KIND),
            "slot": int(labels.get(LABEL_SLOT, 0)),
            "image": image,
            "fingerprint": labels.get(LABEL_FINGERPRINT, ""),
            "health": "UNKNOWN" if container.status == "running" else "UNHEALTHY",
            "host_port": self._host_port_of(container),
            "status": container.status,
        }

    @staticmethod
    def _host_port_of(container) -> Optional[int]:
        value = container.labels.get(LABEL_HOST_PORT)
        return int(value) if value else None

    @staticmethod
    def _health_check_of(container) -> Optional[Dict[str, Any]]:
        value = container.labels.get(LABEL_HEALTH_CHECK)
        return _decode_health_check(value) if value else None


def _encode_health_check(health_check: Dict[str, Any]) -> str:
    return json.dumps(health_check, sort_keys=True)


def _decode_health_check(value: str) -> Dict[str, Any]:
    return json.loads(value)
