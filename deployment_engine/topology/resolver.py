#deployment_engine\topology\resolver.py
"""
Topology resolver.

Turns the raw declarative configuration (already parsed from YAML) into a
validated Topology. Pure: no I/O, deterministic, fails on the first
violated invariant with a ConfigError naming the entity.
"""

import re
from typing import Any, Dict, List, Mapping, Optional

from deployment_engine.core.errors import ConfigError
from deployment_engine.topology.models import (
    Environment,
    ProxySettings,
    ServiceSelection,
    ServiceTier,
    Topology,
    WebSizing,
)


RESERVED_PORTS = {80, 443}

_NAME_RE = re.compile(r"^[a-z][a-z0-9-]{0,62}$")
_LABEL_RE = re.compile(r"^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?$")
_MEMORY_RE = re.compile(r"^\d+(b|k|kb|m|mb|g|gb)$", re.IGNORECASE)
_BODY_SIZE_RE = re.compile(r"^\d+[kKmMgG]?$")
_MODULE_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)*$")
_QUEUE_RE = re.compile(r"^[A-Za-z0-9_.-]+$")

ENVIRONMENT_KEYS = {
    "enabled", "domain", "additional_domains", "ssl", "port", "image",
    "web", "services", "secrets", "app_module",
}
SERVICE_KEYS = {"cache", "worker_default", "worker_secondary", "scheduler", "monitor"}
TIER_KEYS = {"enabled", "replicas", "concurrency", "queue", "memory_limit", "image"}
WEB_KEYS = {"replicas", "workers", "threads", "timeout", "health_path"}
PROXY_KEYS = {"client_max_body_size", "worker_connections", "acme_webroot", "certificates_dir"}

DEFAULT_QUEUES = {"worker_default": "default", "worker_secondary": "secondary"}


# -----------------------------
# Field helpers
# -----------------------------

def _require_mapping(value: Any, entity: str) -> Mapping[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError("must be a mapping", entity=entity)
    return value


def _reject_unknown(data: Mapping[str, Any], allowed: set, entity: str) -> None:
    unknown = sorted(set(data) - allowed)
    if unknown:
        raise ConfigError(f"unknown field(s): {', '.join(unknown)}", entity=entity)


def _bool(data: Mapping[str, Any], key: str, default: bool, entity: str) -> bool:
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise ConfigError(f"'{key}' must be true or false", entity=entity)
    return value


def _int(
    data: Mapping[str, Any],
    key: str,
    default: Optional[int],
    entity: str,
    minimum: int = 0,
) -> Optional[int]:
    value = data.get(key, default)
    if value is None:
        return None
    # bool is an int subclass; "replicas: yes" is a mistake, not 1
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"'{key}' must be an integer", entity=entity)
    if value < minimum:
        raise ConfigError(f"'{key}' must be >= {minimum} (got {value})", entity=entity)
    return value


def _str(data: Mapping[str, Any], key: str, default: Optional[str], entity: str) -> Optional[str]:
    value = data.get(key, default)
    if value is None:
        return None
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"'{key}' must be a non-empty string", entity=entity)
    return value.strip()


def normalize_domain(raw: Any, entity: str) -> str:
    if not isinstance(raw, str):
        raise ConfigError(f"domain must be a string (got {raw!r})", entity=entity)

    domain = raw.strip().lower().rstrip(".")

    if len(domain) > 253:
        raise ConfigError(f"domain '{raw}' is longer than 253 characters", entity=entity)

    labels = domain.split(".")
    if len(labels) < 2 or not all(_LABEL_RE.match(label) for label in labels):
        raise ConfigError(f"'{raw}' is not a valid domain name", entity=entity)

    return domain


# -----------------------------
# Sections
# -----------------------------

def _resolve_proxy(raw: Any) -> ProxySettings:
    entity = "proxy"
    data = _require_mapping(raw, entity)
    _reject_unknown(data, PROXY_KEYS, entity)

    defaults = ProxySettings()
    body_size = _str(data, "client_max_body_size", defaults.client_max_body_size, entity)
    if not _BODY_SIZE_RE.match(body_size):
        raise ConfigError(f"invalid client_max_body_size '{body_size}'", entity=entity)

    return ProxySettings(
        client_max_body_size=body_size,
        worker_connections=_int(data, "worker_connections", defaults.worker_connections, entity, minimum=1),
        acme_webroot=_str(data, "acme_webroot", defaults.acme_webroot, entity),
        certificates_dir=_str(data, "certificates_dir", defaults.certificates_dir, entity),
    )


def _resolve_tier(name: str, raw: Any, entity: str) -> ServiceTier:
    entity = f"{entity}.services.{name}"
    if raw is None:
        return ServiceTier()

    data = _require_mapping(raw, entity)
    _reject_unknown(data, TIER_KEYS, entity)

    enabled = _bool(data, "enabled", False, entity)
    replicas = _int(data, "replicas", 1, entity)
    concurrency = _int(data, "concurrency", 1, entity, minimum=1)

    queue = _str(data, "queue", DEFAULT_QUEUES.get(name), entity)
    if queue is not None and not _QUEUE_RE.match(queue):
        raise ConfigError(f"invalid queue name '{queue}'", entity=entity)

    memory_limit = _str(data, "memory_limit", None, entity)
    if memory_limit is not None and not _MEMORY_RE.match(memory_limit):
        raise ConfigError(f"invalid memory_limit '{memory_limit}'", entity=entity)

    image = _str(data, "image", None, entity)
    if image is not None and any(c.isspace() for c in image):
        raise ConfigError(f"invalid image reference '{image}'", entity=entity)

    return ServiceTier(
        present=True,
        enabled=enabled,
        replicas=replicas,
        concurrency=concurrency,
        queue=queue if name.startswith("worker") else None,
        memory_limit=memory_limit.lower() if memory_limit else None,
        image=image,
    )


def _resolve_services(raw: Any, entity: str) -> ServiceSelection:
    data = _require_mapping(raw, f"{entity}.services")
    _reject_unknown(data, SERVICE_KEYS, f"{entity}.services")

    selection = ServiceSelection(
        **{name: _resolve_tier(name, data.get(name), entity) for name in sorted(SERVICE_KEYS)}
    )

    # Both worker tiers share the task broker set up by the default tier
    if selection.worker_secondary.effective_enabled and not selection.worker_default.present:
        raise ConfigError(
            "worker_secondary requires the worker_default tier to be declared",
            entity=f"{entity}.services",
        )

    if selection.monitor.effective_enabled and not selection.any_worker_enabled():
        raise ConfigError(
            "monitor is enabled but no worker tier is enabled",
            entity=f"{entity}.services",
        )

    return selection


def _resolve_web(raw: Any, entity: str) -> WebSizing:
    entity = f"{entity}.web"
    data = _require_mapping(raw, entity)
    _reject_unknown(data, WEB_KEYS, entity)

    defaults = WebSizing()
    health_path = _str(data, "health_path", defaults.health_path, entity)
    if not health_path.startswith("/"):
        raise ConfigError(f"health_path must start with '/' (got '{health_path}')", entity=entity)

    return WebSizing(
        replicas=_int(data, "replicas", defaults.replicas, entity, minimum=1),
        workers=_int(data, "workers", defaults.workers, entity, minimum=1),
        threads=_int(data, "threads", defaults.threads, entity, minimum=1),
        timeout=_int(data, "timeout", defaults.timeout, entity, minimum=1),
        health_path=health_path,
    )


def _resolve_environment(name: str, raw: Any) -> Environment:
    entity = f"environments.{name}"

    if not isinstance(name, str) or not _NAME_RE.match(name):
        raise ConfigError(f"invalid environment name {name!r}", entity="environments")

    data = _require_mapping(raw, entity)
    _reject_unknown(data, ENVIRONMENT_KEYS, entity)

    enabled = _bool(data, "enabled", True, entity)

    # -------------------------
    # Required fields
    # -------------------------
    if "domain" not in data:
        raise ConfigError("'domain' is required", entity=entity)
    domain = normalize_domain(data["domain"], entity)

    additional_raw = data.get("additional_domains") or []
    if not isinstance(additional_raw, list):
        raise ConfigError("'additional_domains' must be a list", entity=entity)
    additional = tuple(normalize_domain(d, entity) for d in additional_raw)

    port = _int(data, "port", None, entity, minimum=1)
    image = _str(data, "image", None, entity)

    if enabled:
        if port is None:
            raise ConfigError("'port' is required for an enabled environment", entity=entity)
        if image is None:
            raise ConfigError("'image' is required for an enabled environment", entity=entity)

    if image is not None and any(c.isspace() for c in image):
        raise ConfigError(f"invalid image reference '{image}'", entity=entity)

    app_module = _str(data, "app_module", "config", entity)
    if not _MODULE_RE.match(app_module):
        raise ConfigError(f"invalid app_module '{app_module}'", entity=entity)

    return Environment(
        name=name,
        enabled=enabled,
        domain=domain,
        port=port,
        image=image,
        additional_domains=additional,
        ssl=_bool(data, "ssl", False, entity),
        services=_resolve_services(data.get("services"), entity),
        web=_resolve_web(data.get("web"), entity),
        app_module=app_module,
        secrets_ref=_str(data, "secrets", None, entity),
    )


# -----------------------------
# Cross-environment invariants
# -----------------------------

def _check_unique_domains(environments: List[Environment]) -> None:
    owners: Dict[str, str] = {}
    for environment in environments:
        for domain in environment.domains:
            owner = owners.get(domain)
            if owner is not None:
                where = "twice" if owner == environment.name else f"also by '{owner}'"
                raise ConfigError(
                    f"domain '{domain}' is claimed {where}",
                    entity=f"environments.{environment.name}",
                )
            owners[domain] = environment.name


def _check_ports(environments: List[Environment]) -> None:
    claimed: Dict[int, str] = {}
    for environment in environments:
        if not environment.enabled:
            continue

        entity = f"environments.{environment.name}"
        if environment.port > 65535 or environment.port_range[-1] > 65535:
            raise ConfigError(f"port {environment.port} is out of range", entity=entity)

        for port in environment.port_range:
            if port in RESERVED_PORTS:
                raise ConfigError(
                    f"port {port} is reserved for the reverse proxy", entity=entity
                )
            owner = claimed.get(port)
            if owner is not None:
                raise ConfigError(
                    f"port {port} is already used by environment '{owner}'", entity=entity
                )
            claimed[port] = environment.name


# -----------------------------
# Entry point
# -----------------------------

def resolve(raw: Any) -> Topology:
    """
    Validate and normalize a raw configuration mapping.

    Args:
        raw: Parsed configuration (YAML document)

    Returns:
        Topology

    Raises:
        ConfigError: On the first violated invariant; no partial topology is returned
    """
    data = _require_mapping(raw, "config")
    if not data:
        raise ConfigError("configuration is empty", entity="config")

    _reject_unknown(data, {"project", "environments", "proxy"}, "config")

    project = _str(data, "project", None, "config")
    if project is None:
        raise ConfigError("'project' is required", entity="config")
    if not _NAME_RE.match(project):
        raise ConfigError(f"invalid project name '{project}'", entity="config")

    environments_raw = _require_mapping(data.get("environments"), "environments")
    if not environments_raw:
        raise ConfigError("at least one environment is required", entity="environments")

    environments = [
        _resolve_environment(name, environments_raw[name])
        for name in sorted(environments_raw, key=str)
    ]

    _check_unique_domains(environments)
    _check_ports(environments)

    return Topology(
        project=project,
        environments=tuple(environments),
        proxy=_resolve_proxy(data.get("proxy")),
    )


class ConfigResolver:
    @staticmethod
    def resolve(raw: Any) -> Topology:
        return resolve(raw)
