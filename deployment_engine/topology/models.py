#deployment_engine\topology\models.py
"""Resolved topology: environments, their domains and service selections."""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from deployment_engine.core.errors import ConfigError


# ============================================
# PROXY
# ============================================

@dataclass(frozen=True)
class ProxySettings:
    """Host-wide reverse proxy settings."""
    client_max_body_size: str = "100M"
    worker_connections: int = 1024
    acme_webroot: str = "/var/www/letsencrypt"
    certificates_dir: str = "/etc/letsencrypt/live"


# ============================================
# SERVICE SELECTION
# ============================================

@dataclass(frozen=True)
class ServiceTier:
    """One optional service of an environment."""
    present: bool = False  # declared in the configuration at all
    enabled: bool = False
    replicas: int = 0

    concurrency: int = 1
    queue: Optional[str] = None
    memory_limit: Optional[str] = None
    image: Optional[str] = None

    @property
    def effective_enabled(self) -> bool:
        # replicas drive reality, the flag drives intent
        return self.enabled and self.replicas > 0


@dataclass(frozen=True)
class ServiceSelection:
    """Which optional services an environment runs, and their sizing."""
    cache: ServiceTier = field(default_factory=ServiceTier)
    worker_default: ServiceTier = field(default_factory=ServiceTier)
    worker_secondary: ServiceTier = field(default_factory=ServiceTier)
    scheduler: ServiceTier = field(default_factory=ServiceTier)
    monitor: ServiceTier = field(default_factory=ServiceTier)

    def any_worker_enabled(self) -> bool:
        return self.worker_default.effective_enabled or self.worker_secondary.effective_enabled


@dataclass(frozen=True)
class WebSizing:
    """Web tier sizing (gunicorn)."""
    replicas: int = 1
    workers: int = 2
    threads: int = 2
    timeout: int = 120
    health_path: str = "/"


# ============================================
# ENVIRONMENT / TOPOLOGY
# ============================================

@dataclass(frozen=True)
class Environment:
    """One independent deployment instance sharing the host with the others."""
    name: str
    enabled: bool
    domain: str
    port: Optional[int]
    image: Optional[str]

    additional_domains: Tuple[str, ...] = ()
    ssl: bool = False

    services: ServiceSelection = field(default_factory=ServiceSelection)
    web: WebSizing = field(default_factory=WebSizing)

    app_module: str = "config"
    secrets_ref: Optional[str] = None  # opaque, handed to the services untouched

    @property
    def domains(self) -> Tuple[str, ...]:
        return (self.domain,) + self.additional_domains

    @property
    def port_range(self) -> range:
        """Host ports the web slots of this environment may publish on."""
        if self.port is None:
            return range(0)
        return range(self.port, self.port + self.web.replicas + 1)


@dataclass(frozen=True)
class Topology:
    """Root entity produced by the resolver."""
    project: str
    environments: Tuple[Environment, ...]
    proxy: ProxySettings = field(default_factory=ProxySettings)

    def get(self, name: str) -> Environment:
        for environment in self.environments:
            if environment.name == name:
                return environment
        raise ConfigError(f"unknown environment '{name}'", entity=self.project)

    def enabled_environments(self) -> List[Environment]:
        return [e for e in self.environments if e.enabled]

    def domain_map(self) -> Dict[str, str]:
        """{domain: environment name} for enabled environments."""
        return {
            domain: environment.name
            for environment in self.enabled_environments()
            for domain in environment.domains
        }

    def ssl_domains(self) -> List[str]:
        return [
            domain
            for environment in self.enabled_environments() if environment.ssl
            for domain in environment.domains
        ]
