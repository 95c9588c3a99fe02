#deployment_engine\container.py

"""Dependency injection container - wires all services together."""

from dataclasses import dataclass, field
from datetime import timedelta
from typing import Optional

from runtime_agent.client import RuntimeAgentClient

from deployment_engine.config import EngineSettings, get_engine_settings
from deployment_engine.core.events import MultiEventEmitter, PrintEventEmitter
from deployment_engine.core.repository import (
    CertificateRepository,
    RevisionRepository,
    RolloutRepository,
)
from deployment_engine.topology.loader import load_topology
from deployment_engine.topology.models import Topology
from deployment_engine.composer.composer import StackComposer
from deployment_engine.rollout.control_plane import AgentControlPlane, ControlPlane
from deployment_engine.rollout.controller import RolloutController
from deployment_engine.proxy.router import ProxyRouter
from deployment_engine.proxy.sink import AgentProxySink, ProxySink
from deployment_engine.certificates.authority import AgentCertificateAuthority, CertificateAuthority
from deployment_engine.certificates.manager import CertificateLifecycleManager
from deployment_engine.service import EngineService


@dataclass
class Container:
    settings: EngineSettings
    topology: Topology

    rollout_repository: RolloutRepository
    revision_repository: RevisionRepository
    certificate_repository: CertificateRepository

    emitters: MultiEventEmitter
    composer: StackComposer
    controller: RolloutController
    router: ProxyRouter
    certificates: CertificateLifecycleManager

    service: EngineService = field(init=False)

    def __post_init__(self):
        self.service = EngineService(
            topology_provider=lambda: self.topology,
            composer=self.composer,
            controller=self.controller,
            router=self.router,
            certificates=self.certificates,
        )

    def reload_topology(self) -> Topology:
        """Re-read the topology file; live state is always observed fresh anyway."""
        self.topology = load_topology(self.settings.topology_path)
        return self.topology


# ============================================
# REPOSITORIES
# ============================================

def build_repositories(settings: EngineSettings):
    if settings.storage == "memory":
        from deployment_engine.infrastructure.memory.repository import (
            InMemoryCertificateRepository,
            InMemoryRevisionRepository,
            InMemoryRolloutRepository,
        )
        return (
            InMemoryRolloutRepository(),
            InMemoryRevisionRepository(),
            InMemoryCertificateRepository(),
        )

    from deployment_engine.infrastructure.postgres.database import get_session_factory
    from deployment_engine.infrastructure.postgres.repository import (
        PostgresCertificateRepository,
        PostgresRevisionRepository,
        PostgresRolloutRepository,
    )

    session_factory = get_session_factory()
    return (
        PostgresRolloutRepository(session_factory),
        PostgresRevisionRepository(session_factory),
        PostgresCertificateRepository(session_factory),
    )


# ============================================
# CONTAINER
# ============================================

def build_container(
    settings: Optional[EngineSettings] = None,
    topology: Optional[Topology] = None,
    control_plane: Optional[ControlPlane] = None,
    proxy_sink: Optional[ProxySink] = None,
    authority: Optional[CertificateAuthority] = None,
    repositories: Optional[tuple] = None,
) -> Container:
    """
    Wire the engine. Collaborators default to the runtime agent at settings.agent_url.

    Args:
        settings: Engine settings (environment by default)
        topology: Resolved topology (loaded from settings.topology_path by default)
        control_plane, proxy_sink, authority: Collaborator overrides
        repositories: (rollouts, revisions, certificates) override
    """
    settings = settings or get_engine_settings()
    topology = topology or load_topology(settings.topology_path)

    client = RuntimeAgentClient(settings.agent_url, timeout=settings.agent_timeout)

    rollout_repository, revision_repository, certificate_repository = (
        repositories or build_repositories(settings)
    )

    emitters = MultiEventEmitter([
        PrintEventEmitter()
    ])

    controller = RolloutController(
        control_plane=control_plane or AgentControlPlane(client, project=topology.project),
        rollout_repo=rollout_repository,
        revision_repo=revision_repository,
        event_emitter=emitters,
        health_timeout_seconds=settings.health_timeout_seconds,
        health_poll_interval=settings.health_poll_interval,
        max_parallel=settings.max_parallel,
    )

    router = ProxyRouter(
        sink=proxy_sink or AgentProxySink(client),
        certificate_repo=certificate_repository,
        event_emitter=emitters,
    )

    certificates = CertificateLifecycleManager(
        authority=authority or AgentCertificateAuthority(
            client,
            webroot=topology.proxy.acme_webroot,
            email=settings.acme_email,
            staging=settings.acme_staging,
        ),
        certificate_repo=certificate_repository,
        router=router,
        event_emitter=emitters,
        renewal_threshold=timedelta(days=settings.renewal_threshold_days),
    )

    return Container(
        settings=settings,
        topology=topology,
        rollout_repository=rollout_repository,
        revision_repository=revision_repository,
        certificate_repository=certificate_repository,
        emitters=emitters,
        composer=StackComposer(),
        controller=controller,
        router=router,
        certificates=certificates,
    )
