#tests\conftest.py

"""Pytest configuration and fixtures."""

import copy
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

import pytest

from deployment_engine.certificates.authority import CertificateAuthority
from deployment_engine.certificates.manager import CertificateLifecycleManager
from deployment_engine.composer.composer import StackComposer
from deployment_engine.config import EngineSettings
from deployment_engine.container import build_container
from deployment_engine.core.errors import ControlPlaneError, PreconditionError, ReloadRejected, RenewalError
from deployment_engine.core.events import MultiEventEmitter, PrintEventEmitter
from deployment_engine.core.models import (
    CertificateMaterial,
    HealthStatus,
    Instance,
    ServiceSpec,
)
from deployment_engine.infrastructure.memory.repository import (
    InMemoryCertificateRepository,
    InMemoryRevisionRepository,
    InMemoryRolloutRepository,
)
from deployment_engine.proxy.router import ProxyRouter
from deployment_engine.proxy.sink import ProxySink
from deployment_engine.rollout.control_plane import ControlPlane
from deployment_engine.rollout.controller import RolloutController
from deployment_engine.topology.resolver import resolve


NOW = datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)


# ============================================
# FAKE COLLABORATORS
# ============================================

class FakeClock:
    """Monotonic clock advanced by the controller's sleep calls."""

    def __init__(self):
        self.now = 0.0
        self._lock = threading.Lock()

    def __call__(self) -> float:
        with self._lock:
            return self.now

    def advance(self, seconds: float) -> None:
        with self._lock:
            self.now += seconds


class FakeControlPlane(ControlPlane):
    """
    In-memory container runtime.

    New instances report HEALTHY on the first probe unless their identity is
    listed in `never_healthy`. Every mutation is recorded in `calls` and the
    healthy count per identity after each mutation in `snapshots`.
    """

    def __init__(self):
        self.instances: Dict[str, Instance] = {}
        self.calls: List[tuple] = []
        self.snapshots: List[Dict[str, int]] = []
        self.peak: Dict[str, int] = {}

        self.never_healthy = set()
        self.fail_create = set()
        self.unreachable = False
        self.on_create: Optional[Callable[[ServiceSpec, int], None]] = None

        self._counter = 0
        self._lock = threading.Lock()

    # -------------------------
    # ControlPlane
    # -------------------------

    def observe(self, environment: str) -> List[Instance]:
        if self.unreachable:
            raise PreconditionError("control plane unavailable: connection refused")
        with self._lock:
            return [
                copy.copy(i) for i in self.instances.values() if i.environment == environment
            ]

    def create_instance(self, spec: ServiceSpec, slot: int) -> Instance:
        if self.on_create is not None:
            self.on_create(spec, slot)
        if spec.identity in self.fail_create:
            raise ControlPlaneError(f"{spec.identity}: image pull failed")

        with self._lock:
            self._counter += 1
            instance = Instance(
                instance_id=f"{spec.kind.value}-{self._counter:04d}",
                environment=spec.environment,
                kind=spec.kind,
                slot=slot,
                image=spec.image,
                fingerprint=spec.fingerprint,
                health=HealthStatus.STARTING if spec.identity in self.never_healthy else HealthStatus.HEALTHY,
                host_port=spec.host_port_base + slot if spec.host_port_base is not None else None,
            )
            self.instances[instance.instance_id] = instance
            self.calls.append(("create", spec.identity, slot, spec.image))
            self._snapshot()
        return copy.copy(instance)

    def remove_instance(self, instance_id: str) -> None:
        with self._lock:
            instance = self.instances.pop(instance_id, None)
            if instance is not None:
                self.calls.append(("remove", instance.identity, instance.slot, instance.image))
                self._snapshot()

    def instance_health(self, instance_id: str) -> HealthStatus:
        with self._lock:
            instance = self.instances.get(instance_id)
            return instance.health if instance else HealthStatus.UNHEALTHY

    # -------------------------
    # Test helpers
    # -------------------------

    def seed(self, spec: ServiceSpec, slot: int, image: Optional[str] = None, fingerprint: Optional[str] = None) -> Instance:
        """Place a running instance without recording a call."""
        with self._lock:
            self._counter += 1
            instance = Instance(
                instance_id=f"seed-{spec.kind.value}-{self._counter:04d}",
                environment=spec.environment,
                kind=spec.kind,
                slot=slot,
                image=image or spec.image,
                fingerprint=fingerprint or spec.fingerprint,
                health=HealthStatus.HEALTHY,
            )
            self.instances[instance.instance_id] = instance
            self._snapshot()
        return instance

    def live(self, identity: str) -> List[Instance]:
        with self._lock:
            return sorted(
                (i for i in self.instances.values() if i.identity == identity),
                key=lambda i: i.slot,
            )

    def creates(self, identity: Optional[str] = None) -> List[tuple]:
        return [c for c in self.calls if c[0] == "create" and (identity is None or c[1] == identity)]

    def _snapshot(self) -> None:
        counts: Dict[str, int] = {}
        totals: Dict[str, int] = {}
        for instance in self.instances.values():
            totals[instance.identity] = totals.get(instance.identity, 0) + 1
            if instance.health == HealthStatus.HEALTHY:
                counts[instance.identity] = counts.get(instance.identity, 0) + 1
        self.snapshots.append(counts)
        for identity, total in totals.items():
            self.peak[identity] = max(self.peak.get(identity, 0), total)


class FakeProxySink(ProxySink):
    """Records installed configurations and reloads."""

    def __init__(self):
        self.installed: Optional[str] = None
        self.applied: List[str] = []
        self.reloads = 0
        self.reject = False
        self.unreachable = False
        self.reload_delay: Optional[threading.Event] = None

    def apply(self, config_text: str) -> None:
        if self.unreachable:
            raise PreconditionError("proxy unavailable")
        if self.reject:
            raise ReloadRejected("proxy rejected configuration: unexpected '}' in nginx.conf:42")
        self.applied.append(config_text)
        self.installed = config_text

    def reload(self) -> None:
        if self.unreachable:
            raise PreconditionError("proxy unavailable")
        if self.reload_delay is not None:
            self.reload_delay.wait(timeout=5)
        self.reloads += 1


class FakeCertificateAuthority(CertificateAuthority):
    """Issues certificates valid for 90 days, or fails with a preset reason per domain."""

    def __init__(self, clock=lambda: NOW):
        self.failures: Dict[str, str] = {}
        self.requests: List[str] = []
        self._clock = clock

    def obtain(self, domain: str) -> CertificateMaterial:
        self.requests.append(domain)
        reason = self.failures.get(domain)
        if reason:
            raise RenewalError(domain, reason, "simulated")
        return CertificateMaterial(
            domain=domain,
            expires_at=self._clock() + timedelta(days=90),
            fullchain_path=f"/etc/letsencrypt/live/{domain}/fullchain.pem",
            privkey_path=f"/etc/letsencrypt/live/{domain}/privkey.pem",
        )


# ============================================
# CONFIGURATION
# ============================================

def make_raw_config(**production_overrides) -> dict:
    """Two environments on one host: staging and production."""
    production = {
        "enabled": True,
        "domain": "app.example.com",
        "ssl": True,
        "port": 8100,
        "image": "registry.example.com/app:v1",
        "web": {"replicas": 2},
        "services": {
            "cache": {"enabled": True},
            "worker_default": {"enabled": True, "replicas": 1, "concurrency": 4},
            "scheduler": {"enabled": False},
        },
    }
    production.update(production_overrides)

    return {
        "project": "shop",
        "environments": {
            "production": production,
            "staging": {
                "enabled": True,
                "domain": "staging.example.com",
                "ssl": False,
                "port": 8200,
                "image": "registry.example.com/app:v1",
                "services": {"cache": {"enabled": True}},
            },
        },
    }


@pytest.fixture
def raw_config():
    return make_raw_config()


@pytest.fixture
def topology(raw_config):
    return resolve(raw_config)


@pytest.fixture
def composer():
    return StackComposer()


@pytest.fixture
def production_specs(topology, composer):
    return composer.compose(topology.get("production"))


# ============================================
# ENGINE COMPONENTS
# ============================================

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def control_plane():
    return FakeControlPlane()


@pytest.fixture
def rollout_repo():
    return InMemoryRolloutRepository()


@pytest.fixture
def revision_repo():
    return InMemoryRevisionRepository()


@pytest.fixture
def certificate_repo():
    return InMemoryCertificateRepository()


@pytest.fixture
def events():
    return PrintEventEmitter()


@pytest.fixture
def controller(control_plane, rollout_repo, revision_repo, events, clock):
    return RolloutController(
        control_plane=control_plane,
        rollout_repo=rollout_repo,
        revision_repo=revision_repo,
        event_emitter=MultiEventEmitter([events]),
        health_timeout_seconds=10,
        health_poll_interval=1,
        max_parallel=4,
        sleep=clock.advance,
        clock=clock,
    )


@pytest.fixture
def proxy_sink():
    return FakeProxySink()


@pytest.fixture
def router(proxy_sink, certificate_repo, events):
    return ProxyRouter(
        sink=proxy_sink,
        certificate_repo=certificate_repo,
        event_emitter=events,
        clock=lambda: NOW,
    )


@pytest.fixture
def authority():
    return FakeCertificateAuthority()


@pytest.fixture
def certificate_manager(authority, certificate_repo, router, events):
    return CertificateLifecycleManager(
        authority=authority,
        certificate_repo=certificate_repo,
        router=router,
        event_emitter=events,
        clock=lambda: NOW,
    )


@pytest.fixture
def engine_settings():
    return EngineSettings(
        storage="memory",
        health_timeout_seconds=5,
        health_poll_interval=0,
        max_parallel=4,
    )


@pytest.fixture
def container(engine_settings, topology, control_plane, proxy_sink, authority):
    """Fully wired engine over the fake collaborators."""
    return build_container(
        settings=engine_settings,
        topology=topology,
        control_plane=control_plane,
        proxy_sink=proxy_sink,
        authority=authority,
        repositories=(
            InMemoryRolloutRepository(),
            InMemoryRevisionRepository(),
            InMemoryCertificateRepository(),
        ),
    )


@pytest.fixture
def make_config():
    """Factory for raw configurations with production overrides."""
    return make_raw_config
