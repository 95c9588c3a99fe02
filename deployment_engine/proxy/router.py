# deployment_engine/proxy/router.py
"""
Proxy router.

Maps {domain -> environment -> web slots} into a reverse proxy configuration,
pushes it to the sink and hot-reloads it. Reloads are serialized: one in
flight, concurrent requests wait and are satisfied by the next reload.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from jinja2 import Environment as TemplateEnvironment
from jinja2 import FileSystemLoader, StrictUndefined

from deployment_engine.core.events import EventEmitter, NullEventEmitter
from deployment_engine.core.events_model import EngineEvent
from deployment_engine.core.repository import CertificateRepository
from deployment_engine.proxy.sink import ProxySink
from deployment_engine.topology.models import Topology

logger = logging.getLogger(__name__)


_TEMPLATES_DIR = Path(__file__).resolve().parent / "templates"
TEMPLATE_NAME = "nginx.conf.j2"


@dataclass(frozen=True)
class Upstream:
    name: str
    ports: Tuple[int, ...]


@dataclass(frozen=True)
class Route:
    """One domain's routing rule."""
    domain: str
    environment: str
    upstream: str
    ssl: bool  # requested in the topology
    https: bool  # certificate material present and current
    fullchain: Optional[str] = None
    privkey: Optional[str] = None


def _get_env() -> TemplateEnvironment:
    return TemplateEnvironment(
        loader=FileSystemLoader(str(_TEMPLATES_DIR)),
        undefined=StrictUndefined,
        trim_blocks=True,
        lstrip_blocks=True,
        keep_trailing_newline=True,
    )


class ReloadCoordinator:
    """
    Serializes reloads.

    Each request takes a ticket. A reload that starts after a request was
    made covers it, so requests queued behind an in-flight reload collapse
    into one follow-up reload. A failed reload covers nobody; the waiters
    retry.
    """

    def __init__(self, do_reload: Callable[[], None]):
        self._do_reload = do_reload
        self._cond = threading.Condition()
        self._requested = 0
        self._completed = 0
        self._in_flight = False
        self.reload_count = 0

    def request(self) -> bool:
        """
        Block until a reload that started after this call has completed.

        Returns:
            True if this caller performed the reload, False if it was coalesced
        """
        with self._cond:
            self._requested += 1
            ticket = self._requested

            while self._in_flight and self._completed < ticket:
                self._cond.wait()

            if self._completed >= ticket:
                return False

            self._in_flight = True
            target = self._requested

        succeeded = False
        try:
            self._do_reload()
            succeeded = True
        finally:
            with self._cond:
                self._in_flight = False
                if succeeded:
                    self._completed = max(self._completed, target)
                    self.reload_count += 1
                self._cond.notify_all()

        return True


class ProxyRouter:
    """Owns the reverse proxy configuration of the host."""

    def __init__(
        self,
        sink: ProxySink,
        certificate_repo: CertificateRepository,
        event_emitter: Optional[EventEmitter] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._sink = sink
        self._certificates = certificate_repo
        self._emitter = event_emitter or NullEventEmitter()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._template = _get_env().get_template(TEMPLATE_NAME)
        self._reloads = ReloadCoordinator(self._sink.reload)

        self._apply_lock = threading.Lock()
        self.active_config: Optional[str] = None

    # ============================================
    # ROUTES
    # ============================================

    def upstreams(self, topology: Topology) -> List[Upstream]:
        return [
            Upstream(
                name=self._upstream_name(topology.project, environment.name),
                ports=tuple(environment.port_range),
            )
            for environment in topology.enabled_environments()
        ]

    def routes(self, topology: Topology) -> List[Route]:
        """
        One route per domain of every enabled environment.

        An SSL domain gets HTTPS only once its certificate is servable;
        until then it is served over plain HTTP so the challenge can pass.
        """
        now = self._clock()
        certificates_dir = topology.proxy.certificates_dir.rstrip("/")
        routes = []

        for environment in topology.enabled_environments():
            upstream = self._upstream_name(topology.project, environment.name)
            for domain in environment.domains:
                https = False
                if environment.ssl:
                    record = self._certificates.get(domain)
                    https = record is not None and record.is_servable(now)

                routes.append(Route(
                    domain=domain,
                    environment=environment.name,
                    upstream=upstream,
                    ssl=environment.ssl,
                    https=https,
                    fullchain=f"{certificates_dir}/{domain}/fullchain.pem" if https else None,
                    privkey=f"{certificates_dir}/{domain}/privkey.pem" if https else None,
                ))

        return routes

    def render(self, topology: Topology) -> str:
        return self._template.render(
            project=topology.project,
            proxy=topology.proxy,
            upstreams=self.upstreams(topology),
            routes=self.routes(topology),
        )

    # ============================================
    # APPLY / RELOAD
    # ============================================

    def reconcile_routes(self, topology: Topology) -> str:
        """
        Render and install the configuration for a topology. Does not reload.

        Raises:
            ReloadRejected: Proxy refused it; the previously installed config stays active
            PreconditionError: Proxy unreachable
        """
        config_text = self.render(topology)

        with self._apply_lock:
            if config_text == self.active_config:
                logger.info("[proxy] routing configuration unchanged")
                return config_text

            self._sink.apply(config_text)
            self.active_config = config_text

        logger.info(f"[proxy] installed routes for {len(topology.domain_map())} domain(s)")
        return config_text

    def reload(self, reason: str = "manual") -> bool:
        """
        Hot-reload the proxy. Serialized and coalescing.

        Returns:
            True if this call performed a reload, False if a concurrent one covered it
        """
        performed = self._reloads.request()
        if performed:
            logger.info(f"[proxy] 🔄 reloaded ({reason})")
            self._emitter.emit([EngineEvent.proxy_reloaded(reason)])
        else:
            logger.info(f"[proxy] reload ({reason}) coalesced into a concurrent reload")
        return performed

    def apply(self, topology: Topology, reason: str = "topology") -> bool:
        """Install the routes of a topology and reload once."""
        self.reconcile_routes(topology)
        return self.reload(reason)

    @property
    def reload_count(self) -> int:
        return self._reloads.reload_count

    @staticmethod
    def _upstream_name(project: str, environment: str) -> str:
        return f"{project}_{environment}_web".replace("-", "_")
