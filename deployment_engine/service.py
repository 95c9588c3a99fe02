# deployment_engine/service.py
"""Engine service - the operator actions, composed from the components."""

import logging
from typing import Callable, List, Optional, Union

from deployment_engine.certificates.manager import CertificateLifecycleManager, CertificatePassResult
from deployment_engine.composer.composer import StackComposer
from deployment_engine.core.errors import PreconditionError, ReloadRejected
from deployment_engine.core.models import CertificateRecord, RolloutRecord, ServiceKind
from deployment_engine.proxy.router import ProxyRouter, Route
from deployment_engine.rollout.controller import RolloutController
from deployment_engine.rollout.locks import EnvironmentLease
from deployment_engine.topology.models import Topology

logger = logging.getLogger(__name__)


class EngineService:
    """
    Orchestrates the operator actions.

    The topology is passed in through a provider so every action works on
    the configuration as it is now; live state is observed by the controller.
    """

    def __init__(
        self,
        topology_provider: Callable[[], Topology],
        composer: StackComposer,
        controller: RolloutController,
        router: ProxyRouter,
        certificates: CertificateLifecycleManager,
    ):
        self._topology = topology_provider
        self._composer = composer
        self._controller = controller
        self._router = router
        self._certificates = certificates

    # -------------------------
    # Rollouts
    # -------------------------

    def rollout(self, environment_name: str, lease: Optional[EnvironmentLease] = None) -> RolloutRecord:
        """
        Converge one environment to the topology, then refresh the routes.

        A disabled environment converges to nothing: its routes are dropped
        first, then its services are removed. When the routes cannot be
        refreshed after the services converged, the error is stored on the
        returned record.

        Args:
            environment_name: Environment to converge
            lease: Reservation from reserve_rollout(); released on every path
        """
        handed_over = False
        try:
            topology = self._topology()
            environment = topology.get(environment_name)

            if not environment.enabled:
                logger.info(f"[engine] '{environment_name}' is disabled, tearing it down")
                self._router.apply(topology, reason=f"{environment_name} disabled")
                handed_over = True
                return self._controller.rollout(environment_name, [], lease=lease)

            desired = self._composer.compose(environment)
            handed_over = True
            record = self._controller.rollout(environment_name, desired, lease=lease)
        finally:
            if lease is not None and not handed_over:
                self._controller.release(lease)

        try:
            self._router.apply(topology, reason=f"rollout {record.rollout_id}")
        except (PreconditionError, ReloadRejected) as e:
            logger.error(f"[engine] ❌ rollout {record.rollout_id} finished but routes were not applied: {e}")
            record.error_message = f"routes not applied: {e}"
            self._controller.save_record(record)
        return record

    def reserve_rollout(self, environment_name: str) -> EnvironmentLease:
        """
        Take the environment for a rollout that runs later (API background tasks).

        Raises:
            ConfigError: Unknown environment
            RolloutInProgressError: A rollout already holds the environment
        """
        self._topology().get(environment_name)
        return self._controller.begin(environment_name)

    def rollback(self, environment_name: str, kind: Union[str, ServiceKind]) -> RolloutRecord:
        self._topology().get(environment_name)
        return self._controller.rollback(environment_name, kind)

    def cancel(self, environment_name: str):
        return self._controller.cancel(environment_name)

    def status(self, environment_name: str) -> Optional[RolloutRecord]:
        return self._controller.status(environment_name)

    # -------------------------
    # Certificates / routes
    # -------------------------

    def certificate_pass(self) -> CertificatePassResult:
        return self._certificates.run_pass(self._topology())

    def certificates(self) -> List[CertificateRecord]:
        return self._certificates.records()

    def routes(self) -> List[Route]:
        return self._router.routes(self._topology())

    def render_routes(self) -> str:
        return self._router.render(self._topology())

    def apply_routes(self, reason: str = "operator") -> bool:
        return self._router.apply(self._topology(), reason=reason)
