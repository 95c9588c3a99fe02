# deployment_engine/certificates/manager.py
"""Certificate lifecycle manager - issue, renew, reload once per pass."""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from deployment_engine.certificates.authority import CertificateAuthority
from deployment_engine.core.errors import RenewalError
from deployment_engine.core.events import EventEmitter, NullEventEmitter
from deployment_engine.core.events_model import EngineEvent
from deployment_engine.core.models import CertificateRecord
from deployment_engine.core.repository import CertificateRepository
from deployment_engine.proxy.router import ProxyRouter
from deployment_engine.topology.models import Topology

logger = logging.getLogger(__name__)


DEFAULT_RENEWAL_THRESHOLD = timedelta(days=30)


@dataclass
class CertificatePassResult:
    """What one pass did, per domain."""
    issued: List[str] = field(default_factory=list)
    renewed: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)  # domain -> reason
    skipped: List[str] = field(default_factory=list)
    reloaded: bool = False

    @property
    def succeeded(self) -> List[str]:
        return self.issued + self.renewed

    @property
    def is_success(self) -> bool:
        return not self.failed

    def to_dict(self) -> Dict[str, object]:
        return {
            "issued": list(self.issued),
            "renewed": list(self.renewed),
            "failed": dict(self.failed),
            "skipped": list(self.skipped),
            "reloaded": self.reloaded,
        }


class CertificateLifecycleManager:
    """
    Owns TLS material for every SSL domain of the enabled environments.

    A failed attempt never touches the last good material; the next
    scheduled pass is the retry.
    """

    def __init__(
        self,
        authority: CertificateAuthority,
        certificate_repo: CertificateRepository,
        router: ProxyRouter,
        event_emitter: Optional[EventEmitter] = None,
        renewal_threshold: timedelta = DEFAULT_RENEWAL_THRESHOLD,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._authority = authority
        self._certificates = certificate_repo
        self._router = router
        self._emitter = event_emitter or NullEventEmitter()
        self._threshold = renewal_threshold
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def run_pass(self, topology: Topology) -> CertificatePassResult:
        """
        Issue or renew every due certificate, then reload the proxy once.

        Raises:
            ReloadRejected: The proxy refused the routes after a successful renewal
            PreconditionError: The proxy was unreachable after a successful renewal
        """
        result = CertificatePassResult()
        domains = topology.ssl_domains()
        logger.info(f"[certs] pass started for {len(domains)} SSL domain(s)")

        for domain in domains:
            self._process_domain(domain, result)

        if result.succeeded:
            # New material only becomes visible through the routes
            self._router.reconcile_routes(topology)
            self._router.reload(reason=f"certificates: {', '.join(result.succeeded)}")
            result.reloaded = True

        logger.info(
            f"[certs] pass finished: issued={len(result.issued)} renewed={len(result.renewed)} "
            f"failed={len(result.failed)} skipped={len(result.skipped)} reloaded={result.reloaded}"
        )
        return result

    def _process_domain(self, domain: str, result: CertificatePassResult) -> None:
        now = self._clock()
        record = self._certificates.get(domain) or CertificateRecord(domain=domain)

        action = record.due_action(now, self._threshold)
        if action is None:
            logger.debug(f"[certs] {domain}: valid until {record.expires_at.isoformat()}, skipping")
            result.skipped.append(domain)
            return

        logger.info(f"[certs] {domain}: attempting {action}")

        try:
            material = self._authority.obtain(domain)
        except RenewalError as e:
            record.record_failure(e.reason, str(e), now)
            self._certificates.save(record)
            result.failed[domain] = e.reason

            still_serving = "keeps serving current certificate" if record.is_servable(now) else "has no servable certificate"
            logger.warning(f"[certs] ❌ {domain}: {action} failed ({e.reason}); {still_serving}")
            self._emitter.emit([EngineEvent.certificate_failed(record)])
            return

        record.record_success(material, now)
        self._certificates.save(record)

        if action == "issue":
            result.issued.append(domain)
        else:
            result.renewed.append(domain)

        logger.info(f"[certs] ✅ {domain}: {action} succeeded, expires {material.expires_at.isoformat()}")
        self._emitter.emit([EngineEvent.certificate_obtained(record)])

    def records(self) -> List[CertificateRecord]:
        return sorted(self._certificates.list_all(), key=lambda r: r.domain)
