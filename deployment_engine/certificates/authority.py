# deployment_engine/certificates/authority.py
"""Certificate authority collaborator."""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Optional

from runtime_agent.client import AgentRequestError, AgentUnavailable, RuntimeAgentClient
from deployment_engine.core.errors import RenewalError
from deployment_engine.core.models import CertificateMaterial

logger = logging.getLogger(__name__)


KNOWN_REASONS = {
    RenewalError.RATE_LIMITED,
    RenewalError.DOMAIN_VALIDATION_FAILED,
    RenewalError.NETWORK_ERROR,
}


class CertificateAuthority(ABC):
    """Issues and renews TLS certificates, one domain at a time."""

    @abstractmethod
    def obtain(self, domain: str) -> CertificateMaterial:
        """
        Issue or renew the certificate of a domain.

        Raises:
            RenewalError: With reason rate-limited, domain-validation-failed,
                network-error or error
        """
        raise NotImplementedError


class AgentCertificateAuthority(CertificateAuthority):
    """ACME (certbot, HTTP-01 webroot) on the host, through the runtime agent."""

    def __init__(
        self,
        client: RuntimeAgentClient,
        webroot: str,
        email: Optional[str] = None,
        staging: bool = False,
    ):
        self._client = client
        self._webroot = webroot
        self._email = email
        self._staging = staging

    def obtain(self, domain: str) -> CertificateMaterial:
        try:
            data = self._client.request_certificate(
                domain,
                webroot=self._webroot,
                email=self._email,
                staging=self._staging,
            )
        except AgentUnavailable as e:
            raise RenewalError(domain, RenewalError.NETWORK_ERROR, str(e)) from e
        except AgentRequestError as e:
            reason, message = RenewalError.UNKNOWN, str(e.detail)
            if isinstance(e.detail, dict):
                reason = e.detail.get("reason", reason)
                message = e.detail.get("message", message)
            if reason not in KNOWN_REASONS:
                reason = RenewalError.UNKNOWN
            raise RenewalError(domain, reason, message) from e

        try:
            expires_at = datetime.fromisoformat(data["expires_at"])
        except (KeyError, TypeError, ValueError) as e:
            raise RenewalError(
                domain, RenewalError.UNKNOWN, f"agent answered without a usable expires_at: {e!r}"
            ) from e
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)

        return CertificateMaterial(
            domain=domain,
            expires_at=expires_at,
            fullchain_path=data.get("fullchain_path"),
            privkey_path=data.get("privkey_path"),
        )
