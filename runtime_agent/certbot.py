# runtime_agent/certbot.py
"""certbot (HTTP-01 webroot) issuance and renewal."""

import logging
import subprocess
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


RATE_LIMITED = "rate-limited"
DOMAIN_VALIDATION_FAILED = "domain-validation-failed"
NETWORK_ERROR = "network-error"
UNKNOWN = "error"

_RATE_LIMIT_MARKERS = ("too many certificates", "ratelimited", "rate limit")
_VALIDATION_MARKERS = (
    "challenge failed",
    "unauthorized",
    "invalid response",
    "dns problem",
    "nxdomain",
    "connection refused",
    "incorrect validation",
)
_NETWORK_MARKERS = (
    "connection error",
    "failed to establish a new connection",
    "timed out",
    "temporary failure in name resolution",
    "max retries exceeded",
)


class CertificateRequestFailed(Exception):
    def __init__(self, reason: str, message: str):
        self.reason = reason
        self.message = message
        super().__init__(f"{reason}: {message}")


def classify_failure(output: str) -> str:
    """Map certbot output to a failure reason."""
    text = output.lower()
    if any(marker in text for marker in _RATE_LIMIT_MARKERS):
        return RATE_LIMITED
    # Validation before network: a failed challenge often mentions connections too
    if any(marker in text for marker in _VALIDATION_MARKERS):
        return DOMAIN_VALIDATION_FAILED
    if any(marker in text for marker in _NETWORK_MARKERS):
        return NETWORK_ERROR
    return UNKNOWN


def parse_enddate(output: str) -> datetime:
    """'notAfter=Jan  1 00:00:00 2027 GMT' -> aware datetime."""
    value = output.strip().split("=", 1)[-1]
    return datetime.strptime(value, "%b %d %H:%M:%S %Y %Z").replace(tzinfo=timezone.utc)


class CertbotRunner:
    """Runs certbot on the host, one domain (one lineage) at a time."""

    def __init__(
        self,
        live_dir: str = "/etc/letsencrypt/live",
        certbot_binary: str = "certbot",
        openssl_binary: str = "openssl",
        timeout: int = 120,
    ):
        self.live_dir = Path(live_dir)
        self.certbot_binary = certbot_binary
        self.openssl_binary = openssl_binary
        self.timeout = timeout

    def obtain(
        self,
        domain: str,
        webroot: str,
        email: Optional[str] = None,
        staging: bool = False,
    ) -> Dict[str, Any]:
        """
        Issue (no lineage yet) or renew (lineage exists) the certificate of a domain.

        The engine only asks when the certificate is due, so an existing
        lineage is always force-renewed.

        Raises:
            CertificateRequestFailed: With a classified reason
        """
        fullchain = self.live_dir / domain / "fullchain.pem"
        privkey = self.live_dir / domain / "privkey.pem"

        command: List[str] = [
            self.certbot_binary, "certonly",
            "--webroot", "-w", webroot,
            "-d", domain,
            "--cert-name", domain,
            "--non-interactive",
            "--agree-tos",
        ]
        command += ["--email", email] if email else ["--register-unsafely-without-email"]
        if staging:
            command.append("--staging")
        if fullchain.exists():
            command.append("--force-renewal")

        logger.info(f"[certs] {domain}: running certbot ({'renew' if fullchain.exists() else 'issue'})")
        output = self._run(command)
        logger.debug(output)

        expires_at = parse_enddate(
            self._run([self.openssl_binary, "x509", "-enddate", "-noout", "-in", str(fullchain)])
        )

        logger.info(f"[certs] ✅ {domain}: certificate valid until {expires_at.isoformat()}")
        return {
            "domain": domain,
            "expires_at": expires_at.isoformat(),
            "fullchain_path": str(fullchain),
            "privkey_path": str(privkey),
        }

    def _run(self, command: List[str]) -> str:
        try:
            result = subprocess.run(command, capture_output=True, text=True, timeout=self.timeout)
        except FileNotFoundError as e:
            raise CertificateRequestFailed(UNKNOWN, f"{command[0]} not found") from e
        except subprocess.TimeoutExpired as e:
            raise CertificateRequestFailed(NETWORK_ERROR, f"{command[0]} timed out after {self.timeout}s") from e

        output = f"{result.stdout}\n{result.stderr}".strip()
        if result.returncode != 0:
            reason = classify_failure(output)
            logger.warning(f"[certs] ❌ {command[0]} failed ({reason})")
            raise CertificateRequestFailed(reason, output[-2000:])

        return result.stdout
