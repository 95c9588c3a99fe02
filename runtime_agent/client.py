# runtime_agent/client.py
"""Runtime Agent client for instance, proxy and certificate requests."""

import requests
from typing import Dict, Any, List, Optional
import logging

logger = logging.getLogger(__name__)


class AgentUnavailable(RuntimeError):
    """Agent could not be reached or did not answer in time."""
    pass


class AgentRequestError(RuntimeError):
    """Agent answered with an error status."""

    def __init__(self, status_code: int, detail: Any):
        self.status_code = status_code
        self.detail = detail
        super().__init__(f"agent returned {status_code}: {detail}")


class RuntimeAgentClient:
    """Client for communicating with Runtime Agent."""

    def __init__(self, agent_url: str, timeout: int = 30):
        """
        Initialize client.

        Args:
            agent_url: Base URL of runtime agent (e.g., "http://127.0.0.1:9000")
            timeout: Request timeout in seconds
        """
        self.base_url = agent_url.rstrip('/')
        self.timeout = timeout
        self._session = requests.Session()

    # -------------------------
    # Transport
    # -------------------------

    def _request(
        self,
        method: str,
        path: str,
        timeout: Optional[float] = None,
        **kwargs,
    ) -> Any:
        url = f"{self.base_url}{path}"
        try:
            response = self._session.request(
                method,
                url,
                timeout=timeout or self.timeout,
                **kwargs,
            )
        except requests.exceptions.Timeout as e:
            raise AgentUnavailable(f"{method} {url} timed out after {timeout or self.timeout}s") from e
        except requests.exceptions.ConnectionError as e:
            raise AgentUnavailable(f"Cannot connect to runtime agent at {self.base_url}") from e

        if response.status_code >= 400:
            try:
                detail = response.json().get('detail', response.text)
            except ValueError:
                detail = response.text
            raise AgentRequestError(response.status_code, detail)

        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    # -------------------------
    # Agent
    # -------------------------

    def health_check(self) -> bool:
        """
        Check if agent is healthy.

        Returns:
            True if healthy, False otherwise
        """
        try:
            self._request("GET", "/health", timeout=5)
            return True
        except (AgentUnavailable, AgentRequestError) as e:
            logger.error(f"Health check failed: {e}")
            return False

    # -------------------------
    # Instances
    # -------------------------

    def list_instances(self, project: str, environment: str) -> List[Dict[str, Any]]:
        """Live instances of one environment."""
        data = self._request("GET", f"/projects/{project}/environments/{environment}/instances")
        return data.get("instances", [])

    def create_instance(
        self,
        project: str,
        spec: Dict[str, Any],
        slot: int,
        fingerprint: str,
    ) -> Dict[str, Any]:
        """
        Start one instance of a service group.

        Args:
            project: Project name (container and network prefix)
            spec: Serialized ServiceSpec
            slot: Slot number within the group
            fingerprint: Spec fingerprint stored on the container

        Returns:
            Instance dict
        """
        environment = spec["environment"]
        logger.info(f"[{environment}/{spec['kind']}] Creating instance in slot {slot} via {self.base_url}")

        data = self._request(
            "POST",
            f"/projects/{project}/environments/{environment}/instances",
            json={"spec": spec, "slot": slot, "fingerprint": fingerprint},
        )

        logger.info(f"[{environment}/{spec['kind']}] ✅ Instance created: {data['instance_id'][:12]}")
        return data

    def remove_instance(self, instance_id: str) -> None:
        """Stop and remove an instance. Removing a missing instance is not an error."""
        try:
            self._request("DELETE", f"/instances/{instance_id}")
        except AgentRequestError as e:
            if e.status_code != 404:
                raise
            logger.info(f"Instance {instance_id[:12]} already gone")

    def instance_health(self, instance_id: str) -> Dict[str, Any]:
        """Run the instance's health probe once."""
        return self._request("GET", f"/instances/{instance_id}/health")

    # -------------------------
    # Proxy
    # -------------------------

    def put_proxy_config(self, config_text: str) -> None:
        """Validate and install a routing configuration without activating it."""
        self._request(
            "PUT",
            "/proxy/config",
            data=config_text.encode("utf-8"),
            headers={"Content-Type": "text/plain"},
        )

    def reload_proxy(self) -> None:
        """Hot-reload the proxy with the installed configuration."""
        self._request("POST", "/proxy/reload")

    # -------------------------
    # Certificates
    # -------------------------

    def request_certificate(
        self,
        domain: str,
        webroot: str,
        email: Optional[str] = None,
        staging: bool = False,
    ) -> Dict[str, Any]:
        """
        Issue or renew the certificate of one domain (HTTP-01 over the webroot).

        Returns:
            Dict with expires_at, fullchain_path and privkey_path
        """
        return self._request(
            "POST",
            f"/certificates/{domain}",
            json={"webroot": webroot, "email": email, "staging": staging},
            timeout=max(self.timeout, 180),
        )
