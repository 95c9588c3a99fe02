# deployment_engine/proxy/sink.py
"""Reverse-proxy sink - where rendered routing configuration goes."""

import logging
from abc import ABC, abstractmethod

from runtime_agent.client import AgentRequestError, AgentUnavailable, RuntimeAgentClient
from deployment_engine.core.errors import PreconditionError, ReloadRejected

logger = logging.getLogger(__name__)


class ProxySink(ABC):
    """Abstract reverse proxy."""

    @abstractmethod
    def apply(self, config_text: str) -> None:
        """
        Validate and install a configuration. Does not activate it.

        Raises:
            ReloadRejected: Proxy refused the configuration; the previous one stays installed
            PreconditionError: Proxy unreachable
        """
        raise NotImplementedError

    @abstractmethod
    def reload(self) -> None:
        """Hot-reload the installed configuration (never stop/start)."""
        raise NotImplementedError


class AgentProxySink(ProxySink):
    """nginx on the host, driven through the runtime agent."""

    def __init__(self, client: RuntimeAgentClient):
        self._client = client

    def apply(self, config_text: str) -> None:
        try:
            self._client.put_proxy_config(config_text)
        except AgentRequestError as e:
            if e.status_code == 422:
                raise ReloadRejected(f"proxy rejected configuration: {e.detail}") from e
            raise PreconditionError(f"proxy unavailable: {e}") from e
        except AgentUnavailable as e:
            raise PreconditionError(f"proxy unavailable: {e}") from e

    def reload(self) -> None:
        try:
            self._client.reload_proxy()
        except AgentRequestError as e:
            if e.status_code == 422:
                raise ReloadRejected(f"proxy refused reload: {e.detail}") from e
            raise PreconditionError(f"proxy unavailable: {e}") from e
        except AgentUnavailable as e:
            raise PreconditionError(f"proxy unavailable: {e}") from e
