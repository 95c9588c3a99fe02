# runtime_agent/probes.py
"""
Health probes for managed containers.

One probe per health check type:
- http:    GET against the published port (or the container IP)
- tcp:     plain connect
- command: exec inside the container, exit code 0 is healthy
- process: the container's main process is running
"""

import logging
import socket
from typing import Any, Dict, Optional

import requests

logger = logging.getLogger(__name__)


HEALTHY = "HEALTHY"
UNHEALTHY = "UNHEALTHY"
STARTING = "STARTING"


def check_http(host: str, port: int, path: str, timeout: float, label: str = "") -> bool:
    """
    Perform HTTP health check.

    Returns:
        True for any 2xx/3xx answer
    """
    url = f"http://{host}:{port}{path}"

    try:
        response = requests.get(url, timeout=timeout, allow_redirects=False)
        is_healthy = 200 <= response.status_code < 400

        if is_healthy:
            logger.debug(f"[{label}] ✅ HTTP check OK: {url} ({response.status_code})")
        else:
            logger.warning(f"[{label}] ❌ HTTP check FAIL: {url} returned {response.status_code}")

        return is_healthy

    except requests.exceptions.RequestException as e:
        logger.warning(f"[{label}] ❌ HTTP check error: {e}")
        return False


def check_tcp(host: str, port: int, timeout: float, label: str = "") -> bool:
    """Perform TCP health check."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.settimeout(timeout)
    try:
        result = sock.connect_ex((host, port))
    except OSError as e:
        logger.warning(f"[{label}] TCP check error: {e}")
        return False
    finally:
        sock.close()

    if result != 0:
        logger.warning(f"[{label}] TCP check FAIL: {host}:{port}")
    return result == 0


def check_command(container, command: str, label: str = "") -> bool:
    """Perform command-based health check (exec in container)."""
    exit_code, output = container.exec_run(command, demux=False)

    if exit_code != 0:
        text = output.decode("utf-8", errors="replace").strip() if output else ""
        logger.warning(f"[{label}] Command check FAIL: exit code {exit_code} {text[:200]}")
    return exit_code == 0


def probe_container(
    container,
    health_check: Optional[Dict[str, Any]],
    host_port: Optional[int] = None,
) -> str:
    """
    Probe one container once.

    Args:
        container: docker SDK container (already reloaded)
        health_check: Serialized HealthCheckDefinition, or None
        host_port: Port published on 127.0.0.1, if any

    Returns:
        HEALTHY, UNHEALTHY or STARTING
    """
    label = container.name
    status = container.status

    if status in ("created", "restarting"):
        return STARTING
    if status != "running":
        return UNHEALTHY

    if not health_check or health_check.get("type") == "process":
        return HEALTHY

    check_type = health_check.get("type")
    timeout = health_check.get("timeout_seconds", 5)

    if check_type == "command":
        healthy = check_command(container, health_check.get("command") or "true", label)
        return HEALTHY if healthy else UNHEALTHY

    if check_type not in ("http", "tcp"):
        logger.warning(f"[{label}] Unknown health check type: {check_type}")
        return UNHEALTHY

    # Published port first; otherwise the container's address on its network
    if host_port:
        host, port = "127.0.0.1", host_port
    else:
        host, port = _container_ip(container), health_check.get("port")
        if host is None:
            return STARTING

    if check_type == "http":
        healthy = check_http(host, port, health_check.get("path") or "/", timeout, label)
    else:
        healthy = check_tcp(host, port, timeout, label)

    return HEALTHY if healthy else UNHEALTHY


def _container_ip(container) -> Optional[str]:
    networks = container.attrs.get("NetworkSettings", {}).get("Networks", {})
    for network in networks.values():
        if network.get("IPAddress"):
            return network["IPAddress"]
    return None
