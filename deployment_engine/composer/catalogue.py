# deployment_engine/composer/catalogue.py
"""Service catalogue - container defaults for every workload kind."""

from typing import Dict, Tuple

from deployment_engine.core.models import HealthCheckDefinition, ServiceKind


WEB_CONTAINER_PORT = 8000
MONITOR_PORT = 5555
CACHE_PORT = 6379

CACHE_IMAGE = "redis:7-alpine"
CACHE_DEFAULT_MEMORY = "256mb"


# ============================================
# HEALTH CHECKS
# ============================================

def web_health_check(path: str) -> HealthCheckDefinition:
    return HealthCheckDefinition(
        type="http",
        path=path,
        port=WEB_CONTAINER_PORT,
        interval_seconds=5,
        timeout_seconds=5,
        retries=3,
        initial_delay_seconds=5,
    )


CACHE_HEALTH_CHECK = HealthCheckDefinition(
    type="command",
    command="redis-cli ping",
    interval_seconds=2,
    timeout_seconds=3,
    retries=3,
)


def worker_health_check(app_module: str, queue: str) -> HealthCheckDefinition:
    return HealthCheckDefinition(
        type="command",
        command=f"sh -c 'celery -A {app_module} inspect ping -d {queue}@$HOSTNAME'",
        interval_seconds=10,
        timeout_seconds=10,
        retries=3,
        initial_delay_seconds=5,
    )


SCHEDULER_HEALTH_CHECK = HealthCheckDefinition(
    type="process",
    interval_seconds=5,
    timeout_seconds=5,
    retries=3,
    initial_delay_seconds=3,
)


MONITOR_HEALTH_CHECK = HealthCheckDefinition(
    type="http",
    path="/healthcheck",
    port=MONITOR_PORT,
    interval_seconds=5,
    timeout_seconds=5,
    retries=3,
    initial_delay_seconds=5,
)


# ============================================
# COMMANDS
# ============================================

def web_command(app_module: str, workers: int, threads: int, timeout: int) -> Tuple[str, ...]:
    return (
        "gunicorn", f"{app_module}.wsgi:application",
        "--bind", f"0.0.0.0:{WEB_CONTAINER_PORT}",
        "--workers", str(workers),
        "--threads", str(threads),
        "--timeout", str(timeout),
        "--access-logfile", "-",
    )


def cache_command(memory_limit: str) -> Tuple[str, ...]:
    return (
        "redis-server",
        "--maxmemory", memory_limit,
        "--maxmemory-policy", "allkeys-lru",
        "--appendonly", "no",
    )


def worker_command(app_module: str, queue: str, concurrency: int) -> Tuple[str, ...]:
    return (
        "celery", "-A", app_module, "worker",
        "-Q", queue,
        "-c", str(concurrency),
        "-n", f"{queue}@%h",
        "--loglevel=INFO",
    )


def scheduler_command(app_module: str) -> Tuple[str, ...]:
    return (
        "celery", "-A", app_module, "beat",
        "--loglevel=INFO",
        "--schedule", "/tmp/celerybeat-schedule",
    )


def monitor_command(app_module: str) -> Tuple[str, ...]:
    return (
        "celery", "-A", app_module, "flower",
        f"--port={MONITOR_PORT}",
    )


# ============================================
# ENVIRONMENT VARIABLES
# ============================================

def cache_env(cache_enabled: bool) -> Dict[str, str]:
    """Connection settings; the cache container answers on its service alias."""
    if not cache_enabled:
        return {}
    alias = ServiceKind.CACHE.value
    return {
        "CACHE_URL": f"redis://{alias}:{CACHE_PORT}/1",
        "CELERY_BROKER_URL": f"redis://{alias}:{CACHE_PORT}/0",
        "CELERY_RESULT_BACKEND": f"redis://{alias}:{CACHE_PORT}/0",
    }
