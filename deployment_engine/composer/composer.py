# deployment_engine/composer/composer.py
"""Stack composer - turns one Environment into its ServiceSpecs."""

from typing import Dict, List, Optional

from deployment_engine.composer import catalogue
from deployment_engine.core.errors import ConfigError
from deployment_engine.core.models import (
    ServiceKind,
    ServiceSpec,
    UpdateOrder,
    make_identity,
)
from deployment_engine.rollout.planner import topological_order
from deployment_engine.topology.models import Environment, ServiceTier


class StackComposer:
    """
    Produces the ServiceSpecs of one environment.

    Rules:
    - web is always emitted
    - cache, worker tiers, scheduler and monitor only when effectively enabled
    - scheduler is clamped to exactly one instance
    - monitor requires at least one enabled worker tier
    """

    def compose(self, environment: Environment) -> List[ServiceSpec]:
        if not environment.image:
            raise ConfigError("no image reference", entity=f"environments.{environment.name}")

        services = environment.services
        cache_enabled = services.cache.effective_enabled
        cache_id = make_identity(environment.name, ServiceKind.CACHE)

        base_env: Dict[str, str] = {
            "APP_ENVIRONMENT": environment.name,
            **catalogue.cache_env(cache_enabled),
        }
        on_cache = (cache_id,) if cache_enabled else ()

        specs: List[ServiceSpec] = [self._web(environment, base_env)]

        if cache_enabled:
            specs.append(self._cache(environment, services.cache))

        worker_ids = []
        for kind, tier in (
            (ServiceKind.WORKER_DEFAULT, services.worker_default),
            (ServiceKind.WORKER_SECONDARY, services.worker_secondary),
        ):
            if tier.effective_enabled:
                specs.append(self._worker(environment, kind, tier, base_env, on_cache))
                worker_ids.append(make_identity(environment.name, kind))

        if services.scheduler.effective_enabled:
            specs.append(self._scheduler(environment, services.scheduler, base_env, on_cache))

        if services.monitor.effective_enabled:
            if not worker_ids:
                raise ConfigError(
                    "monitor is enabled but no worker tier is enabled",
                    entity=make_identity(environment.name, ServiceKind.MONITOR),
                )
            specs.append(self._monitor(environment, services.monitor, base_env, tuple(worker_ids)))

        # Raises ConfigError on cycles or dangling dependencies
        topological_order(specs)
        return specs

    # -------------------------
    # Per-kind builders
    # -------------------------

    def _web(self, environment: Environment, env: Dict[str, str]) -> ServiceSpec:
        web = environment.web
        return ServiceSpec(
            environment=environment.name,
            kind=ServiceKind.WEB,
            image=environment.image,
            replicas=web.replicas,
            command=catalogue.web_command(environment.app_module, web.workers, web.threads, web.timeout),
            env=_env_tuple(env),
            container_port=catalogue.WEB_CONTAINER_PORT,
            host_port_base=environment.port,
            health_check=catalogue.web_health_check(web.health_path),
            secrets_ref=environment.secrets_ref,
        )

    def _cache(self, environment: Environment, tier: ServiceTier) -> ServiceSpec:
        memory_limit = tier.memory_limit or catalogue.CACHE_DEFAULT_MEMORY
        return ServiceSpec(
            environment=environment.name,
            kind=ServiceKind.CACHE,
            image=tier.image or catalogue.CACHE_IMAGE,
            replicas=1,
            command=catalogue.cache_command(memory_limit),
            memory_limit=memory_limit,
            container_port=catalogue.CACHE_PORT,
            health_check=catalogue.CACHE_HEALTH_CHECK,
            # one cache per environment; a second would split the keyspace
            update_order=UpdateOrder.STOP_FIRST,
        )

    def _worker(
        self,
        environment: Environment,
        kind: ServiceKind,
        tier: ServiceTier,
        env: Dict[str, str],
        depends_on: tuple,
    ) -> ServiceSpec:
        queue = tier.queue or ("default" if kind == ServiceKind.WORKER_DEFAULT else "secondary")
        return ServiceSpec(
            environment=environment.name,
            kind=kind,
            image=tier.image or environment.image,
            replicas=tier.replicas,
            command=catalogue.worker_command(environment.app_module, queue, tier.concurrency),
            env=_env_tuple({**env, "CELERY_QUEUE": queue}),
            memory_limit=tier.memory_limit,
            health_check=catalogue.worker_health_check(environment.app_module, queue),
            depends_on=depends_on,
            secrets_ref=environment.secrets_ref,
        )

    def _scheduler(
        self,
        environment: Environment,
        tier: ServiceTier,
        env: Dict[str, str],
        depends_on: tuple,
    ) -> ServiceSpec:
        return ServiceSpec(
            environment=environment.name,
            kind=ServiceKind.SCHEDULER,
            image=tier.image or environment.image,
            # a second scheduler would double-fire scheduled work
            replicas=1,
            command=catalogue.scheduler_command(environment.app_module),
            env=_env_tuple(env),
            memory_limit=tier.memory_limit,
            health_check=catalogue.SCHEDULER_HEALTH_CHECK,
            depends_on=depends_on,
            update_order=UpdateOrder.STOP_FIRST,
            secrets_ref=environment.secrets_ref,
        )

    def _monitor(
        self,
        environment: Environment,
        tier: ServiceTier,
        env: Dict[str, str],
        depends_on: tuple,
    ) -> ServiceSpec:
        return ServiceSpec(
            environment=environment.name,
            kind=ServiceKind.MONITOR,
            image=tier.image or environment.image,
            replicas=1,
            command=catalogue.monitor_command(environment.app_module),
            env=_env_tuple(env),
            memory_limit=tier.memory_limit,
            container_port=catalogue.MONITOR_PORT,
            health_check=catalogue.MONITOR_HEALTH_CHECK,
            depends_on=depends_on,
            update_order=UpdateOrder.STOP_FIRST,
            secrets_ref=environment.secrets_ref,
        )


def _env_tuple(env: Dict[str, str]) -> tuple:
    return tuple(sorted(env.items()))


def compose(environment: Environment, composer: Optional[StackComposer] = None) -> List[ServiceSpec]:
    return (composer or StackComposer()).compose(environment)
