#tests\test_planner.py

"""Test rollout planning and dependency ordering."""

from dataclasses import replace

import pytest

from deployment_engine.core.errors import ConfigError
from deployment_engine.core.models import (
    HealthStatus,
    Instance,
    ServiceKind,
    ServiceSpec,
    UpdateOrder,
)
from deployment_engine.rollout.planner import (
    OperationType,
    build_plan,
    classify,
    topological_order,
)


def spec(kind: ServiceKind, depends_on=(), replicas=1, image="app:v1", environment="production", **kwargs):
    return ServiceSpec(
        environment=environment,
        kind=kind,
        image=image,
        replicas=replicas,
        depends_on=tuple(depends_on),
        **kwargs,
    )


def instance(s: ServiceSpec, slot: int, fingerprint=None, instance_id=None) -> Instance:
    return Instance(
        instance_id=instance_id or f"{s.kind.value}-{slot}",
        environment=s.environment,
        kind=s.kind,
        slot=slot,
        image=s.image,
        fingerprint=fingerprint or s.fingerprint,
        health=HealthStatus.HEALTHY,
    )


class TestTopologicalOrder:
    """Test dependency ordering."""

    def test_dependencies_first(self):
        monitor = spec(ServiceKind.MONITOR, ["production/worker-default"])
        worker = spec(ServiceKind.WORKER_DEFAULT, ["production/cache"])
        cache = spec(ServiceKind.CACHE)
        web = spec(ServiceKind.WEB)

        ordered = [s.kind for s in topological_order([monitor, worker, web, cache])]

        assert ordered.index(ServiceKind.CACHE) < ordered.index(ServiceKind.WORKER_DEFAULT)
        assert ordered.index(ServiceKind.WORKER_DEFAULT) < ordered.index(ServiceKind.MONITOR)

    def test_order_is_deterministic(self):
        specs = [spec(ServiceKind.WEB), spec(ServiceKind.CACHE), spec(ServiceKind.SCHEDULER)]

        assert topological_order(specs) == topological_order(list(reversed(specs)))

    def test_cycle_is_config_error(self):
        """Test a cycle is detected, not looped over."""
        worker = spec(ServiceKind.WORKER_DEFAULT, ["production/cache"])
        cache = spec(ServiceKind.CACHE, ["production/worker-default"])

        with pytest.raises(ConfigError, match="cycle"):
            topological_order([worker, cache, spec(ServiceKind.WEB)])

    def test_unknown_dependency(self):
        worker = spec(ServiceKind.WORKER_DEFAULT, ["production/cache"])

        with pytest.raises(ConfigError, match="not part of the stack"):
            topological_order([worker])

    def test_external_dependency_allowed(self):
        """Test single-service rollbacks treat outside dependencies as satisfied."""
        worker = spec(ServiceKind.WORKER_DEFAULT, ["production/cache"])

        assert topological_order([worker], allow_external=True) == [worker]


class TestClassify:
    """Test per-group diff."""

    def test_create_when_nothing_observed(self):
        assert classify(spec(ServiceKind.WEB), []) == OperationType.CREATE

    def test_update_on_fingerprint_change(self):
        old = spec(ServiceKind.WEB, image="app:v1")
        new = spec(ServiceKind.WEB, image="app:v2")

        assert classify(new, [instance(old, 0)]) == OperationType.UPDATE

    def test_scale_on_count_change(self):
        web = spec(ServiceKind.WEB, replicas=3)

        assert classify(web, [instance(web, 0)]) == OperationType.SCALE

    def test_noop_when_unchanged(self):
        web = spec(ServiceKind.WEB, replicas=2)

        assert classify(web, [instance(web, 0), instance(web, 1)]) == OperationType.NOOP

    def test_out_of_range_slot_is_update(self):
        """Test an instance left in a slot the proxy no longer routes gets replaced."""
        web = spec(ServiceKind.WEB, replicas=1)

        assert classify(web, [instance(web, 5)]) == OperationType.UPDATE

    def test_crashed_instance_is_update(self):
        """Test a current instance observed as UNHEALTHY is replaced, not left as noop."""
        web = spec(ServiceKind.WEB, replicas=2)
        crashed = replace(instance(web, 1), health=HealthStatus.UNHEALTHY)

        assert classify(web, [instance(web, 0), crashed]) == OperationType.UPDATE

    @pytest.mark.parametrize("health", [HealthStatus.UNKNOWN, HealthStatus.STARTING, HealthStatus.HEALTHY])
    def test_unprobed_instance_is_noop(self, health):
        web = spec(ServiceKind.WEB, replicas=1)

        assert classify(web, [replace(instance(web, 0), health=health)]) == OperationType.NOOP


class TestBuildPlan:
    """Test plan construction."""

    def test_plan_operations(self):
        web_v1 = spec(ServiceKind.WEB, image="app:v1")
        web_v2 = spec(ServiceKind.WEB, image="app:v2")
        cache = spec(ServiceKind.CACHE, update_order=UpdateOrder.STOP_FIRST)
        worker = spec(ServiceKind.WORKER_DEFAULT, ["production/cache"])
        monitor = spec(ServiceKind.MONITOR)

        observed = [instance(web_v1, 0), instance(cache, 0), instance(monitor, 0)]
        plan = build_plan("production", [web_v2, cache, worker], observed)
        ops = {op.identity: op.op_type for op in plan.operations}

        assert ops == {
            "production/web": OperationType.UPDATE,
            "production/cache": OperationType.NOOP,
            "production/worker-default": OperationType.CREATE,
            "production/monitor": OperationType.REMOVE,
        }
        # removals come last
        assert plan.operations[-1].op_type == OperationType.REMOVE
        assert [op.identity for op in plan.removals()] == ["production/monitor"]

    def test_other_environments_ignored(self):
        web = spec(ServiceKind.WEB)
        staging_web = spec(ServiceKind.WEB, environment="staging")

        plan = build_plan("production", [web], [instance(staging_web, 0)])

        assert [op.op_type for op in plan.operations] == [OperationType.CREATE]

    def test_no_prune_keeps_undesired_groups(self):
        web = spec(ServiceKind.WEB)
        cache = spec(ServiceKind.CACHE)

        plan = build_plan("production", [web], [instance(cache, 0)], prune=False)

        assert plan.removals() == []

    def test_spec_from_other_environment(self):
        with pytest.raises(ConfigError, match="belongs to environment"):
            build_plan("production", [spec(ServiceKind.WEB, environment="staging")], [])

    def test_operation_repr(self):
        web = spec(ServiceKind.WEB, replicas=2)
        plan = build_plan("production", [web], [instance(web, 0)])

        assert plan.describe() == ["<Operation(scale production/web 1->2)>"]

    def test_replace_keeps_depends_on_out_of_fingerprint(self):
        worker = spec(ServiceKind.WORKER_DEFAULT, ["production/cache"])

        assert replace(worker, depends_on=()).fingerprint == worker.fingerprint
