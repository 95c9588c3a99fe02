# deployment_engine/rollout/planner.py
"""Rollout planning - diff desired vs observed, order by dependencies."""

from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Optional

from deployment_engine.core.errors import ConfigError
from deployment_engine.core.models import HealthStatus, Instance, ServiceSpec


class OperationType(Enum):
    CREATE = "create"
    UPDATE = "update"
    SCALE = "scale"
    REMOVE = "remove"
    NOOP = "noop"


@dataclass
class Operation:
    """One converging step for one service group."""
    op_type: OperationType
    identity: str
    desired: Optional[ServiceSpec] = None
    observed: List[Instance] = field(default_factory=list)

    @property
    def depends_on(self) -> tuple:
        return self.desired.depends_on if self.desired else ()

    def __repr__(self) -> str:
        current = len(self.observed)
        target = self.desired.replicas if self.desired else 0
        return f"<Operation({self.op_type.value} {self.identity} {current}->{target})>"


@dataclass
class RolloutPlan:
    """Ephemeral, computed per invocation. Never persisted."""
    environment: str
    operations: List[Operation] = field(default_factory=list)

    def converging(self) -> List[Operation]:
        """Everything except removals, in dependency order."""
        return [op for op in self.operations if op.op_type != OperationType.REMOVE]

    def removals(self) -> List[Operation]:
        return [op for op in self.operations if op.op_type == OperationType.REMOVE]

    def by_identity(self) -> Dict[str, Operation]:
        return {op.identity: op for op in self.operations}

    def describe(self) -> List[str]:
        return [repr(op) for op in self.operations]


# ============================================
# DEPENDENCY ORDER
# ============================================

def topological_order(
    specs: Iterable[ServiceSpec],
    allow_external: bool = False,
) -> List[ServiceSpec]:
    """
    Kahn's algorithm over ServiceSpec identities.

    Ties are broken by identity so the order is deterministic.

    Args:
        specs: Specs to order
        allow_external: Treat dependencies outside the set as already satisfied
            (single-service rollbacks)

    Raises:
        ConfigError: On a dependency that is not part of the set, or a cycle
    """
    specs = list(specs)
    by_id = {spec.identity: spec for spec in specs}

    indegree: Dict[str, int] = {identity: 0 for identity in by_id}
    dependents: Dict[str, List[str]] = defaultdict(list)

    for spec in specs:
        for dependency in spec.depends_on:
            if dependency not in by_id:
                if allow_external:
                    continue
                raise ConfigError(
                    f"depends on '{dependency}' which is not part of the stack",
                    entity=spec.identity,
                )
            indegree[spec.identity] += 1
            dependents[dependency].append(spec.identity)

    ready = sorted(identity for identity, degree in indegree.items() if degree == 0)
    ordered: List[ServiceSpec] = []

    while ready:
        identity = ready.pop(0)
        ordered.append(by_id[identity])
        for dependent in dependents[identity]:
            indegree[dependent] -= 1
            if indegree[dependent] == 0:
                ready.append(dependent)
        ready.sort()

    if len(ordered) != len(specs):
        stuck = sorted(identity for identity, degree in indegree.items() if degree > 0)
        raise ConfigError(f"dependency cycle between {', '.join(stuck)}", entity="stack")

    return ordered


# ============================================
# DIFF
# ============================================

def group_instances(instances: Iterable[Instance]) -> Dict[str, List[Instance]]:
    grouped: Dict[str, List[Instance]] = defaultdict(list)
    for instance in instances:
        grouped[instance.identity].append(instance)
    for group in grouped.values():
        group.sort(key=lambda i: i.slot)
    return dict(grouped)


def is_stale(desired: ServiceSpec, instance: Instance) -> bool:
    """An instance that must be replaced: outdated, or observed as crashed or failing."""
    return instance.fingerprint != desired.fingerprint or instance.health == HealthStatus.UNHEALTHY


def classify(desired: ServiceSpec, observed: List[Instance]) -> OperationType:
    if not observed:
        return OperationType.CREATE
    if any(is_stale(desired, instance) for instance in observed):
        return OperationType.UPDATE
    # Slots beyond the group's range publish ports the proxy no longer routes
    if len(observed) <= desired.replicas and any(i.slot >= desired.max_slots for i in observed):
        return OperationType.UPDATE
    if len(observed) != desired.replicas:
        return OperationType.SCALE
    return OperationType.NOOP


def build_plan(
    environment: str,
    desired: Iterable[ServiceSpec],
    observed: Iterable[Instance],
    prune: bool = True,
) -> RolloutPlan:
    """
    Diff desired specs against the freshly observed instance set.

    Args:
        environment: Environment name
        desired: Desired ServiceSpecs (all belonging to the environment)
        observed: Live instances of the environment
        prune: Remove observed groups that are not desired (False for single-service rollbacks)

    Returns:
        RolloutPlan with converging operations in dependency order, removals last
    """
    desired = list(desired)
    for spec in desired:
        if spec.environment != environment:
            raise ConfigError(
                f"spec belongs to environment '{spec.environment}', not '{environment}'",
                entity=spec.identity,
            )

    grouped = group_instances(i for i in observed if i.environment == environment)
    plan = RolloutPlan(environment=environment)

    for spec in topological_order(desired, allow_external=not prune):
        current = grouped.get(spec.identity, [])
        plan.operations.append(Operation(
            op_type=classify(spec, current),
            identity=spec.identity,
            desired=spec,
            observed=current,
        ))

    if prune:
        desired_ids = {spec.identity for spec in desired}
        for identity in sorted(set(grouped) - desired_ids):
            plan.operations.append(Operation(
                op_type=OperationType.REMOVE,
                identity=identity,
                observed=grouped[identity],
            ))

    return plan
