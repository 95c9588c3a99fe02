# deployment_engine/rollout/controller.py
"""
Rollout controller.

Converges an environment from its observed instances to a desired set of
ServiceSpecs: dependencies first, independent services in parallel, web
updates rolled one instance at a time so capacity never drops below N-1.
"""

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Callable, Dict, List, Optional, Union
from uuid import UUID, uuid4

from deployment_engine.core.errors import (
    ControlPlaneError,
    DeploymentEngineError,
    HealthCheckTimeout,
    PersistenceError,
    RollbackUnavailableError,
)
from deployment_engine.core.events import EventEmitter, NullEventEmitter
from deployment_engine.core.events_model import EngineEvent
from deployment_engine.core.models import (
    HealthStatus,
    Instance,
    RolloutRecord,
    RolloutStatus,
    ServiceKind,
    ServiceOutcome,
    ServiceRevision,
    ServiceSpec,
    ServiceState,
    UpdateOrder,
    make_identity,
)
from deployment_engine.core.repository import RevisionRepository, RolloutRepository
from deployment_engine.core.state_machine import ServiceStateMachine
from deployment_engine.rollout.control_plane import ControlPlane
from deployment_engine.rollout.locks import EnvironmentLease, LeaseManager
from deployment_engine.rollout.planner import Operation, OperationType, RolloutPlan, build_plan, is_stale

logger = logging.getLogger(__name__)


class RolloutCancelled(DeploymentEngineError):
    """Raised inside a converging spec when the operator cancels the rollout."""

    def __init__(self, identity: str):
        self.identity = identity
        super().__init__("cancelled")


class RolloutController:
    """
    Applies ServiceSpecs to the control plane.

    Guarantees:
    - a spec is touched only after all of its dependencies are HEALTHY
    - a FAILED spec leaves its dependents PENDING; unrelated specs still converge
    - start-first groups keep at least N-1 healthy instances during updates
    - stop-first groups never run two instances at once
    - removals happen last and only when everything else converged
    - one rollout per environment at a time
    """

    def __init__(
        self,
        control_plane: ControlPlane,
        rollout_repo: RolloutRepository,
        revision_repo: RevisionRepository,
        event_emitter: Optional[EventEmitter] = None,
        leases: Optional[LeaseManager] = None,
        health_timeout_seconds: float = 120.0,
        health_poll_interval: float = 2.0,
        max_parallel: int = 4,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_parallel < 1:
            raise ValueError("max_parallel must be at least 1")

        self._control_plane = control_plane
        self._rollouts = rollout_repo
        self._revisions = revision_repo
        self._emitter = event_emitter or NullEventEmitter()
        self._leases = leases or LeaseManager()

        self._health_timeout = health_timeout_seconds
        self._poll_interval = health_poll_interval
        self._max_parallel = max_parallel
        self._sleep = sleep
        self._clock = clock

        self._record_lock = threading.Lock()

    # ============================================
    # PUBLIC API
    # ============================================

    def rollout(
        self,
        environment: str,
        desired: List[ServiceSpec],
        prune: bool = True,
        action: str = "rollout",
        lease: Optional[EnvironmentLease] = None,
    ) -> RolloutRecord:
        """
        Converge an environment to the desired specs.

        Args:
            environment: Environment name
            desired: Desired ServiceSpecs of the environment
            prune: Remove observed groups that are not desired
            action: Label stored on the record ("rollout" or "rollback")
            lease: Lease taken earlier with begin(); released when the rollout ends

        Returns:
            Finished RolloutRecord (SUCCESS or PARTIAL)

        Raises:
            RolloutInProgressError: Another rollout holds the environment
            PreconditionError: Control plane unreachable; nothing was touched
            ConfigError: Desired specs are inconsistent
            PersistenceError: The record store failed mid-rollout; the record
                is finished as PARTIAL where the store still accepts it
        """
        if lease is None:
            record = RolloutRecord.start(environment, action=action)
            lease = self._leases.acquire(environment, record.rollout_id)
        else:
            if lease.environment != environment or lease.is_free():
                raise ValueError(f"lease {lease!r} does not hold '{environment}'")
            record = RolloutRecord(rollout_id=lease.rollout_id, environment=environment, action=action)

        try:
            observed = self._control_plane.observe(environment)
            plan = build_plan(environment, desired, observed, prune=prune)

            record.services = {
                op.identity: ServiceOutcome(identity=op.identity, operation=op.op_type.value)
                for op in plan.operations
            }
            self._rollouts.save(record)
            self._emitter.emit([EngineEvent.rollout_started(record)])

            logger.info(
                f"[rollout] 🚀 {record.rollout_id} {action} of '{environment}': "
                f"{', '.join(plan.describe()) or 'nothing to do'}"
            )

            try:
                self._execute(plan, record, lease.cancel_event)
            except PersistenceError as e:
                self._abandon(record, e)
                raise

            with self._record_lock:
                record.cancelled = lease.cancel_event.is_set()
                record.finish()
                self._rollouts.save(record)

            self._emitter.emit([EngineEvent.rollout_finished(record)])

            if record.is_success:
                logger.info(f"[rollout] ✅ {record.rollout_id} '{environment}' converged")
            else:
                logger.warning(
                    f"[rollout] ❌ {record.rollout_id} '{environment}' PARTIAL "
                    f"(failed={record.failed_services()}, pending={record.pending_services()})"
                )
            return record

        finally:
            self._leases.release(lease)

    def begin(self, environment: str) -> EnvironmentLease:
        """
        Reserve an environment for a rollout that starts later.

        Pass the lease to rollout(), or to release() if the rollout never runs.

        Raises:
            RolloutInProgressError: Another rollout holds the environment
        """
        lease = self._leases.acquire(environment, uuid4())
        logger.info(f"[rollout] '{environment}' reserved for {lease.rollout_id}")
        return lease

    def release(self, lease: EnvironmentLease) -> None:
        self._leases.release(lease)

    def rollback(self, environment: str, kind: Union[str, ServiceKind]) -> RolloutRecord:
        """
        Re-apply the previous converged revision of one service.

        Raises:
            RollbackUnavailableError: No earlier revision exists
        """
        kind = kind if isinstance(kind, ServiceKind) else ServiceKind(kind)
        identity = make_identity(environment, kind)

        history = self._revisions.history(identity, limit=2)
        if len(history) < 2:
            raise RollbackUnavailableError(f"{identity}: no previous revision to roll back to")

        target = history[1]
        logger.info(f"[rollout] rolling {identity} back to revision {target.revision_id}")
        return self.rollout(environment, [target.spec], prune=False, action="rollback")

    def cancel(self, environment: str) -> Optional[UUID]:
        """
        Ask the running rollout of an environment to stop.

        Specs not started stay PENDING, the ones converging are marked FAILED.

        Returns:
            rollout_id that was signalled, or None if nothing is running
        """
        rollout_id = self._leases.request_cancel(environment)
        if rollout_id:
            logger.info(f"[rollout] cancel requested for {rollout_id} ('{environment}')")
        return rollout_id

    def status(self, environment: str) -> Optional[RolloutRecord]:
        """Most recent rollout of an environment (running or finished)."""
        return self._rollouts.latest(environment)

    def save_record(self, record: RolloutRecord) -> None:
        """Store a finished record again after the caller annotated it."""
        with self._record_lock:
            self._rollouts.save(record)

    def is_running(self, environment: str) -> bool:
        return self._leases.find(environment) is not None

    # ============================================
    # SCHEDULING
    # ============================================

    def _execute(self, plan: RolloutPlan, record: RolloutRecord, cancel_event: threading.Event) -> None:
        operations = {op.identity: op for op in plan.converging()}
        waiting = dict(operations)
        running: Dict[Future, str] = {}

        with ThreadPoolExecutor(
            max_workers=self._max_parallel,
            thread_name_prefix=f"rollout-{plan.environment}",
        ) as pool:
            while True:
                if not cancel_event.is_set():
                    for identity in sorted(waiting):
                        op = waiting[identity]
                        if self._dependencies_healthy(op, record, operations):
                            del waiting[identity]
                            future = pool.submit(self._converge, op, record, cancel_event)
                            running[future] = identity

                if not running:
                    break

                done, _ = wait(running, return_when=FIRST_COMPLETED)
                for future in done:
                    running.pop(future)
                    # _converge records its own failures; only the record store can fail here
                    try:
                        future.result()
                    except PersistenceError:
                        # Siblings stop at their next checkpoint
                        cancel_event.set()
                        raise

        if waiting:
            logger.info(f"[rollout] left PENDING: {', '.join(sorted(waiting))}")

        removals = plan.removals()
        if not removals:
            return

        if cancel_event.is_set() or record.failed_services() or waiting:
            logger.warning(
                f"[rollout] skipping removal of {', '.join(op.identity for op in removals)} "
                f"because the rollout did not fully converge"
            )
            return

        for op in removals:
            if cancel_event.is_set():
                break
            self._converge(op, record, cancel_event)

    def _dependencies_healthy(
        self,
        op: Operation,
        record: RolloutRecord,
        operations: Dict[str, Operation],
    ) -> bool:
        with self._record_lock:
            for dependency in op.depends_on:
                # Outside this plan (single-service rollback): already running
                if dependency not in operations:
                    continue
                if record.services[dependency].state != ServiceState.HEALTHY:
                    return False
        return True

    # ============================================
    # PER-SPEC CONVERGENCE
    # ============================================

    def _converge(self, op: Operation, record: RolloutRecord, cancel_event: threading.Event) -> None:
        outcome = record.services[op.identity]

        # Queued in the pool but not started: stays PENDING
        if cancel_event.is_set():
            logger.info(f"[{op.identity}] not started, rollout was cancelled")
            return

        self._transition(record, outcome, ServiceState.CONVERGING)
        self._emitter.emit([EngineEvent.service_converging(outcome)])

        try:
            if op.op_type == OperationType.REMOVE:
                self._remove_group(op)
            elif op.op_type == OperationType.NOOP:
                self._verify_group(op, cancel_event)
            else:
                self._converge_group(op, cancel_event)

        except RolloutCancelled:
            logger.warning(f"[{op.identity}] cancelled while {op.op_type.value} was in progress")
            self._transition(record, outcome, ServiceState.FAILED, error_message="cancelled")
            self._emitter.emit([EngineEvent.service_failed(outcome)])
            return

        except DeploymentEngineError as e:
            logger.error(f"[{op.identity}] ❌ {op.op_type.value} failed: {e}")
            self._transition(record, outcome, ServiceState.FAILED, error_message=str(e))
            self._emitter.emit([EngineEvent.service_failed(outcome)])
            return

        except Exception as e:
            logger.exception(f"[{op.identity}] ❌ unexpected error during {op.op_type.value}")
            self._transition(record, outcome, ServiceState.FAILED, error_message=f"unexpected error: {e}")
            self._emitter.emit([EngineEvent.service_failed(outcome)])
            return

        self._transition(record, outcome, ServiceState.HEALTHY)
        self._emitter.emit([EngineEvent.service_healthy(outcome)])
        logger.info(f"[{op.identity}] ✅ {op.op_type.value} converged")

        if op.desired is not None:
            self._record_revision(op.desired, record.rollout_id)

    def _converge_group(self, op: Operation, cancel_event: threading.Event) -> None:
        """Create, update and scale share one path: shrink, replace stale, grow."""
        spec = op.desired
        live = sorted(op.observed, key=lambda i: i.slot)

        # 1. Scale down first so the surge slot is free
        if len(live) > spec.replicas:
            live = self._scale_down(spec, live)

        # 2. Replace instances one at a time
        stale = [i for i in live if is_stale(spec, i) or i.slot >= spec.max_slots]
        for old in stale:
            self._check_cancel(spec, cancel_event)
            self._replace(spec, old, live, cancel_event)

        # 3. Grow to the desired count
        while len(live) < spec.replicas:
            self._check_cancel(spec, cancel_event)
            live.append(self._start_and_wait(spec, self._free_slot(spec, live), cancel_event))

    def _replace(
        self,
        spec: ServiceSpec,
        old: Instance,
        live: List[Instance],
        cancel_event: threading.Event,
    ) -> Instance:
        """Swap one instance for a fresh one in the group's update order; `live` is updated in place."""
        if spec.update_order == UpdateOrder.START_FIRST:
            new = self._start_and_wait(spec, self._free_slot(spec, live), cancel_event)
            live.append(new)
            self._control_plane.remove_instance(old.instance_id)
            live.remove(old)
        else:
            self._control_plane.remove_instance(old.instance_id)
            live.remove(old)
            new = self._start_and_wait(spec, self._free_slot(spec, live), cancel_event)
            live.append(new)

        logger.info(
            f"[{spec.identity}] replaced {old.instance_id[:12]} (slot {old.slot}) "
            f"with {new.instance_id[:12]} (slot {new.slot})"
        )
        return new

    def _scale_down(self, spec: ServiceSpec, live: List[Instance]) -> List[Instance]:
        # Out-of-range slots go first, then unhealthy instances, then the highest slots
        order = sorted(
            live,
            key=lambda i: (i.slot < spec.max_slots, i.health != HealthStatus.UNHEALTHY, -i.slot),
        )
        excess = order[:len(live) - spec.replicas]

        for instance in excess:
            logger.info(f"[{spec.identity}] scaling down: removing slot {instance.slot}")
            self._control_plane.remove_instance(instance.instance_id)

        removed = {i.instance_id for i in excess}
        return [i for i in live if i.instance_id not in removed]

    def _verify_group(self, op: Operation, cancel_event: threading.Event) -> None:
        """
        Unchanged group: confirm it is serving before dependents proceed.

        An instance that does not become healthy within the window is
        replaced like a stale one.
        """
        spec = op.desired
        live = sorted(op.observed, key=lambda i: i.slot)

        for instance in list(live):
            try:
                self._wait_healthy(spec, instance, cancel_event)
            except HealthCheckTimeout as e:
                logger.warning(f"[{spec.identity}] {e}, replacing it")
                self._replace(spec, instance, live, cancel_event)

    def _remove_group(self, op: Operation) -> None:
        for instance in op.observed:
            logger.info(f"[{op.identity}] removing {instance.instance_id[:12]} (slot {instance.slot})")
            self._control_plane.remove_instance(instance.instance_id)

    # ============================================
    # INSTANCE HELPERS
    # ============================================

    def _free_slot(self, spec: ServiceSpec, live: List[Instance]) -> int:
        used = {i.slot for i in live}
        for slot in range(spec.max_slots):
            if slot not in used:
                return slot
        raise ControlPlaneError(f"{spec.identity}: no free slot (used: {sorted(used)})")

    def _start_and_wait(self, spec: ServiceSpec, slot: int, cancel_event: threading.Event) -> Instance:
        """
        Start one instance and wait for it to report healthy.

        On timeout or cancellation the new instance is removed again and the
        error propagates; the instances it was meant to replace are untouched.
        """
        instance = self._control_plane.create_instance(spec, slot)
        logger.info(f"[{spec.identity}] started {instance.instance_id[:12]} in slot {slot}")

        try:
            self._wait_healthy(spec, instance, cancel_event)
        except (HealthCheckTimeout, RolloutCancelled, ControlPlaneError):
            try:
                self._control_plane.remove_instance(instance.instance_id)
            except ControlPlaneError as cleanup_error:
                logger.error(
                    f"[{spec.identity}] could not remove unhealthy instance "
                    f"{instance.instance_id[:12]}: {cleanup_error}"
                )
            raise

        return instance

    def _wait_healthy(self, spec: ServiceSpec, instance: Instance, cancel_event: threading.Event) -> None:
        """
        Poll the instance's health until HEALTHY.

        Raises:
            HealthCheckTimeout: Not healthy within the window
            RolloutCancelled: Cancel requested while waiting
        """
        timeout = self._health_timeout
        if spec.health_check is not None:
            timeout += spec.health_check.initial_delay_seconds

        deadline = self._clock() + timeout

        while True:
            self._check_cancel(spec, cancel_event)

            try:
                status = self._control_plane.instance_health(instance.instance_id)
            except ControlPlaneError as e:
                logger.warning(f"[{spec.identity}] health probe error: {e}")
                status = HealthStatus.UNKNOWN

            if status == HealthStatus.HEALTHY:
                instance.health = status
                return

            if self._clock() >= deadline:
                raise HealthCheckTimeout(spec.identity, instance.instance_id, timeout)

            self._sleep(self._poll_interval)

    def _check_cancel(self, spec: ServiceSpec, cancel_event: threading.Event) -> None:
        if cancel_event.is_set():
            raise RolloutCancelled(spec.identity)

    # ============================================
    # BOOKKEEPING
    # ============================================

    def _transition(
        self,
        record: RolloutRecord,
        outcome: ServiceOutcome,
        new_state: ServiceState,
        error_message: Optional[str] = None,
    ) -> None:
        with self._record_lock:
            ServiceStateMachine.transition(outcome, new_state, error_message=error_message)
            self._rollouts.save(record)

    def _record_revision(self, spec: ServiceSpec, rollout_id: UUID) -> None:
        latest = self._revisions.history(spec.identity, limit=1)
        if latest and latest[0].spec == spec:
            return
        self._revisions.append(ServiceRevision(
            revision_id=uuid4(),
            identity=spec.identity,
            spec=spec,
            rollout_id=rollout_id,
        ))

    def _abandon(self, record: RolloutRecord, error: PersistenceError) -> None:
        """Close a rollout the record store failed under, so it is never left RUNNING."""
        logger.error(f"[rollout] ❌ {record.rollout_id} abandoned, record store failed: {error}")
        with self._record_lock:
            record.error_message = f"record store failed: {error}"
            record.finish()
            record.status = RolloutStatus.PARTIAL
            try:
                self._rollouts.save(record)
            except PersistenceError as save_error:
                logger.error(f"[rollout] could not store the abandoned record {record.rollout_id}: {save_error}")
