#tests\test_domain_models.py

"""Test domain models, state transitions and environment leases."""

import pytest
from uuid import uuid4
from datetime import datetime, timedelta, timezone

from deployment_engine.core.errors import InvalidStateTransition, RolloutInProgressError
from deployment_engine.core.models import (
    CertificateMaterial,
    CertificateRecord,
    CertificateResult,
    HealthCheckDefinition,
    RolloutRecord,
    RolloutStatus,
    ServiceKind,
    ServiceOutcome,
    ServiceSpec,
    ServiceState,
    UpdateOrder,
)
from deployment_engine.core.state_machine import ServiceStateMachine
from deployment_engine.rollout.locks import EnvironmentLease, LeaseManager


NOW = datetime(2026, 6, 1, tzinfo=timezone.utc)


class TestServiceStateMachine:
    """Test PENDING -> CONVERGING -> {HEALTHY | FAILED}."""

    @pytest.fixture
    def outcome(self):
        return ServiceOutcome(identity="production/web", operation="update")

    def test_initial_state(self, outcome):
        assert outcome.state == ServiceState.PENDING
        assert outcome.started_at is None

    def test_converging_sets_started_at(self, outcome):
        ServiceStateMachine.transition(outcome, ServiceState.CONVERGING, now=NOW)

        assert outcome.state == ServiceState.CONVERGING
        assert outcome.started_at == NOW

    def test_healthy_sets_finished_at(self, outcome):
        ServiceStateMachine.transition(outcome, ServiceState.CONVERGING)
        ServiceStateMachine.transition(outcome, ServiceState.HEALTHY, now=NOW)

        assert outcome.state == ServiceState.HEALTHY
        assert outcome.finished_at == NOW

    def test_failed_keeps_error(self, outcome):
        ServiceStateMachine.transition(outcome, ServiceState.CONVERGING)
        ServiceStateMachine.transition(outcome, ServiceState.FAILED, error_message="boom")

        assert outcome.error_message == "boom"

    def test_pending_cannot_become_healthy(self, outcome):
        """Test a spec cannot skip convergence."""
        with pytest.raises(InvalidStateTransition):
            ServiceStateMachine.transition(outcome, ServiceState.HEALTHY)

    @pytest.mark.parametrize("terminal", [ServiceState.HEALTHY, ServiceState.FAILED])
    def test_terminal_states(self, outcome, terminal):
        """Test HEALTHY and FAILED are terminal for the invocation."""
        ServiceStateMachine.transition(outcome, ServiceState.CONVERGING)
        ServiceStateMachine.transition(outcome, terminal)

        with pytest.raises(InvalidStateTransition):
            ServiceStateMachine.transition(outcome, ServiceState.CONVERGING)

    def test_same_state_is_noop(self, outcome):
        ServiceStateMachine.transition(outcome, ServiceState.PENDING)
        assert outcome.state == ServiceState.PENDING


class TestRolloutRecord:
    """Test overall rollout status."""

    def test_success_when_all_healthy(self):
        record = RolloutRecord.start("production")
        record.services = {"production/web": ServiceOutcome("production/web", "create", ServiceState.HEALTHY)}

        record.finish()

        assert record.status == RolloutStatus.SUCCESS
        assert record.finished_at is not None

    def test_partial_on_failure_or_pending(self):
        record = RolloutRecord.start("production")
        record.services = {
            "production/cache": ServiceOutcome("production/cache", "create", ServiceState.FAILED),
            "production/worker-default": ServiceOutcome("production/worker-default", "create"),
        }

        record.finish()

        assert record.status == RolloutStatus.PARTIAL
        assert record.failed_services() == ["production/cache"]
        assert record.pending_services() == ["production/worker-default"]

    def test_cancelled_is_partial(self):
        record = RolloutRecord.start("production")
        record.cancelled = True

        record.finish()

        assert record.status == RolloutStatus.PARTIAL

    def test_to_dict(self):
        record = RolloutRecord.start("staging", action="rollback")
        data = record.to_dict()

        assert data["environment"] == "staging"
        assert data["action"] == "rollback"
        assert data["status"] == "RUNNING"


class TestServiceSpec:
    """Test spec identity and fingerprint."""

    @pytest.fixture
    def spec(self):
        return ServiceSpec(
            environment="production",
            kind=ServiceKind.WEB,
            image="app:v1",
            replicas=2,
            env=(("A", "1"),),
            host_port_base=8100,
            health_check=HealthCheckDefinition(type="http", path="/", port=8000),
        )

    def test_identity(self, spec):
        assert spec.identity == "production/web"

    def test_max_slots(self, spec):
        """Test start-first keeps one surge slot, stop-first none."""
        assert spec.max_slots == 3
        assert spec.with_replicas(1).max_slots == 2

    def test_stop_first_slots(self):
        spec = ServiceSpec("production", ServiceKind.SCHEDULER, "app:v1", 1, update_order=UpdateOrder.STOP_FIRST)
        assert spec.max_slots == 1

    def test_fingerprint_ignores_replicas(self, spec):
        assert spec.with_replicas(5).fingerprint == spec.fingerprint

    def test_dict_round_trip(self, spec):
        restored = ServiceSpec.from_dict(spec.to_dict())

        assert restored == spec
        assert restored.fingerprint == spec.fingerprint


class TestCertificateRecord:
    """Test renewal decisions."""

    def test_missing_material_is_issue(self):
        assert CertificateRecord("app.example.com").due_action(NOW, timedelta(days=30)) == "issue"

    def test_inside_threshold_is_renew(self):
        record = CertificateRecord("app.example.com", expires_at=NOW + timedelta(days=10))
        assert record.due_action(NOW, timedelta(days=30)) == "renew"

    def test_outside_threshold_is_skipped(self):
        record = CertificateRecord("app.example.com", expires_at=NOW + timedelta(days=60))
        assert record.due_action(NOW, timedelta(days=30)) is None

    def test_failure_keeps_expiry(self):
        """Test a failed attempt never clears the material."""
        expires = NOW + timedelta(days=5)
        record = CertificateRecord("app.example.com", expires_at=expires)

        record.record_failure("rate-limited", "too many certificates", NOW)

        assert record.expires_at == expires
        assert record.last_result == CertificateResult.RATE_LIMITED
        assert record.is_servable(NOW)

    def test_unknown_reason_maps_to_error(self):
        record = CertificateRecord("app.example.com")
        record.record_failure("weird", "?", NOW)
        assert record.last_result == CertificateResult.ERROR

    def test_success_issue_then_renew(self):
        record = CertificateRecord("app.example.com")
        material = CertificateMaterial("app.example.com", expires_at=NOW + timedelta(days=90))

        record.record_success(material, NOW)
        assert record.last_result == CertificateResult.ISSUED

        record.record_success(material, NOW)
        assert record.last_result == CertificateResult.RENEWED

    def test_expired_not_servable(self):
        record = CertificateRecord("app.example.com", expires_at=NOW - timedelta(seconds=1))
        assert not record.is_servable(NOW)


class TestEnvironmentLease:
    """Test individual lease."""

    def test_lease_initialization(self):
        lease = EnvironmentLease("production")
        assert lease.is_free()
        assert lease.rollout_id is None

    def test_bind_occupied_lease_fails(self):
        lease = EnvironmentLease("production")
        lease.bind(uuid4())

        with pytest.raises(RolloutInProgressError):
            lease.bind(uuid4())

    def test_release_clears_cancel(self):
        lease = EnvironmentLease("production")
        lease.bind(uuid4())
        lease.cancel_event.set()

        lease.release()

        assert lease.is_free()
        assert not lease.cancel_event.is_set()


class TestLeaseManager:
    """Test lease manager."""

    def test_acquire_and_find(self):
        manager = LeaseManager()
        rollout_id = uuid4()

        lease = manager.acquire("production", rollout_id)

        assert manager.find("production") is lease
        assert manager.find("staging") is None
        assert len(manager.active_leases()) == 1

    def test_same_environment_rejected(self):
        manager = LeaseManager()
        manager.acquire("production", uuid4())

        with pytest.raises(RolloutInProgressError):
            manager.acquire("production", uuid4())

    def test_environments_independent(self):
        manager = LeaseManager()
        manager.acquire("production", uuid4())

        lease = manager.acquire("staging", uuid4())

        assert lease.environment == "staging"

    def test_request_cancel(self):
        manager = LeaseManager()
        rollout_id = uuid4()
        lease = manager.acquire("production", rollout_id)

        assert manager.request_cancel("production") == rollout_id
        assert lease.cancel_event.is_set()
        assert manager.request_cancel("staging") is None

    def test_release_allows_reacquire(self):
        manager = LeaseManager()
        lease = manager.acquire("production", uuid4())

        manager.release(lease)

        assert manager.find("production") is None
        manager.acquire("production", uuid4())
