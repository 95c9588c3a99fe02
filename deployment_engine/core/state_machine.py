#deployment_engine\core\state_machine.py

from datetime import datetime, timezone

from deployment_engine.core.errors import InvalidStateTransition
from deployment_engine.core.models import ServiceOutcome, ServiceState


ALLOWED_TRANSITIONS = {
    ServiceState.PENDING: {
        ServiceState.CONVERGING,
        ServiceState.FAILED,  # cancelled before it started
    },
    ServiceState.CONVERGING: {
        ServiceState.HEALTHY,
        ServiceState.FAILED,
    },
}


class ServiceStateMachine:
    @staticmethod
    def transition(
        outcome: ServiceOutcome,
        new_state: ServiceState,
        *,
        error_message: str | None = None,
        now: datetime | None = None,
    ) -> ServiceOutcome:
        now = now or datetime.now(timezone.utc)

        current = outcome.state

        if current == new_state:
            return outcome

        allowed = ALLOWED_TRANSITIONS.get(current, set())
        if new_state not in allowed:
            raise InvalidStateTransition(
                f"{outcome.identity}: cannot transition from {current.value} to {new_state.value}"
            )

        # Timestamp semantics
        if new_state == ServiceState.CONVERGING:
            outcome.started_at = now

        elif new_state in (ServiceState.HEALTHY, ServiceState.FAILED):
            outcome.finished_at = now

        if new_state == ServiceState.FAILED:
            outcome.error_message = error_message

        outcome.state = new_state
        return outcome
