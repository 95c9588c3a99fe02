#deployment_engine\rollout\locks.py

"""Per-environment leases - at most one rollout per environment at a time."""

import threading
from typing import Dict, List, Optional
from uuid import UUID

from deployment_engine.core.errors import RolloutInProgressError


class EnvironmentLease:
    """Represents the right to mutate one environment."""

    def __init__(self, environment: str):
        self.environment = environment
        self.rollout_id: Optional[UUID] = None
        self.cancel_event = threading.Event()

    def is_free(self) -> bool:
        """Check if no rollout holds the lease."""
        return self.rollout_id is None

    def bind(self, rollout_id: UUID) -> None:
        """Bind a rollout to this lease."""
        if not self.is_free():
            raise RolloutInProgressError(self.environment, self.rollout_id)
        self.rollout_id = rollout_id
        self.cancel_event.clear()

    def release(self) -> None:
        """Release lease."""
        self.rollout_id = None
        self.cancel_event.clear()

    def __repr__(self) -> str:
        status = "free" if self.is_free() else f"held({self.rollout_id})"
        return f"<EnvironmentLease(env={self.environment}, {status})>"


class LeaseManager:
    """Hands out environment leases. Different environments never block each other."""

    def __init__(self):
        self._lock = threading.Lock()
        self._leases: Dict[str, EnvironmentLease] = {}

    def acquire(self, environment: str, rollout_id: UUID) -> EnvironmentLease:
        """
        Take the lease of an environment.

        Raises:
            RolloutInProgressError: If another rollout already holds it
        """
        with self._lock:
            lease = self._leases.setdefault(environment, EnvironmentLease(environment))
            lease.bind(rollout_id)
            return lease

    def release(self, lease: EnvironmentLease) -> None:
        with self._lock:
            lease.release()

    def find(self, environment: str) -> Optional[EnvironmentLease]:
        """The held lease of an environment, if any."""
        with self._lock:
            lease = self._leases.get(environment)
            if lease is None or lease.is_free():
                return None
            return lease

    def request_cancel(self, environment: str) -> Optional[UUID]:
        """
        Signal the rollout holding the environment to stop.

        Returns:
            rollout_id that was signalled, or None when nothing is running
        """
        with self._lock:
            lease = self._leases.get(environment)
            if lease is None or lease.is_free():
                return None
            lease.cancel_event.set()
            return lease.rollout_id

    def active_leases(self) -> List[EnvironmentLease]:
        with self._lock:
            return [lease for lease in self._leases.values() if not lease.is_free()]

    def __repr__(self) -> str:
        return f"<LeaseManager(active={len(self.active_leases())})>"
