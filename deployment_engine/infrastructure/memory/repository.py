# deployment_engine/infrastructure/memory/repository.py

import copy
from threading import Lock
from typing import Iterable, List, Optional
from uuid import UUID

from deployment_engine.core.models import CertificateRecord, RolloutRecord, ServiceRevision
from deployment_engine.core.repository import (
    CertificateRepository,
    RevisionRepository,
    RolloutRepository,
)


class InMemoryRolloutRepository(RolloutRepository):
    def __init__(self):
        self._store: dict[UUID, RolloutRecord] = {}
        self._lock = Lock()

    def save(self, record: RolloutRecord) -> None:
        with self._lock:
            self._store[record.rollout_id] = copy.deepcopy(record)

    def get(self, rollout_id: UUID) -> RolloutRecord | None:
        with self._lock:
            record = self._store.get(rollout_id)
            return copy.deepcopy(record) if record else None

    def latest(self, environment: str) -> RolloutRecord | None:
        with self._lock:
            records = [r for r in self._store.values() if r.environment == environment]
            if not records:
                return None
            return copy.deepcopy(max(records, key=lambda r: r.started_at))


class InMemoryRevisionRepository(RevisionRepository):
    def __init__(self):
        self._store: dict[str, list[ServiceRevision]] = {}
        self._lock = Lock()

    def append(self, revision: ServiceRevision) -> None:
        with self._lock:
            self._store.setdefault(revision.identity, []).append(revision)

    def history(self, identity: str, limit: int = 10) -> List[ServiceRevision]:
        with self._lock:
            revisions = list(reversed(self._store.get(identity, [])))
            return revisions[:limit]


class InMemoryCertificateRepository(CertificateRepository):
    def __init__(self):
        self._store: dict[str, CertificateRecord] = {}
        self._lock = Lock()

    def get(self, domain: str) -> Optional[CertificateRecord]:
        with self._lock:
            record = self._store.get(domain)
            return copy.deepcopy(record) if record else None

    def save(self, record: CertificateRecord) -> None:
        with self._lock:
            self._store[record.domain] = copy.deepcopy(record)

    def list_all(self) -> Iterable[CertificateRecord]:
        with self._lock:
            return [copy.deepcopy(r) for r in sorted(self._store.values(), key=lambda r: r.domain)]
