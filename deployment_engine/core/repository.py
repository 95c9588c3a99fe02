# deployment_engine/core/repository.py

from abc import ABC, abstractmethod
from typing import Iterable, List, Optional
from uuid import UUID

from deployment_engine.core.models import CertificateRecord, RolloutRecord, ServiceRevision


class RolloutRepository(ABC):
    """
    Persistence contract for rollout records.
    """

    @abstractmethod
    def save(self, record: RolloutRecord) -> None:
        """
        Insert or overwrite a rollout record.
        Called on start, on every spec state change and on finish.
        """
        raise NotImplementedError

    @abstractmethod
    def get(self, rollout_id: UUID) -> Optional[RolloutRecord]:
        """
        Fetch rollout by ID.
        Returns None if not found.
        """
        raise NotImplementedError

    @abstractmethod
    def latest(self, environment: str) -> Optional[RolloutRecord]:
        """
        Most recently started rollout for an environment.
        """
        raise NotImplementedError


class RevisionRepository(ABC):
    """
    Persistence contract for converged service revisions.
    """

    @abstractmethod
    def append(self, revision: ServiceRevision) -> None:
        raise NotImplementedError

    @abstractmethod
    def history(self, identity: str, limit: int = 10) -> List[ServiceRevision]:
        """
        Revisions for a service identity, newest first.
        """
        raise NotImplementedError


class CertificateRepository(ABC):
    """
    Persistence contract for certificate records.
    Records are never deleted by the engine.
    """

    @abstractmethod
    def get(self, domain: str) -> Optional[CertificateRecord]:
        raise NotImplementedError

    @abstractmethod
    def save(self, record: CertificateRecord) -> None:
        raise NotImplementedError

    @abstractmethod
    def list_all(self) -> Iterable[CertificateRecord]:
        raise NotImplementedError
