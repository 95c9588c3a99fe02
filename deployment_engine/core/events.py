"""Event emitters for the deployment engine."""

import logging
from abc import ABC, abstractmethod
from typing import Iterable

from deployment_engine.core.events_model import EngineEvent

logger = logging.getLogger(__name__)


ALLOWED_EVENTS = {
    "rollout.started",
    "rollout.finished",
    "service.converging",
    "service.healthy",
    "service.failed",
    "certificate.obtained",
    "certificate.failed",
    "proxy.reloaded",
}


class EventEmitter(ABC):
    """Abstract event emitter."""

    @abstractmethod
    def emit(self, events: Iterable[EngineEvent]) -> None:
        """Emit one or more events."""
        pass


class PrintEventEmitter(EventEmitter):
    """Console event emitter, keeps an in-memory copy for inspection."""

    def __init__(self):
        self.events = []

    def emit(self, events: Iterable[EngineEvent]) -> None:
        """Log events to console."""
        for event in events:
            # Validation
            if event.event_type not in ALLOWED_EVENTS:
                raise ValueError(f"Invalid event type: {event.event_type}")
            if not event.subject:
                raise ValueError("Event must have a subject")

            # Store in-memory
            self.events.append(event)

            logger.info(f"[EVENT] {event.event_type} | {event.subject}")

    def of_type(self, event_type: str) -> list:
        return [e for e in self.events if e.event_type == event_type]


class MultiEventEmitter:
    """Fan-out to multiple emitters."""

    def __init__(self, emitters: Iterable[EventEmitter]):
        self._emitters = list(emitters)

    def emit(self, events: Iterable[EngineEvent]):
        """Emit to all emitters."""
        events = list(events)
        for emitter in self._emitters:
            emitter.emit(events)


class NullEventEmitter(EventEmitter):
    """No-op emitter (used when events are not needed)."""

    def emit(self, events: Iterable[EngineEvent]) -> None:
        """Do nothing."""
        pass
