"""In-process publish/subscribe channel for domain events."""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List

from .logging import log_event


@dataclass(frozen=True)
class DomainEvent:
    name: str
    payload: Dict[str, Any] = field(default_factory=dict)


class Observer(ABC):
    @abstractmethod
    def update(self, channel: "EventChannel", event: DomainEvent) -> None:
        pass


class EventChannel:
    def __init__(self) -> None:
        self._observers: List[Observer] = []
        self._lock = threading.Lock()

    def attach(self, observer: Observer) -> None:
        with self._lock:
            self._observers.append(observer)

    def detach(self, observer: Observer) -> None:
        with self._lock:
            self._observers.remove(observer)

    def publish(self, name: str, **payload) -> DomainEvent:
        event = DomainEvent(name=name, payload=payload)
        with self._lock:
            observers_snapshot = list(self._observers)

        for observer in observers_snapshot:
            try:
                observer.update(self, event)
            except Exception as exc:
                # the transition is already committed
                log_event("error", "events.observer_failed", event_name=name, observer=type(observer).__name__, error=str(exc))
        return event


class LoggingObserver(Observer):
    """Mirrors every domain event into the structured log."""

    def update(self, channel: EventChannel, event: DomainEvent) -> None:
        log_event("info", event.name, **event.payload)


class RecordingObserver(Observer):
    """Keeps published events in memory, newest last."""

    def __init__(self, limit: int = 500) -> None:
        self._limit = limit
        self._events: List[DomainEvent] = []
        self._lock = threading.Lock()

    def update(self, channel: EventChannel, event: DomainEvent) -> None:
        with self._lock:
            self._events.append(event)
            if len(self._events) > self._limit:
                del self._events[: len(self._events) - self._limit]

    def names(self) -> List[str]:
        with self._lock:
            return [e.name for e in self._events]

    def events(self) -> List[DomainEvent]:
        with self._lock:
            return list(self._events)
