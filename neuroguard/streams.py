"""Publish/subscribe primitives shared by every NeuroGuard stage."""
from __future__ import annotations

import logging
import uuid
from threading import RLock
from typing import Callable, Generic, List, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

Observer = Callable[[T], None]


def new_id() -> str:
    """Return a unique identifier for pipeline records."""

    return uuid.uuid4().hex


class Subscription:
    """Handle returned by :meth:`Subject.subscribe`."""

    def __init__(self, subject: "Subject", observer: Callable) -> None:
        self._subject: Optional[Subject] = subject
        self._observer = observer

    @property
    def active(self) -> bool:
        return self._subject is not None

    def unsubscribe(self) -> None:
        subject, self._subject = self._subject, None
        if subject is not None:
            subject._remove(self._observer)


class Subject(Generic[T]):
    """Synchronous fan-out to every subscribed observer, in subscription order."""

    def __init__(self) -> None:
        self._observers: List[Observer] = []
        self._lock = RLock()

    def publish(self, value: T) -> None:
        with self._lock:
            observers = list(self._observers)
        for observer in observers:
            try:
                observer(value)
            except Exception:
                logger.exception("Subscriber %r failed while handling %s", observer, type(value).__name__)

    def subscribe(self, observer: Observer) -> Subscription:
        with self._lock:
            self._observers.append(observer)
        return Subscription(self, observer)

    def observer_count(self) -> int:
        with self._lock:
            return len(self._observers)

    def _remove(self, observer: Callable) -> None:
        with self._lock:
            try:
                self._observers.remove(observer)
            except ValueError:
                pass


class BehaviorSubject(Subject[T]):
    """Subject that remembers its last value and replays it to new subscribers."""

    def __init__(self, initial: T) -> None:
        super().__init__()
        self._value = initial

    @property
    def value(self) -> T:
        return self._value

    def publish(self, value: T) -> None:
        self._value = value
        super().publish(value)

    def subscribe(self, observer: Observer) -> Subscription:
        try:
            observer(self._value)
        except Exception:
            logger.exception("Subscriber %r failed while replaying current value", observer)
        return super().subscribe(observer)


__all__ = ["BehaviorSubject", "Observer", "Subject", "Subscription", "new_id"]
