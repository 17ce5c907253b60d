from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Generic, List, Tuple, TypeVar

from ..models import WorkoutReflection, WorkoutSession

logger = logging.getLogger(__name__)

EventT = TypeVar('EventT')


@dataclass(frozen=True)
class ReflectionSaved:
    """Published once a session and its reflection are both stored."""

    user_id: str
    session: WorkoutSession
    reflection: WorkoutReflection


class EventChannel(Generic[EventT]):
    """Synchronous typed publish/subscribe.

    Listeners run in subscription order on the publishing thread. A failing
    listener is logged and reported back to the publisher; it never prevents
    the remaining listeners from running.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._listeners: List[Callable[[EventT], object]] = []
        self._lock = threading.Lock()

    def subscribe(self, listener: Callable[[EventT], object]) -> None:
        with self._lock:
            if listener not in self._listeners:
                self._listeners.append(listener)

    def unsubscribe(self, listener: Callable[[EventT], object]) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def publish(self, event: EventT) -> List[Tuple[Callable[[EventT], object], Exception]]:
        with self._lock:
            listeners = list(self._listeners)

        failures: List[Tuple[Callable[[EventT], object], Exception]] = []
        for listener in listeners:
            try:
                listener(event)
            except Exception as exc:
                logger.warning('%s.listener_failed', self.name, exc_info=True)
                failures.append((listener, exc))
        return failures
