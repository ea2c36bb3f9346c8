"""Ordered, append-only event trail shared by running task loops and observers."""

from __future__ import annotations

import logging
import threading
import uuid
from collections import defaultdict
from typing import Any, Callable, Dict, List, Mapping, Optional

from .memory.schema import EventKind, TaskEvent

LOGGER = logging.getLogger(__name__)

EventCallback = Callable[[TaskEvent], None]

EVENT_KINDS: Dict[str, EventKind] = {
    "created": EventKind.STATUS,
    "status": EventKind.STATUS,
    "iteration": EventKind.STATUS,
    "plan": EventKind.PLAN,
    "analysis": EventKind.DIAGNOSIS,
    "patches": EventKind.CHANGE_APPLIED,
    "test-result": EventKind.VERIFICATION_RESULT,
    "success": EventKind.TERMINAL,
    "complete": EventKind.TERMINAL,
    "error": EventKind.ERROR,
}


def kind_for(event_type: str) -> EventKind:
    """Map a fine-grained event type onto its record kind."""
    try:
        return EVENT_KINDS[event_type]
    except KeyError:
        raise ValueError(f"Unknown event type: {event_type}") from None


class EventSink:
    """Thread-safe event log with per-task sequencing and fan-out to subscribers.

    Records for one task are numbered from 1 in append order.  Subscribers run
    synchronously under the sink's lock, so every subscriber observes a task's
    records in sequence order.  A failing subscriber is logged and skipped.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._records: Dict[str, List[TaskEvent]] = defaultdict(list)
        self._subscribers: Dict[str, List[EventCallback]] = defaultdict(list)
        self._global_subscribers: List[EventCallback] = []

    def append(self, task_id: str, record: TaskEvent) -> TaskEvent:
        with self._lock:
            records = self._records[task_id]
            stored = record.model_copy(update={"task_id": task_id, "sequence": len(records) + 1})
            records.append(stored)
            callbacks = [*self._subscribers.get(task_id, ()), *self._global_subscribers]
            for callback in callbacks:
                try:
                    callback(stored)
                except Exception:
                    LOGGER.exception("Event subscriber failed for task %s", task_id)
        return stored

    def emit(
        self,
        task_id: str,
        event_type: str,
        message: str = "",
        *,
        iteration: int = 0,
        data: Optional[Mapping[str, Any]] = None,
    ) -> TaskEvent:
        """Build and append a record for ``event_type``."""
        record = TaskEvent(
            id=uuid.uuid4().hex,
            task_id=task_id,
            iteration=iteration,
            kind=kind_for(event_type),
            type=event_type,
            message=message,
            data=dict(data or {}),
        )
        return self.append(task_id, record)

    def subscribe(self, task_id: str, callback: EventCallback) -> Callable[[], None]:
        """Register ``callback`` for one task; returns an unsubscribe function."""
        with self._lock:
            self._subscribers[task_id].append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                callbacks = self._subscribers.get(task_id, [])
                if callback in callbacks:
                    callbacks.remove(callback)

        return _unsubscribe

    def subscribe_all(self, callback: EventCallback) -> Callable[[], None]:
        with self._lock:
            self._global_subscribers.append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                if callback in self._global_subscribers:
                    self._global_subscribers.remove(callback)

        return _unsubscribe

    def records(self, task_id: str) -> List[TaskEvent]:
        with self._lock:
            return list(self._records.get(task_id, ()))

    def forget(self, task_id: str) -> None:
        """Drop the in-memory trail and subscribers of a finished task."""
        with self._lock:
            self._records.pop(task_id, None)
            self._subscribers.pop(task_id, None)


__all__ = ["EVENT_KINDS", "EventCallback", "EventSink", "kind_for"]
