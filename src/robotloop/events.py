"""Run event bus: emit events to SQLite + listeners."""

from __future__ import annotations

import logging
import time
from typing import Any, Callable

logger = logging.getLogger(__name__)

# Standard event types
EVENT_RUN_STARTED = "run_started"
EVENT_RUN_RESUMED = "run_resumed"
EVENT_CYCLE_RECORDED = "cycle_recorded"
EVENT_PLAN_REPLACED = "plan_replaced"
EVENT_SESSION_DETECTED = "session_detected"
EVENT_SESSION_SAVED = "session_saved"
EVENT_ESCALATION_DISPATCHED = "escalation_dispatched"
EVENT_ESCALATION_FAILED = "escalation_failed"
EVENT_RUN_FINISHED = "run_finished"


class EventCollector:
    """Central event bus: writes to the run store (when given) and notifies listeners."""

    def __init__(self, store=None, run_id: str | None = None):
        self._store = store
        self._run_id = run_id
        self._listeners: list[Callable] = []

    @property
    def run_id(self) -> str | None:
        return self._run_id

    @run_id.setter
    def run_id(self, value: str):
        self._run_id = value

    def emit(
        self,
        event_type: str,
        summary: str,
        *,
        cycle: int | None = None,
        metadata: dict | None = None,
    ) -> int | None:
        """Emit an event: persist it and notify all listeners."""
        event_id = None
        if self._store is not None:
            try:
                event_id = self._store.record_event(
                    event_type=event_type,
                    summary=summary,
                    run_id=self._run_id,
                    cycle=cycle,
                    metadata=metadata,
                )
            except Exception as e:
                logger.warning(f"Failed to persist event {event_type}: {e}")

        event_data = {
            "id": event_id,
            "timestamp": time.time(),
            "event_type": event_type,
            "summary": summary,
            "run_id": self._run_id,
            "cycle": cycle,
            "metadata": metadata,
        }

        for listener in self._listeners:
            try:
                listener(event_data)
            except Exception as e:
                logger.warning(f"Event listener error: {e}")

        return event_id

    def add_listener(self, callback: Callable[[dict], Any]) -> None:
        """Register a listener for all events."""
        if callback not in self._listeners:
            self._listeners.append(callback)

    def remove_listener(self, callback: Callable) -> None:
        """Remove a registered listener."""
        try:
            self._listeners.remove(callback)
        except ValueError:
            pass
