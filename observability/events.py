"""
Event bus for orchestrator progress notifications.

Events are emitted in a strict order (monotonic `sequence`) to zero or more
listeners. Listener failures are logged and never reach the control loop.
"""

from __future__ import annotations

import inspect
import logging
from typing import Any, Callable

from shared.models import OrchestratorEvent

logger = logging.getLogger(__name__)

Listener = Callable[[OrchestratorEvent], Any]

ALL_EVENTS = "*"


class EventBus:
    """Ordered, failure-isolated fan-out of orchestrator events."""

    def __init__(self) -> None:
        self._listeners: dict[str, list[Listener]] = {}
        self._sequence = 0
        self._history: list[OrchestratorEvent] = []
        self.history_limit = 500

    def on(self, event_type: str, listener: Listener) -> None:
        self._listeners.setdefault(event_type, []).append(listener)

    def off(self, event_type: str, listener: Listener) -> None:
        listeners = self._listeners.get(event_type)
        if listeners and listener in listeners:
            listeners.remove(listener)

    def emit(self, event_type: str, data: dict[str, Any] | None = None) -> OrchestratorEvent:
        self._sequence += 1
        event = OrchestratorEvent(type=event_type, data=data or {}, sequence=self._sequence)
        self._history.append(event)
        if len(self._history) > self.history_limit:
            self._history = self._history[-self.history_limit:]

        listeners = list(self._listeners.get(event_type, [])) + list(self._listeners.get(ALL_EVENTS, []))
        for listener in listeners:
            try:
                outcome = listener(event)
                if inspect.iscoroutine(outcome):
                    # Async listeners are not awaited by the loop.
                    outcome.close()
                    logger.warning("Async listener %r ignored for event %s", listener, event_type)
            except Exception:
                logger.exception("Event listener failed for %s", event_type)
        return event

    @property
    def history(self) -> list[OrchestratorEvent]:
        return list(self._history)
