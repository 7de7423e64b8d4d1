"""
Observability Layer — Structured logging for agent runs.

Responsibility:
- Write run events as JSON lines on the "observability" logger
- Time tool calls and record their outcome next to the timing
- Stamp every line with the run context (session_id, trace_id)
"""

import json
import logging
import time
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Iterator

logger = logging.getLogger("observability")


class Observability:
    """Structured logger scoped to one session and one run trace."""

    def __init__(self, session_id: str | None = None, trace_id: str | None = None):
        self.session_id = session_id or str(uuid.uuid4())
        self.trace_id = trace_id or str(uuid.uuid4())

    def log_event(self, event_type: str, payload: dict[str, Any], level: str = "INFO") -> None:
        """Write one structured line. Unknown levels fall back to INFO."""
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "session_id": self.session_id,
            "trace_id": self.trace_id,
            "event": event_type,
            "level": level.upper(),
            **payload,
        }
        log_method = getattr(logger, level.lower(), logger.info)
        log_method(json.dumps(entry, ensure_ascii=False, default=str))

    @contextmanager
    def measure(self, operation: str, metadata: dict[str, Any] | None = None) -> Iterator[dict[str, Any]]:
        """Time a block and log an `execution_metric` line when it exits.

        Yields a dict the caller may fill with outcome fields (e.g. `tool_success`);
        they are merged into the metric line.
        """
        outcome: dict[str, Any] = {}
        started = time.perf_counter()
        error: str | None = None
        try:
            yield outcome
        except Exception as e:
            error = str(e)
            raise
        finally:
            self.log_event(
                "execution_metric",
                {
                    "operation": operation,
                    "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                    "success": error is None,
                    "error": error,
                    **(metadata or {}),
                    **outcome,
                },
                level="DEBUG",
            )

    def span(self, trace_id: str | None = None) -> "Observability":
        """Logger for one run: same session, its own (or the given) trace id."""
        return Observability(self.session_id, trace_id or str(uuid.uuid4()))

    def event_listener(self, level: str = "DEBUG") -> Callable[[Any], None]:
        """EventBus listener mirroring orchestrator events into the structured log."""

        def _listener(event: Any) -> None:
            self.log_event(
                f"orchestrator.{event.type}",
                {"sequence": event.sequence, "data": event.data},
                level=level,
            )

        return _listener
