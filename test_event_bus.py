from __future__ import annotations

import json
import logging
from unittest.mock import MagicMock

from observability.events import ALL_EVENTS, EventBus
from observability.logger import Observability


def test_emit_assigns_monotonic_sequence_and_fans_out():
    bus = EventBus()
    specific = MagicMock()
    wildcard = MagicMock()
    bus.on("step_started", specific)
    bus.on(ALL_EVENTS, wildcard)

    first = bus.emit("step_started", {"step_id": "s1"})
    second = bus.emit("step_completed", {"step_id": "s1"})

    assert (first.sequence, second.sequence) == (1, 2)
    specific.assert_called_once_with(first)
    assert [call.args[0].type for call in wildcard.call_args_list] == ["step_started", "step_completed"]
    assert [event.type for event in bus.history] == ["step_started", "step_completed"]


def test_failing_listener_does_not_stop_delivery():
    bus = EventBus()
    received: list[str] = []

    def _broken(event):
        raise RuntimeError("listener bug")

    bus.on("plan_compiled", _broken)
    bus.on("plan_compiled", lambda event: received.append(event.type))

    event = bus.emit("plan_compiled", {"step_count": 2})

    assert event.data == {"step_count": 2}
    assert received == ["plan_compiled"]


def test_off_removes_listener():
    bus = EventBus()
    listener = MagicMock()
    bus.on("retry_started", listener)
    bus.off("retry_started", listener)
    bus.off("retry_started", listener)

    bus.emit("retry_started")

    listener.assert_not_called()


def test_async_listener_is_closed_not_awaited():
    bus = EventBus()
    calls: list[int] = []

    async def _listener(event):
        calls.append(event.sequence)

    bus.on("execution_completed", _listener)
    bus.emit("execution_completed")

    assert calls == []


def test_history_is_bounded():
    bus = EventBus()
    bus.history_limit = 3
    for _ in range(5):
        bus.emit("phase_changed")

    assert [event.sequence for event in bus.history] == [3, 4, 5]


def test_observability_listener_writes_structured_lines(caplog):
    observability = Observability(session_id="s-1", trace_id="t-1")
    bus = EventBus()
    bus.on(ALL_EVENTS, observability.event_listener(level="INFO"))

    with caplog.at_level(logging.INFO, logger="observability"):
        bus.emit("intent_parsed", {"intent": "format"})

    lines = [record.getMessage() for record in caplog.records if record.name == "observability"]
    payload = json.loads(lines[-1])
    assert payload["event"] == "orchestrator.intent_parsed"
    assert payload["session_id"] == "s-1"
    assert payload["trace_id"] == "t-1"
    assert payload["data"] == {"intent": "format"}


def test_span_keeps_session_and_changes_trace():
    observability = Observability(session_id="s-1", trace_id="t-1")

    child = observability.span()

    assert child.session_id == "s-1"
    assert child.trace_id != "t-1"
    assert observability.span("t-2").trace_id == "t-2"
