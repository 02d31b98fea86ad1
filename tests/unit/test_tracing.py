import json
import logging

import pytest
import structlog
from structlog.contextvars import clear_contextvars

from district_assistant.errors import NotFoundError
from district_assistant.obs.logger_config import bind_turn_context, configure_logging
from district_assistant.obs.tracing import Timer, TraceStore


@pytest.fixture()
def restore_logging():
    root = logging.getLogger()
    before = list(root.handlers)
    level = root.level
    yield
    clear_contextvars()
    structlog.reset_defaults()
    for handler in list(root.handlers):
        if handler not in before:
            root.removeHandler(handler)
    root.setLevel(level)


def _finished(store: TraceStore, question: str, latency_ms: float, **flags: bool) -> str:
    record = store.start(tenant_id="district-1", user_id="parent-1", question=question)
    record.source_snippets = ["Report absences before 9 AM."]
    record.escalated = flags.get("escalated", False)
    record.safety_filtered = flags.get("safety_filtered", False)
    store.finish(record, answer="Report absences before 9 AM.", latency_ms=latency_ms)
    return record.trace_id


def test_trace_store_summary() -> None:
    store = TraceStore()
    assert store.summary()["total_requests"] == 0

    _finished(store, "q1", 100.0)
    _finished(store, "q2", 300.0, escalated=True)
    trace_id = _finished(store, "q3", 200.0, safety_filtered=True)

    summary = store.summary()
    assert summary["total_requests"] == 3
    assert summary["avg_latency_ms"] == pytest.approx(200.0)
    assert summary["p95_latency_ms"] == 200.0
    assert summary["avg_groundedness"] == 1.0
    assert summary["escalation_rate"] == pytest.approx(1 / 3)
    assert summary["safety_filtered_rate"] == pytest.approx(1 / 3)
    assert store.get(trace_id).question == "q3"


def test_trace_store_drops_oldest_records() -> None:
    store = TraceStore(max_records=2)
    first = _finished(store, "q1", 1.0)
    _finished(store, "q2", 1.0)
    _finished(store, "q3", 1.0)

    assert [record.question for record in store.list_recent()] == ["q2", "q3"]
    with pytest.raises(NotFoundError):
        store.get(first)


def test_timer_measures_elapsed_time() -> None:
    with Timer() as timer:
        sum(range(1000))

    assert timer.elapsed_ms >= 0.0


def test_json_logs_carry_turn_context(caplog, restore_logging) -> None:
    configure_logging("debug", json=True)
    logging.getLogger().addHandler(caplog.handler)
    bind_turn_context(trace_id="trace-1", tenant_id="district-1", user_id="parent-1")

    structlog.get_logger("district_assistant.tests").info("turn_started", tools=2)

    payload = json.loads(caplog.records[-1].getMessage())
    assert payload["event"] == "turn_started"
    assert payload["trace_id"] == "trace-1"
    assert payload["tenant_id"] == "district-1"
    assert payload["level"] == "info"
    assert payload["logger"] == "district_assistant.tests"
    assert payload["tools"] == 2
