"""Per-turn tracing and groundedness evaluation."""

from __future__ import annotations

import re
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone

from district_assistant.errors import NotFoundError
from district_assistant.text import split_sentences, words
from district_assistant.types import IntentCategory, ToolTrace


@dataclass(slots=True)
class TraceRecord:
    trace_id: str
    timestamp_utc: str
    tenant_id: str
    user_id: str
    question: str
    answer: str = ""
    intent_category: IntentCategory = IntentCategory.UNKNOWN
    citations: list[str] = field(default_factory=list)
    source_snippets: list[str] = field(default_factory=list)
    tool_traces: list[ToolTrace] = field(default_factory=list)
    input_tokens: int = 0
    output_tokens: int = 0
    latency_ms: float = 0.0
    groundedness: float = 0.0
    safety_filtered: bool = False
    escalated: bool = False
    stage_latency_ms: dict[str, float] = field(default_factory=dict)


class GroundednessEvaluator:
    """Estimates how much of an answer is supported by tool output.

    A sentence counts as grounded when at least one source snippet covers
    ``min_overlap`` of its words. Deterministic, so usable in contract tests.
    """

    def __init__(self, min_overlap: float = 0.35) -> None:
        self.min_overlap = min_overlap

    def score(self, answer: str, source_snippets: list[str]) -> float:
        sentences = [span.text for span in split_sentences(answer)]
        if not sentences:
            return 1.0
        if not source_snippets:
            return 0.0

        source_word_sets = [set(words(source)) for source in source_snippets]
        grounded = 0
        for sentence in sentences:
            clean_sentence = re.sub(r"\[[^\]]+\]", "", sentence)
            sentence_words = set(words(clean_sentence))
            if not sentence_words:
                grounded += 1
                continue
            if any(
                len(sentence_words & source) / len(sentence_words) >= self.min_overlap
                for source in source_word_sets
            ):
                grounded += 1
        return grounded / len(sentences)


class TraceStore:
    """In-memory trace storage; one record per assistant turn."""

    def __init__(
        self,
        *,
        groundedness_evaluator: GroundednessEvaluator | None = None,
        max_records: int = 1000,
    ) -> None:
        self._records: dict[str, TraceRecord] = {}
        self._groundedness = groundedness_evaluator or GroundednessEvaluator()
        self._max_records = max_records

    def start(self, *, tenant_id: str, user_id: str, question: str) -> TraceRecord:
        record = TraceRecord(
            trace_id=str(uuid.uuid4()),
            timestamp_utc=datetime.now(timezone.utc).isoformat(),
            tenant_id=tenant_id,
            user_id=user_id,
            question=question,
        )
        self._records[record.trace_id] = record
        while len(self._records) > self._max_records:
            self._records.pop(next(iter(self._records)))
        return record

    def finish(self, record: TraceRecord, *, answer: str, latency_ms: float) -> TraceRecord:
        record.answer = answer
        record.latency_ms = latency_ms
        record.groundedness = self._groundedness.score(answer, record.source_snippets)
        return record

    def get(self, trace_id: str) -> TraceRecord:
        record = self._records.get(trace_id)
        if record is None:
            raise NotFoundError(f"Trace not found: {trace_id}")
        return record

    def list_recent(self, limit: int = 20) -> list[TraceRecord]:
        return list(self._records.values())[-limit:]

    def summary(self) -> dict[str, float | int]:
        """Aggregate core observability metrics for dashboard display."""
        records = list(self._records.values())
        total = len(records)
        if total == 0:
            return {
                "total_requests": 0,
                "avg_latency_ms": 0.0,
                "p95_latency_ms": 0.0,
                "avg_groundedness": 0.0,
                "escalation_rate": 0.0,
                "safety_filtered_rate": 0.0,
            }

        latencies = sorted(record.latency_ms for record in records)
        p95_index = max(0, int((len(latencies) * 0.95) - 1))
        return {
            "total_requests": total,
            "avg_latency_ms": sum(latencies) / total,
            "p95_latency_ms": latencies[p95_index],
            "avg_groundedness": sum(record.groundedness for record in records) / total,
            "escalation_rate": sum(1 for record in records if record.escalated) / total,
            "safety_filtered_rate": sum(1 for record in records if record.safety_filtered)
            / total,
        }


class Timer:
    """Simple context timer used around pipeline stages."""

    def __init__(self) -> None:
        self._start = 0.0
        self.elapsed_ms = 0.0

    def __enter__(self) -> "Timer":
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.elapsed_ms = (time.perf_counter() - self._start) * 1000.0
