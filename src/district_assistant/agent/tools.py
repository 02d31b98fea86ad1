"""Built-in knowledge and calendar tools, and default registration."""

from __future__ import annotations

import calendar
import re
from collections.abc import Callable
from datetime import date, timedelta
from typing import Any

from pydantic import Field

from district_assistant.agent.escalation import EscalationTool
from district_assistant.agent.registry import Tool, ToolParams, ToolRegistry
from district_assistant.agent.services import (
    CalendarEvent,
    CalendarService,
    EscalationService,
    StudentDataService,
)
from district_assistant.agent.student_data import StudentDataTool
from district_assistant.retrieval.retriever import HybridRetriever
from district_assistant.text import truncate
from district_assistant.types import (
    Citation,
    HybridSearchOptions,
    HybridSearchResult,
    IntentCategory,
    Permission,
    SearchFilters,
    ToolCall,
    ToolDefinition,
    ToolResult,
)

_DEFAULT_WINDOW_DAYS = 30
_UNKNOWN_REFERENCE_WINDOW_DAYS = 14
_EVENT_TYPE_KEYWORDS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("conference", re.compile(r"\bconferences?\b", re.IGNORECASE)),
    ("holiday", re.compile(r"\b(holiday|break|vacation|no school)\b", re.IGNORECASE)),
    ("deadline", re.compile(r"\b(deadline|due)\b", re.IGNORECASE)),
    ("meeting", re.compile(r"\b(meeting|board)\b", re.IGNORECASE)),
)
_TIME_REFERENCES = re.compile(
    r"\b(today|tomorrow|this week|next week|this month|next month)\b", re.IGNORECASE
)


class KnowledgeSearchParams(ToolParams):
    query: str | None = None
    limit: int = Field(default=5, ge=1, le=20)
    min_score: float = Field(default=0.0, ge=0.0)
    source_types: list[str] = Field(default_factory=list)
    categories: list[str] = Field(default_factory=list)


class KnowledgeRetrievalTool(Tool):
    """Answers policy and general questions from indexed district documents."""

    definition = ToolDefinition(
        name="knowledge_retrieval",
        description=(
            "Search district policies, handbooks, announcements and FAQs. "
            "Use for policy questions, general information and procedures."
        ),
        required_permissions=(Permission.READ_KNOWLEDGE,),
        handled_intents=(
            IntentCategory.POLICY_QUESTION,
            IntentCategory.GENERAL_INFO,
            IntentCategory.OPERATIONAL,
            IntentCategory.CALENDAR_QUERY,
            IntentCategory.ADMINISTRATIVE,
        ),
        timeout_ms=10_000,
    )
    params_model = KnowledgeSearchParams

    def __init__(self, retriever: HybridRetriever) -> None:
        self.retriever = retriever

    async def _execute(self, params: KnowledgeSearchParams, call: ToolCall) -> ToolResult:
        query = params.query or call.intent.original_query
        response = await self.retriever.search(
            HybridSearchOptions(
                query=query,
                tenant_id=call.user.tenant_id,
                limit=params.limit,
                min_score=params.min_score,
                filters=SearchFilters(
                    source_types=params.source_types, categories=params.categories
                ),
            )
        )
        if not response.results:
            return self.success(
                "No relevant documents were found in the district knowledge base.",
                confidence=0.3,
                result_count=0,
            )

        relevance = [_relevance(item) for item in response.results]
        return self.success(
            _format_hits(response.results),
            confidence=min(sum(relevance) / len(relevance) + 0.1, 1.0),
            citations=_citations(response.results),
            result_count=len(response.results),
            search_ms=response.timing.total_ms,
        )


class CalendarParams(ToolParams):
    start_date: date | None = None
    end_date: date | None = None
    event_types: list[str] = Field(default_factory=list)


class CalendarQueryTool(Tool):
    """Looks up school calendar events in a resolved date window."""

    definition = ToolDefinition(
        name="calendar_query",
        description=(
            "Look up school calendar events: holidays, early dismissals, "
            "conferences, deadlines and meetings within a date range."
        ),
        required_permissions=(Permission.READ_CALENDAR,),
        handled_intents=(IntentCategory.CALENDAR_QUERY, IntentCategory.OPERATIONAL),
        timeout_ms=5_000,
    )
    params_model = CalendarParams

    def __init__(
        self, service: CalendarService, *, clock: Callable[[], date] = date.today
    ) -> None:
        self.service = service
        self.clock = clock

    async def _execute(self, params: CalendarParams, call: ToolCall) -> ToolResult:
        start, end = self.resolve_range(params, call.intent.entities, call.intent.original_query)
        event_types = params.event_types or _infer_event_types(call.intent.original_query)
        events = await self.service.list_events(
            call.user.tenant_id,
            start,
            end,
            event_types=event_types or None,
            school_ids=call.user.school_ids or None,
        )
        window = f"{_format_day(start)} and {_format_day(end)}"
        if not events:
            return self.success(
                f"No calendar events were found between {window}.",
                confidence=0.7,
                data=[],
                date_range=[start.isoformat(), end.isoformat()],
            )

        lines = [f"Calendar events between {window}:"]
        lines.extend(_format_event(event) for event in events)
        return self.success(
            "\n".join(lines),
            confidence=0.95,
            data=[_event_data(event) for event in events],
            date_range=[start.isoformat(), end.isoformat()],
        )

    def resolve_range(
        self, params: CalendarParams, entities: dict[str, Any], query: str
    ) -> tuple[date, date]:
        today = self.clock()
        if params.start_date is not None:
            return params.start_date, params.end_date or params.start_date

        date_range = entities.get("date_range")
        if isinstance(date_range, dict):
            start = _parse_date(date_range.get("start"))
            end = _parse_date(date_range.get("end"))
            if start is not None:
                return start, end or start
        single = _parse_date(entities.get("date"))
        if single is not None:
            return single, single

        reference = entities.get("time_reference")
        if not isinstance(reference, str) or not reference.strip():
            match = _TIME_REFERENCES.search(query)
            reference = match.group(1) if match else None
        if reference:
            return _reference_window(reference, today)
        return today, today + timedelta(days=_DEFAULT_WINDOW_DAYS)


def register_builtin_tools(
    registry: ToolRegistry,
    *,
    retriever: HybridRetriever,
    calendar_service: CalendarService,
    student_data_service: StudentDataService,
    escalation_service: EscalationService,
) -> None:
    """Register the default tool set used by the router.

    Tools:
    - `knowledge_retrieval`: hybrid search over district documents with citations.
    - `calendar_query`: calendar events in a resolved date window.
    - `student_data_fetch`: grades, attendance and assignments, relationship-checked.
    - `escalation`: hands the conversation to district staff with a ticket.
    """

    registry.register(KnowledgeRetrievalTool(retriever))
    registry.register(CalendarQueryTool(calendar_service))
    registry.register(StudentDataTool(student_data_service))
    registry.register(EscalationTool(escalation_service))


def _relevance(item: HybridSearchResult) -> float:
    for score in (item.rerank_score, item.vector_score, item.keyword_score):
        if score is not None:
            return min(max(score, 0.0), 1.0)
    return 0.0


def _format_hits(results: list[HybridSearchResult]) -> str:
    blocks: list[str] = []
    for i, item in enumerate(results, start=1):
        title = item.metadata.get("title") or item.source_id
        header = item.metadata.get("section_header")
        label = f"{title} - {header}" if header else title
        blocks.append(f"[{i}] {label}\n{truncate(item.content.strip(), 800)}")
    return "\n\n".join(blocks)


def _citations(results: list[HybridSearchResult]) -> list[Citation]:
    citations: dict[str, Citation] = {}
    for item in results:
        if item.source_id in citations:
            continue
        citations[item.source_id] = Citation(
            source_id=item.source_id,
            title=str(item.metadata.get("title") or item.source_id),
            excerpt=truncate(item.content.strip(), 200),
        )
    return list(citations.values())


def _infer_event_types(query: str) -> list[str]:
    return [name for name, pattern in _EVENT_TYPE_KEYWORDS if pattern.search(query)]


def _parse_date(value: Any) -> date | None:
    if isinstance(value, date):
        return value
    if not isinstance(value, str):
        return None
    try:
        return date.fromisoformat(value.strip()[:10])
    except ValueError:
        return None


def _reference_window(reference: str, today: date) -> tuple[date, date]:
    reference = reference.strip().lower()
    if reference == "today":
        return today, today
    if reference == "tomorrow":
        tomorrow = today + timedelta(days=1)
        return tomorrow, tomorrow
    if reference == "this week":
        return today, today + timedelta(days=6 - today.weekday())
    if reference == "next week":
        monday = today + timedelta(days=7 - today.weekday())
        return monday, monday + timedelta(days=6)
    if reference == "this month":
        last_day = calendar.monthrange(today.year, today.month)[1]
        return today, today.replace(day=last_day)
    if reference == "next month":
        year, month = (today.year + 1, 1) if today.month == 12 else (today.year, today.month + 1)
        return date(year, month, 1), date(year, month, calendar.monthrange(year, month)[1])
    return today, today + timedelta(days=_UNKNOWN_REFERENCE_WINDOW_DAYS)


def _format_day(day: date) -> str:
    return day.strftime("%a, %b %d, %Y")


def _format_event(event: CalendarEvent) -> str:
    when = _format_day(event.start)
    if event.end and event.end != event.start:
        when = f"{when} - {_format_day(event.end)}"
    line = f"- {when}: {event.title} ({event.event_type})"
    if event.location:
        line += f" at {event.location}"
    return line


def _event_data(event: CalendarEvent) -> dict[str, Any]:
    return {
        "id": event.event_id,
        "title": event.title,
        "start": event.start.isoformat(),
        "end": event.end.isoformat() if event.end else None,
        "type": event.event_type,
        "location": event.location,
    }
