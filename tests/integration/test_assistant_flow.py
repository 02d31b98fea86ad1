import pytest

from district_assistant.agent.services import (
    InMemoryCalendarService,
    InMemoryEscalationService,
    InMemoryStudentDataService,
)
from district_assistant.bootstrap import Assistant, build_assistant
from district_assistant.config import AssistantSettings, ChunkingConfig, EmbeddingConfig
from district_assistant.ingest.embedder import HashingEmbeddings
from district_assistant.retrieval.vector_store import InMemoryKnowledgeStore
from district_assistant.types import (
    ConversationContext,
    HybridSearchOptions,
    IntentCategory,
    SourceRecord,
)
from fakes import KeyedLLM

CLASSIFIER = "You are an intent classifier"
RERANKER = "Rate how relevant each document"
GENERATOR = "Groundedness rules"

HANDBOOK = """# Reporting Absences
Parents must report an absence before 9 AM by calling the school office.
A written note is required within two days of the student's return.

# Late Arrivals
Students arriving after 8:15 AM sign in at the front office.
Three late arrivals in a month count as one unexcused absence.
"""


def _assistant(llm: KeyedLLM, escalations: InMemoryEscalationService | None = None) -> Assistant:
    settings = AssistantSettings(
        _env_file=None,
        embedding=EmbeddingConfig(dimensions=64, retry_delay_ms=0, inter_batch_delay_ms=0),
        chunking=ChunkingConfig(min_chunk_size=10, max_chunk_size=80, overlap_size=10),
    )
    return build_assistant(
        settings,
        store=InMemoryKnowledgeStore(),
        calendar_service=InMemoryCalendarService(),
        student_data_service=InMemoryStudentDataService(),
        escalation_service=escalations or InMemoryEscalationService(),
        chat_model=llm,
        embeddings=HashingEmbeddings(64),
    )


async def _ingest_handbook(assistant: Assistant) -> None:
    await assistant.ingestion.ingest(
        HANDBOOK,
        SourceRecord(
            source_id="attendance-handbook",
            tenant_id="district-1",
            title="Attendance Handbook",
            category="policy",
        ),
        format_name="markdown",
    )


@pytest.mark.asyncio
async def test_policy_question_is_answered_from_ingested_documents(
    conversation: ConversationContext,
) -> None:
    llm = KeyedLLM(
        {
            CLASSIFIER: {
                "category": "policy_question",
                "confidence": 0.92,
                "urgency": "low",
                "shouldEscalate": False,
                "reasoning": "attendance policy",
            },
            RERANKER: "[]",
            GENERATOR: {
                "mainResponse": "Parents must report an absence before 9 AM by calling the school office.",
                "citations": [{"sourceId": "attendance-handbook", "sourceTitle": "Attendance Handbook"}],
                "suggestedFollowUps": ["What counts as an excused absence?"],
            },
        }
    )
    assistant = _assistant(llm)
    await _ingest_handbook(assistant)

    reply = await assistant.pipeline.answer("How do I report an absence?", conversation)

    assert reply.intent_category is IntentCategory.POLICY_QUESTION
    assert reply.tools_used == ["knowledge_retrieval"]
    assert [citation.source_id for citation in reply.citations] == ["attendance-handbook"]
    assert reply.citations[0].title == "Attendance Handbook"
    assert reply.suggested_follow_ups == ["What counts as an excused absence?"]
    assert not reply.escalated
    assert llm.hits == [CLASSIFIER, RERANKER, GENERATOR]

    record = assistant.trace_store.get(reply.reference_id)
    assert [trace.name for trace in record.tool_traces] == ["knowledge_retrieval"]
    assert record.tool_traces[0].success
    assert any("report an absence" in snippet for snippet in record.source_snippets)
    assert record.groundedness == 1.0


@pytest.mark.asyncio
async def test_emergency_creates_a_ticket_and_mentions_it(conversation: ConversationContext) -> None:
    escalations = InMemoryEscalationService()
    llm = KeyedLLM(
        {
            CLASSIFIER: {
                "category": "emergency",
                "confidence": 0.97,
                "urgency": "critical",
                "shouldEscalate": True,
                "reasoning": "someone is hurt",
            },
            GENERATOR: {"mainResponse": "Staff have been alerted and will contact you right away."},
        }
    )
    assistant = _assistant(llm, escalations)

    reply = await assistant.pipeline.answer("A student fell and is hurt on the playground", conversation)

    ticket, request = escalations.tickets[0]
    assert reply.escalated
    assert reply.tools_used == ["escalation"]
    assert reply.reference_id == ticket.reference_number
    assert request.target_role == "administrator"
    assert escalations.urgent_notifications == [ticket.ticket_id]
    assert RERANKER not in llm.hits


@pytest.mark.asyncio
async def test_retriever_returns_section_aware_hits_after_ingestion() -> None:
    assistant = _assistant(KeyedLLM({RERANKER: "[]"}))
    await _ingest_handbook(assistant)

    response = await assistant.retriever.search(
        HybridSearchOptions(query="late arrivals sign in", tenant_id="district-1", limit=3)
    )
    other_tenant = await assistant.retriever.search(
        HybridSearchOptions(query="late arrivals sign in", tenant_id="district-2")
    )

    assert response.results
    assert response.results[0].source_id == "attendance-handbook"
    assert any(item.metadata.get("section_header") == "Late Arrivals" for item in response.results)
    assert other_tenant.results == []


def test_health_reports_tools_and_embedding_mode() -> None:
    health = _assistant(KeyedLLM({})).health()

    assert health["tools"] == ["calendar_query", "escalation", "knowledge_retrieval", "student_data_fetch"]
    assert health["embedding_mode"] == "provider"
    assert health["trace_count"] == 0
