import pytest

from district_assistant.agent import fallback
from district_assistant.agent.generator import ModelCitation, ResponseGenerator, merge_citations
from district_assistant.llm import CompletionClient
from district_assistant.types import (
    Citation,
    ConversationContext,
    ConversationMessage,
    ExecutionResult,
    IntentCategory,
    ToolResult,
    UrgencyLevel,
    UserContext,
    UserRole,
)
from fakes import ScriptedLLM, make_intent

POLICY = Citation(source_id="attendance", title="Attendance Policy", excerpt="Report absences by 9 AM.")


def _ok(name: str = "knowledge_retrieval", confidence: float = 0.8) -> ToolResult:
    return ToolResult(
        success=True,
        content="Parents must report an absence before 9 AM.",
        citations=[POLICY],
        metadata={"tool_name": name, "confidence": confidence},
    )


def _failed(error: str, name: str = "student_data_fetch") -> ToolResult:
    return ToolResult(success=False, content="", metadata={"tool_name": name, "error": error})


def _execution(*results: ToolResult, follow_up: bool = False) -> ExecutionResult:
    successful = [r for r in results if r.success]
    return ExecutionResult(
        tool_results=list(results),
        all_successful=len(successful) == len(results),
        combined_confidence=0.8 if successful else 0.0,
        total_execution_time_ms=12.0,
        requires_follow_up=follow_up,
    )


@pytest.mark.asyncio
async def test_json_reply_becomes_grounded_response(parent, conversation) -> None:
    llm = ScriptedLLM(
        {
            "mainResponse": "Call the office before **9 AM**.",
            "citations": [
                {"sourceId": "attendance", "sourceTitle": "Renamed", "quote": "x"},
                {"sourceId": "handbook", "sourceTitle": "Family Handbook", "quote": "See page 4"},
            ],
            "suggestedFollowUps": ["What counts as excused?"],
            "clarificationNeeded": True,
            "clarificationPrompt": "Which school does your child attend?",
        }
    )
    generator = ResponseGenerator(CompletionClient(llm))

    response = await generator.generate(make_intent(), _execution(_ok()), parent, conversation)

    assert response.content == "Call the office before **9 AM**."
    assert response.confidence == 0.8
    assert [c.source_id for c in response.citations] == ["attendance", "handbook"]
    assert response.citations[0].title == "Attendance Policy"
    assert response.suggested_follow_ups[0] == "Which school does your child attend?"
    assert response.requires_follow_up
    assert response.metadata["tools_used"] == ["knowledge_retrieval"]
    assert "Maple Valley School District" in llm.system()
    assert "For parents:" in llm.system()
    assert "[knowledge_retrieval] SUCCESS (confidence: 0.80)" in llm.prompt()


@pytest.mark.asyncio
async def test_raw_text_reply_is_penalized(parent) -> None:
    generator = ResponseGenerator(CompletionClient(ScriptedLLM("Absences must be reported by 9 AM.")))

    response = await generator.generate(make_intent(), _execution(_ok()), parent)

    assert response.content == "Absences must be reported by 9 AM."
    assert response.confidence == pytest.approx(0.64)
    assert response.metadata["parse_error"] is True
    assert [c.source_id for c in response.citations] == ["attendance"]


@pytest.mark.asyncio
async def test_provider_failure_uses_generic_fallback(parent, conversation) -> None:
    llm = ScriptedLLM(RuntimeError("rate limited"))
    generator = ResponseGenerator(CompletionClient(llm))

    response = await generator.generate(make_intent(), _execution(_ok()), parent, conversation)

    assert response.metadata["fallback"] == "provider_failure"
    assert response.confidence == fallback.GENERIC_CONFIDENCE
    assert "the district office at 555-0199" in response.content


@pytest.mark.asyncio
async def test_all_tools_failed_skips_the_model(parent) -> None:
    llm = ScriptedLLM("should not be used")
    generator = ResponseGenerator(CompletionClient(llm))

    denied = await generator.generate(
        make_intent(), _execution(_failed("PERMISSION_DENIED: role 'guest' may not use x")), parent
    )
    missing = await generator.generate(
        make_intent(), _execution(_failed("MISSING_STUDENT_CONTEXT: no student")), parent
    )

    assert llm.calls == []
    assert denied.metadata["fallback"] == "permission_denied"
    assert denied.confidence == fallback.DENIED_CONFIDENCE
    assert missing.metadata["fallback"] == "missing_student_context"
    assert missing.requires_follow_up
    assert missing.citations == []


def test_urgent_fallback_wins_over_error_codes(district) -> None:
    intent = make_intent(urgency=UrgencyLevel.HIGH)

    response = fallback.tool_failure_response(intent, _execution(_failed("PERMISSION_DENIED")), district)

    assert response.metadata["fallback"] == "urgent"
    assert response.confidence == fallback.URGENT_CONFIDENCE
    assert response.content.endswith("Call the district helpline at 555-0100.")


def test_fallback_texts_name_the_office(district) -> None:
    assert "ESC-1234" in fallback.safety_blocked_text("ESC-1234", district)
    assert "call 911" in fallback.safety_blocked_text("ESC-1234")
    assert "your school's main office" in fallback.withheld_text()
    assert "trace-9" in fallback.escalation_text("trace-9", district)


@pytest.mark.asyncio
async def test_prompt_includes_recent_history_and_follow_up_note(parent, district) -> None:
    llm = ScriptedLLM({"mainResponse": "ok"})
    generator = ResponseGenerator(CompletionClient(llm))
    conversation = ConversationContext(
        user=parent,
        district=district,
        history=[ConversationMessage(role="user", content=f"turn {i}") for i in range(5)],
        topics=["attendance"],
    )

    await generator.generate(make_intent(), _execution(_ok(), follow_up=True), parent, conversation)

    prompt = llm.prompt()
    assert "user: turn 1" not in prompt
    assert "user: turn 4" in prompt
    assert "Human follow-up has been initiated" in prompt
    assert "Current conversation topics: attendance" in llm.system()


@pytest.mark.asyncio
async def test_generate_simple(parent) -> None:
    generator = ResponseGenerator(CompletionClient(ScriptedLLM("  Hi Jordan!  ", RuntimeError("down"))))

    greeting = await generator.generate_simple("hello", parent)
    fallback_greeting = await generator.generate_simple("hello", parent)

    assert greeting.content == "Hi Jordan!" and greeting.confidence == 0.9
    assert fallback_greeting.content == "Hello! How can I help you today?"
    assert fallback_greeting.metadata["error"] is True


def test_guest_gets_community_audience() -> None:
    generator = ResponseGenerator(CompletionClient(ScriptedLLM()))
    guest = UserContext(user_id="g", tenant_id="district-1", role=UserRole.GUEST)

    prompt = generator.build_system_prompt(guest)

    assert "community members in the school district" in prompt
    assert "For staff members:" in prompt


def test_merge_citations_prefers_tool_citations() -> None:
    merged = merge_citations(
        [POLICY, Citation(source_id="attendance", title="Duplicate")],
        [ModelCitation(source_id="calendar")],
    )

    assert [(c.source_id, c.title) for c in merged] == [
        ("attendance", "Attendance Policy"),
        ("calendar", "calendar"),
    ]


def test_intent_category_lands_in_fallback_metadata() -> None:
    response = fallback.provider_failure_response(
        make_intent(IntentCategory.CALENDAR_QUERY), _execution(_ok("calendar_query"))
    )

    assert response.metadata["intent"] == "calendar_query"
    assert response.metadata["tools_used"] == ["calendar_query"]
