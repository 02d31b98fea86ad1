import pytest

from district_assistant.agent.intent import IntentClassifier, contains_safety_concern, normalize_entities
from district_assistant.config import ClassifierConfig
from district_assistant.llm import CompletionClient
from district_assistant.types import ConversationMessage, IntentCategory, UrgencyLevel
from fakes import ScriptedLLM, make_intent


def _classifier(llm: ScriptedLLM, **config) -> IntentClassifier:
    return IntentClassifier(CompletionClient(llm), ClassifierConfig(**config))


@pytest.mark.asyncio
async def test_classify_parses_camel_case_reply(conversation) -> None:
    llm = ScriptedLLM(
        {
            "category": "calendar_query",
            "confidence": 0.92,
            "entities": {"timeReference": "next week", "eventType": "", "dateRange": {"startDate": "2026-03-16"}},
            "requiresStudentContext": False,
            "urgency": "low",
            "shouldEscalate": False,
            "reasoning": "Asks about upcoming dates",
        }
    )

    intent = await _classifier(llm).classify("Is there school next week?", conversation)

    assert intent.category is IntentCategory.CALENDAR_QUERY
    assert intent.entities == {"time_reference": "next week", "date_range": {"start_date": "2026-03-16"}}
    assert intent.suggested_tools == ["calendar_query", "knowledge_retrieval"]
    assert intent.requires_tools is True
    assert intent.should_escalate is False
    assert intent.original_query == "Is there school next week?"


@pytest.mark.asyncio
async def test_invalid_json_is_retried_then_accepted(conversation) -> None:
    llm = ScriptedLLM("not json", '{"intent": "policy_question", "confidence": 0.8}')

    intent = await _classifier(llm, json_attempts=2).classify("dress code?", conversation)

    assert len(llm.calls) == 2
    assert intent.category is IntentCategory.POLICY_QUESTION


@pytest.mark.asyncio
async def test_failures_become_escalating_unknown(conversation) -> None:
    llm = ScriptedLLM(RuntimeError("rate limited"))

    intent = await _classifier(llm).classify("help", conversation)

    assert intent.category is IntentCategory.UNKNOWN
    assert intent.confidence == 0.0
    assert intent.should_escalate is True
    assert intent.reasoning.startswith("Classification failed:")
    assert intent.requires_tools is False


@pytest.mark.asyncio
async def test_escalation_overrides_model_flag(conversation) -> None:
    llm = ScriptedLLM(
        {"category": "complaint", "confidence": 0.9, "urgency": "high", "shouldEscalate": False},
        {"category": "general_info", "confidence": 0.55},
        {"category": "policy_question", "confidence": 0.9, "reasoning": "Parent says their child is being bullied"},
        {"category": "policy_question", "confidence": 0.9, "reasoning": "Pharmacy hours near campus"},
    )
    classifier = _classifier(llm)

    urgent_complaint = await classifier.classify("This is unacceptable", conversation)
    unsure = await classifier.classify("hmm", conversation)
    safety = await classifier.classify("kids keep picking on him", conversation)
    benign = await classifier.classify("where can I buy medicine", conversation)

    assert urgent_complaint.should_escalate
    assert unsure.should_escalate
    assert safety.should_escalate
    assert not benign.should_escalate


def test_should_escalate_emergency_and_model_flag() -> None:
    classifier = _classifier(ScriptedLLM())

    assert classifier.should_escalate(make_intent(IntentCategory.EMERGENCY))
    assert classifier.should_escalate(make_intent(), model_flag=True)
    assert not classifier.should_escalate(make_intent(IntentCategory.COMPLAINT, urgency=UrgencyLevel.MEDIUM))


def test_prompt_includes_context_and_recent_history(conversation) -> None:
    conversation.active_child_id = "stu-1"
    conversation.history = [
        ConversationMessage(role="user", content="first question"),
        ConversationMessage(role="assistant", content="x" * 400),
        ConversationMessage(role="user", content="second question"),
        ConversationMessage(role="assistant", content="second answer"),
    ]

    prompt = _classifier(ScriptedLLM(), history_turns=2, history_chars=50).build_prompt("When is lunch?", conversation)

    assert "- Role: parent (Parent or guardian of enrolled students)" in prompt
    assert "- District: Maple Valley School District (id: district-1)" in prompt
    assert "- Currently discussing child ID: stu-1" in prompt
    assert "- Has 1 children enrolled" in prompt
    assert "User: second question\nAssistant: second answer" in prompt
    assert "first question" not in prompt
    assert 'USER MESSAGE: "When is lunch?"' in prompt
    assert "- emergency: Urgent safety or emergency situations" in prompt


@pytest.mark.asyncio
async def test_batch_classify_preserves_order(conversation) -> None:
    llm = ScriptedLLM(
        {"category": "calendar_query", "confidence": 0.9},
        {"category": "operational", "confidence": 0.9},
        {"category": "policy_question", "confidence": 0.9},
    )

    results = await _classifier(llm, batch_concurrency=1).batch_classify(
        [("a", conversation), ("b", conversation), ("c", conversation)]
    )

    assert [r.original_query for r in results] == ["a", "b", "c"]
    assert [r.category for r in results] == [
        IntentCategory.CALENDAR_QUERY,
        IntentCategory.OPERATIONAL,
        IntentCategory.POLICY_QUESTION,
    ]


def test_entity_normalization_and_safety_lexicon() -> None:
    assert normalize_entities({"studentName": "Ava", "subject": None, "tags": []}) == {"student_name": "Ava"}
    assert contains_safety_concern("", {"topic": "self-harm"})
    assert not contains_safety_concern("asks about the charm bracelet fundraiser", {})
