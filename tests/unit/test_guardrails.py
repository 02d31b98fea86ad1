from district_assistant.config import SafetyConfig
from district_assistant.safety.guardrails import SafetyGuardrails, luhn_valid
from district_assistant.types import (
    ConversationMessage,
    GeneratedResponse,
    IntentCategory,
    PiiType,
    Severity,
    ViolationType,
)
from fakes import make_intent


def test_detects_email_and_phone_without_nested_duplicates() -> None:
    matches = SafetyGuardrails().detect_pii("Email me at jo@example.com or call 555-123-4567.")

    assert sorted(match.type.value for match in matches) == sorted(
        [PiiType.EMAIL.value, PiiType.PHONE.value]
    )
    email = next(match for match in matches if match.type is PiiType.EMAIL)
    assert email.confidence == 0.9


def test_credit_card_confidence_uses_luhn() -> None:
    guardrails = SafetyGuardrails()

    valid = guardrails.detect_pii("card 4111-1111-1111-1111")
    invalid = guardrails.detect_pii("card 4111-1111-1111-1112")

    assert [m.confidence for m in valid if m.type is PiiType.CREDIT_CARD] == [0.95]
    assert [m.confidence for m in invalid if m.type is PiiType.CREDIT_CARD] == [0.5]
    assert luhn_valid("4111 1111 1111 1111")
    assert not luhn_valid("1234")


def test_single_inbound_pii_passes_but_two_fail(parent) -> None:
    guardrails = SafetyGuardrails()

    one = guardrails.check_input("My email is jo@example.com", parent)
    two = guardrails.check_input("Email jo@example.com or call 555-123-4567", parent)

    assert one.passed and one.sanitized_content is None
    assert one.violations[0].severity is Severity.MEDIUM
    assert not two.passed
    assert two.sanitized_content == "Email [REDACTED] or call [REDACTED]"


def test_outbound_pii_is_high_severity(parent) -> None:
    result = SafetyGuardrails().check_output(GeneratedResponse("Call 555-123-4567", 0.9), parent)

    assert not result.passed
    assert result.has_high_severity
    assert result.sanitized_content == "Call [REDACTED]"
    assert result.recommendations == ["Remove or mask PII before sending the response"]


def test_harmful_content_blocks_but_policy_language_does_not(parent) -> None:
    guardrails = SafetyGuardrails()

    assert guardrails.filter_content("How do I report bullying at school?") == []
    blocked = guardrails.check_input("I want to kill myself", parent)

    assert not blocked.passed
    assert blocked.violations[0].type is ViolationType.HARMFUL_CONTENT
    assert "Block this content and escalate to an administrator" in blocked.recommendations


def test_blocked_and_sensitive_terms(parent) -> None:
    guardrails = SafetyGuardrails(
        SafetyConfig(custom_blocked_terms=["fundraiser", " "], sensitive_terms=["divorce"])
    )

    sensitive = guardrails.check_input("We are going through a divorce", parent)
    blocked = guardrails.check_input("Email jo@example.com about the Fundraiser", parent)

    assert sensitive.passed
    assert sensitive.violations[0].severity is Severity.LOW
    assert not blocked.passed
    assert blocked.sanitized_content == "Email [REDACTED] about the [REMOVED]"


def test_student_records_require_a_relationship(parent, guest) -> None:
    guardrails = SafetyGuardrails()
    answer = GeneratedResponse("Her grades this term are all above 90.", 0.9)

    own = guardrails.check_output(
        answer, parent, make_intent(IntentCategory.STUDENT_SPECIFIC, entities={"student_id": "stu-1"})
    )
    other = guardrails.check_output(
        answer, parent, make_intent(IntentCategory.STUDENT_SPECIFIC, entities={"student_id": "stu-2"})
    )
    guest_records = guardrails.check_output(answer, guest, make_intent(IntentCategory.STUDENT_SPECIFIC))
    guest_policy = guardrails.check_output(
        GeneratedResponse("The attendance policy allows ten excused absences.", 0.9),
        guest,
        make_intent(IntentCategory.POLICY_QUESTION),
    )

    assert own.passed
    assert [v.type for v in other.violations] == [ViolationType.UNAUTHORIZED_ACCESS]
    assert not other.passed
    assert not guest_records.passed
    assert guest_policy.passed


def test_excessive_disclosure_terms(parent) -> None:
    result = SafetyGuardrails().check_output(
        GeneratedResponse("The nurse keeps his medication in the office.", 0.9), parent
    )

    assert not result.passed
    assert result.violations[0].type is ViolationType.EXCESSIVE_DISCLOSURE
    assert result.sanitized_content == "The nurse keeps his medication in the office."


def test_length_limit_is_low_severity(parent) -> None:
    result = SafetyGuardrails(SafetyConfig(max_response_length=10)).check_input("a" * 20, parent)

    assert result.passed
    assert result.violations[0].type is ViolationType.LENGTH_EXCEEDED
    assert result.recommendations == ["Truncate or summarize the response"]


def test_disabled_checks_skip_detection(parent) -> None:
    guardrails = SafetyGuardrails(
        SafetyConfig(enable_pii_detection=False, enable_content_filter=False, enable_compliance_check=False)
    )

    result = guardrails.check_output(
        GeneratedResponse("Call 555-123-4567 about his medication", 0.9), parent
    )

    assert result.passed and result.violations == []


def test_thread_moderation_flags_failed_turns(parent) -> None:
    messages = [
        ConversationMessage(role="user", content="Hi there"),
        ConversationMessage(role="assistant", content="Call me at 555-123-4567"),
        ConversationMessage(role="user", content="jo@example.com and 555-222-3333"),
        ConversationMessage(role="user", content="my email is jo@example.com"),
    ]

    moderation = SafetyGuardrails().check_conversation_thread(messages, parent)

    assert moderation.needs_moderation
    assert moderation.flagged_indices == [1, 2]
    assert len(moderation.reasons) == len(set(moderation.reasons))


def test_ssn_is_flagged_once_and_fully_redacted() -> None:
    guardrails = SafetyGuardrails()
    text = "My SSN is 123-45-6789"

    matches = guardrails.detect_pii(text)
    result = guardrails.check_message(text, "outbound")

    assert [match.type for match in matches] == [PiiType.SSN]
    assert matches[0].confidence == 0.95
    assert result.sanitized_content == "My SSN is [REDACTED]"
