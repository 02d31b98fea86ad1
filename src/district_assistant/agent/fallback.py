"""Deterministic replies used when tools, the model or safety checks fail.

None of these call a model, so they are always available. Each carries a
fixed, reduced confidence and asks for human follow-up.
"""

from __future__ import annotations

from typing import Any

from district_assistant.types import (
    ClassifiedIntent,
    DistrictProfile,
    ExecutionResult,
    GeneratedResponse,
)

URGENT_CONFIDENCE = 0.2
DENIED_CONFIDENCE = 0.3
MISSING_CONTEXT_CONFIDENCE = 0.4
GENERIC_CONFIDENCE = 0.3

_DEFAULT_FOLLOW_UPS = [
    "Can I help you with something else?",
    "Would you like me to connect you with a staff member?",
]

_DENIED_CODES = ("PERMISSION_DENIED", "ACCESS_DENIED")
_MISSING_CONTEXT_CODES = ("NO_STUDENT", "MISSING_STUDENT_CONTEXT")


def tool_failure_response(
    intent: ClassifiedIntent,
    execution: ExecutionResult,
    district: DistrictProfile | None = None,
) -> GeneratedResponse:
    """Pick the fallback from urgency first, then from the failure codes."""

    errors = [result.error for result in execution.tool_results if result.error]
    if intent.urgency.is_elevated:
        kind, content, confidence = "urgent", _urgent_text(district), URGENT_CONFIDENCE
    elif any(code in error for error in errors for code in _DENIED_CODES):
        kind, confidence = "permission_denied", DENIED_CONFIDENCE
        content = (
            "I'm unable to access that information with your current permissions. "
            "If you believe you should have access, please contact the school administration."
        )
    elif any(code in error for error in errors for code in _MISSING_CONTEXT_CODES):
        kind, confidence = "missing_student_context", MISSING_CONTEXT_CONFIDENCE
        content = (
            "I need to know which student you're asking about. "
            "Could you tell me the student's name?"
        )
    else:
        kind, content, confidence = "generic", _generic_text(district), GENERIC_CONFIDENCE

    return _response(content, confidence, intent, execution, fallback=kind, errors=errors)


def provider_failure_response(
    intent: ClassifiedIntent,
    execution: ExecutionResult,
    district: DistrictProfile | None = None,
) -> GeneratedResponse:
    return _response(
        _generic_text(district),
        GENERIC_CONFIDENCE,
        intent,
        execution,
        fallback="provider_failure",
    )


def safety_blocked_text(reference_id: str, district: DistrictProfile | None = None) -> str:
    office = _office(district)
    return (
        "I can't help with that message here, but I've shared your concern with district "
        f"staff so a person can follow up. Your reference ID is {reference_id}.\n\n"
        f"If you need help right away, please contact {office}. "
        "If anyone is in immediate danger, call 911."
    )


def withheld_text(district: DistrictProfile | None = None) -> str:
    return (
        "I found information related to your question, but I can't share it in this chat. "
        f"Please contact {_office(district)} and a staff member will help you."
    )


def escalation_text(reference_id: str, district: DistrictProfile | None = None) -> str:
    return (
        "I ran into a problem answering your question, so I'm escalating it for human help. "
        f"Your reference ID is {reference_id}. "
        f"You can also reach {_office(district)} directly."
    )


def _response(
    content: str,
    confidence: float,
    intent: ClassifiedIntent,
    execution: ExecutionResult,
    **metadata: Any,
) -> GeneratedResponse:
    return GeneratedResponse(
        content=content,
        confidence=confidence,
        citations=[],
        suggested_follow_ups=list(_DEFAULT_FOLLOW_UPS),
        requires_follow_up=True,
        metadata={
            "intent": intent.category.value,
            "tools_used": [result.tool_name for result in execution.tool_results],
            "processing_time_ms": execution.total_execution_time_ms,
            **metadata,
        },
    )


def _office(district: DistrictProfile | None) -> str:
    if district is not None and district.main_office_contact:
        return district.main_office_contact
    return "your school's main office"


def _urgent_text(district: DistrictProfile | None) -> str:
    helpline = district.helpline_info if district is not None and district.helpline_info else None
    return (
        "I'm having difficulty retrieving the information you need right now. "
        "Given the urgency of your request, please contact the school office directly.\n\n"
        + (helpline or "Please call your school's main office for immediate assistance.")
    )


def _generic_text(district: DistrictProfile | None) -> str:
    return (
        "I'm sorry, I'm having trouble finding that information right now. You might try:\n"
        "- Rephrasing your question\n"
        "- Checking the school website\n"
        f"- Contacting {_office(district)}\n\n"
        "Is there something else I can help you with?"
    )
