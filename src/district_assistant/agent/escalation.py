"""Hand-off to district staff through the escalation service."""

from __future__ import annotations

import math

import structlog

from district_assistant.agent.registry import Tool, ToolParams
from district_assistant.agent.services import EscalationRequest, EscalationService, EscalationTicket
from district_assistant.text import truncate
from district_assistant.types import (
    ClassifiedIntent,
    EscalationReason,
    IntentCategory,
    ToolCall,
    ToolDefinition,
    ToolResult,
    UrgencyLevel,
)

logger = structlog.get_logger(__name__)

ESCALATION_TOOL_NAME = "escalation"

# reason -> (staff role that owns it, default urgency)
_ROUTES: dict[EscalationReason, tuple[str, UrgencyLevel]] = {
    EscalationReason.EMERGENCY: ("administrator", UrgencyLevel.CRITICAL),
    EscalationReason.SAFETY_CONCERN: ("administrator", UrgencyLevel.CRITICAL),
    EscalationReason.SENSITIVE_TOPIC: ("counselor", UrgencyLevel.HIGH),
    EscalationReason.COMPLAINT: ("principal", UrgencyLevel.MEDIUM),
    EscalationReason.AUTHORIZATION_REQUIRED: ("administrator", UrgencyLevel.MEDIUM),
    EscalationReason.POLICY_EXCEPTION: ("administrator", UrgencyLevel.MEDIUM),
    EscalationReason.SYSTEM_ERROR: ("tech_support", UrgencyLevel.MEDIUM),
    EscalationReason.LOW_CONFIDENCE: ("support_staff", UrgencyLevel.LOW),
    EscalationReason.USER_REQUEST: ("support_staff", UrgencyLevel.LOW),
    EscalationReason.COMPLEX_QUERY: ("specialist", UrgencyLevel.LOW),
}

_URGENT_REASONS = frozenset(
    {EscalationReason.EMERGENCY, EscalationReason.SAFETY_CONCERN, EscalationReason.SENSITIVE_TOPIC}
)


class EscalationParams(ToolParams):
    reason: EscalationReason | None = None
    target_role: str | None = None
    additional_context: str | None = None
    is_safety_escalation: bool = False


class EscalationTool(Tool):
    """Creates a staff ticket and tells the user what happens next.

    If the escalation service itself fails, the user still gets a successful
    result pointing them at the main office, because an escalation must never
    end in silence.
    """

    definition = ToolDefinition(
        name=ESCALATION_TOOL_NAME,
        description="Escalate the conversation to a human staff member with a ticket reference.",
        required_permissions=(),
        handled_intents=(IntentCategory.EMERGENCY, IntentCategory.COMPLAINT),
        timeout_ms=5_000,
    )
    params_model = EscalationParams

    def __init__(self, service: EscalationService) -> None:
        self.service = service

    async def _execute(self, params: EscalationParams, call: ToolCall) -> ToolResult:
        intent = call.intent
        reason = params.reason or default_reason(intent)
        target_role = params.target_role or _ROUTES.get(reason, ("support_staff", UrgencyLevel.MEDIUM))[0]
        urgency = determine_urgency(reason, intent.urgency, params.is_safety_escalation)
        contact = None
        if call.district is not None:
            contact = call.district.main_office_contact or call.district.helpline_info

        request = EscalationRequest(
            tenant_id=call.user.tenant_id,
            user_id=call.user.user_id,
            user_role=call.user.role,
            reason=reason,
            urgency=urgency,
            target_role=target_role,
            summary=params.additional_context or intent.reasoning,
            original_query=intent.original_query,
            conversation_excerpt=[
                f"{message.role}: {truncate(message.content, 500)}" for message in call.history[-5:]
            ],
            student_id=intent.entities.get("student_id"),
        )

        try:
            ticket = await self.service.create_escalation(request)
            if urgency.is_elevated:
                await self.service.notify_urgent(ticket, request)
            available = await self.service.get_available_agents(call.user.tenant_id, target_role)
        except Exception as exc:
            logger.warning("escalation_service_failed", reason=reason.value, error=str(exc))
            return self.success(
                _fallback_message(reason, contact),
                confidence=0.7,
                data={"escalation_failed": True, "reason": reason.value},
                requires_follow_up=True,
                suggested_actions=["Contact the main office directly"],
            )

        logger.info(
            "escalation_created",
            reason=reason.value,
            urgency=urgency.value,
            target_role=target_role,
            reference=ticket.reference_number,
        )
        return self.success(
            _format_ticket(ticket, reason, urgency, available, contact, params.is_safety_escalation),
            confidence=0.9,
            data={
                "ticket_id": ticket.ticket_id,
                "reference_number": ticket.reference_number,
                "target_role": target_role,
                "urgency": urgency.value,
                "estimated_wait_seconds": ticket.estimated_wait_seconds,
            },
            requires_follow_up=True,
            suggested_actions=_suggested_actions(reason, urgency),
            reference_number=ticket.reference_number,
        )


def default_reason(intent: ClassifiedIntent) -> EscalationReason:
    if intent.category is IntentCategory.EMERGENCY:
        return EscalationReason.EMERGENCY
    if intent.category is IntentCategory.COMPLAINT:
        return EscalationReason.COMPLAINT
    if intent.confidence < 0.5:
        return EscalationReason.LOW_CONFIDENCE
    return EscalationReason.USER_REQUEST


def determine_urgency(
    reason: EscalationReason, intent_urgency: UrgencyLevel, is_safety_escalation: bool = False
) -> UrgencyLevel:
    if is_safety_escalation or reason in (EscalationReason.EMERGENCY, EscalationReason.SAFETY_CONCERN):
        return UrgencyLevel.CRITICAL
    if intent_urgency.is_elevated:
        return intent_urgency
    return _ROUTES.get(reason, ("support_staff", UrgencyLevel.MEDIUM))[1]


def _format_ticket(
    ticket: EscalationTicket,
    reason: EscalationReason,
    urgency: UrgencyLevel,
    available_agents: int,
    contact: str | None,
    is_safety_escalation: bool,
) -> str:
    if is_safety_escalation or reason in _URGENT_REASONS:
        lines = ["Your concern has been flagged as urgent and will receive immediate attention."]
    elif reason is EscalationReason.LOW_CONFIDENCE:
        lines = [
            "I want to make sure you get accurate information, so I'm connecting you "
            "with someone who can help."
        ]
    elif reason is EscalationReason.USER_REQUEST:
        lines = ["I'm connecting you with a staff member who can help you further."]
    else:
        lines = ["I'm transferring your request to the appropriate person for assistance."]

    lines.append("")
    lines.append(f"Reference Number: {ticket.reference_number}")
    wait = ticket.estimated_wait_seconds
    if urgency is UrgencyLevel.CRITICAL:
        lines.append("Priority: Urgent - someone will respond as soon as possible.")
    elif wait is not None:
        if wait < 60:
            lines.append("Estimated wait: less than 1 minute.")
        elif wait < 3600:
            lines.append(f"Estimated wait: about {math.ceil(wait / 60)} minutes.")
        else:
            hours = math.ceil(wait / 3600)
            lines.append(f"Estimated response: within {hours} hour{'s' if hours > 1 else ''}.")
    if available_agents > 0:
        lines.append("A staff member is available to assist you.")
    if contact and urgency.is_elevated:
        lines.append(f"For immediate assistance: {contact}")
    if urgency is UrgencyLevel.CRITICAL:
        lines.append("If anyone is in immediate danger, call 911.")
    lines.append("You can keep chatting here; a staff member will join the conversation.")
    return "\n".join(lines)


def _suggested_actions(reason: EscalationReason, urgency: UrgencyLevel) -> list[str]:
    actions: list[str] = []
    if urgency is UrgencyLevel.CRITICAL:
        actions.extend(["Watch for an urgent response", "Call the main office if needed"])
    if reason is EscalationReason.AUTHORIZATION_REQUIRED:
        actions.append("Prepare any relevant documentation")
    elif reason is EscalationReason.POLICY_EXCEPTION:
        actions.append("Review the specific policy in question")
    elif reason is EscalationReason.COMPLEX_QUERY:
        actions.append("Provide additional details if available")
    else:
        actions.append("Wait for a staff response")
    return actions


def _fallback_message(reason: EscalationReason, contact: str | None) -> str:
    office = contact or "your school's main office"
    if reason in _URGENT_REASONS:
        return (
            "I'm having trouble creating your support request, but your concern is important.\n\n"
            f"Please contact {office} directly by phone, email or in person.\n\n"
            "If this is an emergency, please call 911 immediately."
        )
    return (
        "I wasn't able to create a support request right now. "
        f"Please reach out to {office} and a staff member will help you."
    )
