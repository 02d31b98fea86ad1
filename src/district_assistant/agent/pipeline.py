"""Single-turn assistant pipeline with safety screening and tracing."""

from __future__ import annotations

import re
from contextvars import ContextVar
from time import perf_counter

import structlog

from district_assistant.agent import fallback
from district_assistant.agent.escalation import ESCALATION_TOOL_NAME
from district_assistant.agent.generator import ResponseGenerator
from district_assistant.agent.intent import IntentClassifier
from district_assistant.agent.router import ToolRouter
from district_assistant.errors import SafetyBlockedError
from district_assistant.obs.logger_config import bind_turn_context
from district_assistant.obs.tracing import Timer, TraceRecord, TraceStore
from district_assistant.safety.guardrails import SafetyGuardrails
from district_assistant.text import estimate_tokens
from district_assistant.types import (
    AssistantReply,
    Citation,
    ClassifiedIntent,
    ConversationContext,
    EscalationReason,
    ExecutionResult,
    GeneratedResponse,
    IntentCategory,
    RoutingDecision,
    SafetyCheckResult,
    Severity,
    ToolTrace,
    UrgencyLevel,
    ViolationType,
)

logger = structlog.get_logger(__name__)

_GREETING = re.compile(
    r"^\s*(hi|hello|hey|good (morning|afternoon|evening)|thanks|thank you)[\s!.,]*$",
    re.IGNORECASE,
)

_turn_traces: ContextVar[list[ToolTrace] | None] = ContextVar("turn_tool_traces", default=None)


class AssistantPipeline:
    """Runs one user turn: screen, classify, route, execute, generate, screen.

    `answer` never raises and never returns an empty body. Unexpected
    failures produce an escalation notice whose reference id is the trace id.
    """

    def __init__(
        self,
        *,
        guardrails: SafetyGuardrails,
        classifier: IntentClassifier,
        router: ToolRouter,
        generator: ResponseGenerator,
        trace_store: TraceStore | None = None,
    ) -> None:
        self.guardrails = guardrails
        self.classifier = classifier
        self.router = router
        self.generator = generator
        self.trace_store = trace_store or TraceStore()
        self.router.registry.add_observer(_record_tool_trace)

    async def answer(self, message: str, conversation: ConversationContext) -> AssistantReply:
        started = perf_counter()
        user = conversation.user
        record = self.trace_store.start(tenant_id=user.tenant_id, user_id=user.user_id, question=message)
        bind_turn_context(trace_id=record.trace_id, tenant_id=user.tenant_id, user_id=user.user_id)
        traces: list[ToolTrace] = []
        token = _turn_traces.set(traces)
        try:
            reply = await self._run(message, conversation, record)
        except Exception:
            logger.exception("assistant_turn_failed")
            reply = AssistantReply(
                content=fallback.escalation_text(record.trace_id, conversation.district),
                confidence=0.0,
                requires_follow_up=True,
                escalated=True,
                user_message=message,
            )
        finally:
            _turn_traces.reset(token)

        reply.latency_ms = (perf_counter() - started) * 1000.0
        reply.reference_id = reply.reference_id or record.trace_id
        record.tool_traces = traces
        record.intent_category = reply.intent_category
        record.citations = [citation.source_id for citation in reply.citations]
        record.safety_filtered = reply.safety_filtered
        record.escalated = reply.escalated
        record.input_tokens = estimate_tokens(message)
        record.output_tokens = estimate_tokens(reply.content)
        self.trace_store.finish(record, answer=reply.content, latency_ms=reply.latency_ms)
        logger.info(
            "assistant_turn_completed",
            intent=reply.intent_category.value,
            tools=reply.tools_used,
            escalated=reply.escalated,
            safety_filtered=reply.safety_filtered,
            latency_ms=round(reply.latency_ms, 2),
        )
        return reply

    async def _run(self, message: str, conversation: ConversationContext, record: TraceRecord) -> AssistantReply:
        user = conversation.user
        try:
            with Timer() as timer:
                text, inbound_filtered = self._screen_inbound(message, conversation)
            record.stage_latency_ms["safety_inbound"] = timer.elapsed_ms
        except SafetyBlockedError:
            return await self._blocked_reply(message, conversation, record)

        if _GREETING.match(text):
            greeting = ClassifiedIntent(
                category=IntentCategory.GENERAL_INFO,
                confidence=1.0,
                reasoning="Greeting",
                original_query=text,
            )
            with Timer() as timer:
                simple = await self.generator.generate_simple(text, user, conversation)
            record.stage_latency_ms["generate"] = timer.elapsed_ms
            content, _, outbound_filtered = self._screen_outbound(simple, greeting, conversation, record)
            return AssistantReply(
                content=content,
                confidence=simple.confidence,
                intent_category=IntentCategory.GENERAL_INFO,
                safety_filtered=inbound_filtered or outbound_filtered,
                user_message=text,
            )

        with Timer() as timer:
            intent = await self.classifier.classify(text, conversation)
        record.stage_latency_ms["classify"] = timer.elapsed_ms

        with Timer() as timer:
            decision = await self.router.route(intent, user, conversation)
            execution = await self.router.execute(
                decision,
                intent,
                user,
                conversation.history,
                district=conversation.district,
                active_child_id=conversation.active_child_id,
            )
        record.stage_latency_ms["tools"] = timer.elapsed_ms
        record.source_snippets = [result.content for result in execution.tool_results if result.success]

        with Timer() as timer:
            generated = await self.generator.generate(intent, execution, user, conversation)
        record.stage_latency_ms["generate"] = timer.elapsed_ms

        content, citations, outbound_filtered = self._screen_outbound(generated, intent, conversation, record)

        return AssistantReply(
            content=content,
            confidence=generated.confidence,
            citations=citations,
            suggested_follow_ups=generated.suggested_follow_ups,
            requires_follow_up=generated.requires_follow_up,
            intent_category=intent.category,
            tools_used=[result.tool_name for result in execution.tool_results],
            safety_filtered=inbound_filtered or outbound_filtered,
            escalated=_escalated(decision, execution),
            reference_id=_ticket_reference(execution) or "",
            user_message=text,
        )

    def _screen_inbound(self, message: str, conversation: ConversationContext) -> tuple[str, bool]:
        result = self.guardrails.check_input(message, conversation.user)
        if result.has_high_severity:
            raise SafetyBlockedError("inbound message blocked")
        if not result.passed and result.sanitized_content is not None:
            return result.sanitized_content, True
        return message, False

    def _screen_outbound(
        self,
        generated: GeneratedResponse,
        intent: ClassifiedIntent,
        conversation: ConversationContext,
        record: TraceRecord,
    ) -> tuple[str, list[Citation], bool]:
        """Sanitize PII in model text; withhold it entirely on any other HIGH violation."""

        with Timer() as timer:
            outbound = self.guardrails.check_output(generated, conversation.user, intent)
        record.stage_latency_ms["safety_outbound"] = timer.elapsed_ms

        if outbound.passed:
            return generated.content, generated.citations, False
        if _blocks_disclosure(outbound):
            return fallback.withheld_text(conversation.district), [], True
        content = outbound.sanitized_content or fallback.withheld_text(conversation.district)
        return content, generated.citations, True

    async def _blocked_reply(
        self, message: str, conversation: ConversationContext, record: TraceRecord
    ) -> AssistantReply:
        user = conversation.user
        logger.warning("inbound_message_blocked")
        intent = ClassifiedIntent(
            category=IntentCategory.UNKNOWN,
            confidence=0.0,
            urgency=UrgencyLevel.CRITICAL,
            should_escalate=True,
            reasoning="Inbound message blocked by safety checks",
            original_query=message,
        )
        decision = RoutingDecision(
            selected_tools=[],
            reasoning="Inbound message blocked by safety checks",
            requires_escalation=True,
            escalation_reason=EscalationReason.SAFETY_CONCERN,
            strategy="safety_block",
        )
        execution = await self.router.execute(
            decision, intent, user, conversation.history, district=conversation.district
        )
        reference = _ticket_reference(execution) or record.trace_id
        return AssistantReply(
            content=fallback.safety_blocked_text(reference, conversation.district),
            confidence=0.0,
            requires_follow_up=True,
            intent_category=IntentCategory.UNKNOWN,
            tools_used=[result.tool_name for result in execution.tool_results],
            safety_filtered=True,
            escalated=True,
            reference_id=reference,
            user_message="[message withheld by safety checks]",
        )


def _record_tool_trace(trace: ToolTrace) -> None:
    traces = _turn_traces.get()
    if traces is not None:
        traces.append(trace)


def _blocks_disclosure(result: SafetyCheckResult) -> bool:
    return any(
        violation.severity is Severity.HIGH and violation.type is not ViolationType.PII_DETECTED
        for violation in result.violations
    )


def _escalated(decision: RoutingDecision, execution: ExecutionResult) -> bool:
    if decision.requires_escalation:
        return True
    return any(result.tool_name == ESCALATION_TOOL_NAME and result.success for result in execution.tool_results)


def _ticket_reference(execution: ExecutionResult) -> str | None:
    for result in execution.tool_results:
        if result.tool_name == ESCALATION_TOOL_NAME:
            reference = result.metadata.get("reference_number")
            if reference:
                return str(reference)
    return None
