"""Grounded answer synthesis from tool results."""

from __future__ import annotations

import json
from typing import Any

import structlog
from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from district_assistant.agent import fallback
from district_assistant.config import GeneratorConfig
from district_assistant.errors import ResponseFormatError
from district_assistant.llm import CompletionClient, parse_json_object
from district_assistant.text import truncate
from district_assistant.types import (
    Citation,
    ClassifiedIntent,
    ConversationContext,
    ConversationMessage,
    DistrictProfile,
    ExecutionResult,
    GeneratedResponse,
    ToolResult,
    UserContext,
    UserRole,
)

logger = structlog.get_logger(__name__)

_SYSTEM_PROMPT = """
You are a helpful assistant for {audience} in {district}.
Your job is to turn information from district systems into clear, helpful answers.

{guidelines}

Groundedness rules:
1) Answer only from the tool results you are given.
2) Cite every factual statement with the source it came from.
3) If the tool results do not contain the answer, say so plainly and suggest who to contact.
4) Never volunteer student information that was not asked for.

Communication guidelines:
- Be warm, professional and supportive.
- Use clear language appropriate for the audience.
- Use bullet points for lists and bold important dates or deadlines.
- For urgent matters, state any time-sensitive actions first.
{branding}
Respond with a JSON object:
{{
  "mainResponse": "the answer",
  "citations": [{{"sourceId": "...", "sourceTitle": "...", "quote": "..."}}],
  "suggestedFollowUps": ["follow-up question"],
  "clarificationNeeded": false,
  "clarificationPrompt": null
}}
""".strip()

ROLE_GUIDELINES: dict[UserRole, str] = {
    UserRole.PARENT: (
        "For parents:\n"
        "- Explain school processes that may be unfamiliar.\n"
        "- Mention ways to get involved when relevant.\n"
        "- Be mindful of busy schedules."
    ),
    UserRole.STUDENT: (
        "For students:\n"
        "- Use age-appropriate language.\n"
        "- Be encouraging and explain expectations.\n"
        "- Point to academic help resources when relevant."
    ),
    UserRole.TEACHER: (
        "For teachers:\n"
        "- Be concise and professional.\n"
        "- Focus on classroom-relevant information and administrative details."
    ),
    UserRole.ADMIN: (
        "For administrators:\n"
        "- Be thorough and precise.\n"
        "- Highlight compliance and policy considerations."
    ),
    UserRole.STAFF: (
        "For staff members:\n"
        "- Be clear about procedures and include policy references.\n"
        "- Give contact information for escalation."
    ),
}

_AUDIENCES: dict[UserRole, str] = {
    UserRole.PARENT: "parents",
    UserRole.STUDENT: "students",
    UserRole.TEACHER: "teachers",
    UserRole.STAFF: "staff members",
    UserRole.ADMIN: "administrators",
    UserRole.GUEST: "community members",
}


class ModelCitation(BaseModel):
    model_config = ConfigDict(extra="ignore")

    source_id: str = Field(validation_alias=AliasChoices("sourceId", "source_id"))
    title: str = Field(default="", validation_alias=AliasChoices("sourceTitle", "title"))
    quote: str | None = None


class GenerationReply(BaseModel):
    model_config = ConfigDict(extra="ignore")

    main_response: str = Field(min_length=1, validation_alias=AliasChoices("mainResponse", "main_response"))
    citations: list[ModelCitation] = Field(default_factory=list)
    suggested_follow_ups: list[str] = Field(
        default_factory=list, validation_alias=AliasChoices("suggestedFollowUps", "suggested_follow_ups")
    )
    clarification_needed: bool = Field(
        default=False, validation_alias=AliasChoices("clarificationNeeded", "clarification_needed")
    )
    clarification_prompt: str | None = Field(
        default=None, validation_alias=AliasChoices("clarificationPrompt", "clarification_prompt")
    )


class ResponseGenerator:
    """Writes the final answer from tool results.

    When no tool succeeded the model is not called at all; the reply comes
    from `fallback`. A reply that is not valid JSON is kept as raw text with
    a confidence penalty.
    """

    def __init__(self, client: CompletionClient, config: GeneratorConfig | None = None) -> None:
        self.client = client
        self.config = config or GeneratorConfig()

    async def generate(
        self,
        intent: ClassifiedIntent,
        execution: ExecutionResult,
        user: UserContext,
        conversation: ConversationContext | None = None,
    ) -> GeneratedResponse:
        district = conversation.district if conversation is not None else None
        if not any(result.success for result in execution.tool_results):
            logger.info("generation_skipped_all_tools_failed", tools=len(execution.tool_results))
            return fallback.tool_failure_response(intent, execution, district)

        history = conversation.history if conversation is not None else []
        try:
            text = await self.client.complete(
                self.build_user_prompt(intent, execution, history),
                system=self.build_system_prompt(user, conversation),
                max_tokens=self.config.max_tokens,
                temperature=self.config.temperature,
                timeout_seconds=self.config.timeout_seconds,
            )
        except Exception as exc:
            logger.warning("generation_failed", error=str(exc))
            return fallback.provider_failure_response(intent, execution, district)

        return self._format(text, intent, execution, district)

    async def generate_simple(
        self, message: str, user: UserContext, conversation: ConversationContext | None = None
    ) -> GeneratedResponse:
        """Short reply without tools, for greetings and small talk."""

        system = (
            "You are a helpful school district assistant. Be friendly, concise and helpful.\n"
            f"User role: {user.role.value}"
        )
        if conversation is not None and conversation.topics:
            system += f"\nRecent topics: {', '.join(conversation.topics)}"
        metadata: dict[str, Any] = {"intent": "greeting", "tools_used": []}
        try:
            text = await self.client.complete(
                message,
                system=system,
                max_tokens=256,
                timeout_seconds=self.config.timeout_seconds,
            )
        except Exception as exc:
            logger.warning("simple_generation_failed", error=str(exc))
            text = ""
            metadata["error"] = True
        if not text.strip():
            return GeneratedResponse(
                content="Hello! How can I help you today?", confidence=0.5, metadata=metadata
            )
        return GeneratedResponse(content=text.strip(), confidence=0.9, metadata=metadata)

    def build_system_prompt(self, user: UserContext, conversation: ConversationContext | None = None) -> str:
        district = conversation.district if conversation is not None else None
        branding: list[str] = []
        if district is not None and district.helpline_info:
            branding.append(f"District helpline: {district.helpline_info}")
        if district is not None and district.main_office_contact:
            branding.append(f"Main office: {district.main_office_contact}")
        if conversation is not None and conversation.topics:
            branding.append(f"Current conversation topics: {', '.join(conversation.topics)}")

        return _SYSTEM_PROMPT.format(
            audience=_AUDIENCES.get(user.role, "community members"),
            district=district.name if district is not None else "the school district",
            guidelines=ROLE_GUIDELINES.get(user.role, ROLE_GUIDELINES[UserRole.STAFF]),
            branding="\n".join(branding) + "\n" if branding else "",
        )

    def build_user_prompt(
        self,
        intent: ClassifiedIntent,
        execution: ExecutionResult,
        history: list[ConversationMessage] | None = None,
    ) -> str:
        lines = [
            f'User\'s question: "{intent.original_query or "Unknown"}"',
            "",
            f"Intent: {intent.category.value} (confidence: {intent.confidence:.2f})",
            f"Urgency: {intent.urgency.value}",
            f"Entities: {json.dumps(intent.entities, default=str)}",
        ]
        recent = (history or [])[-self.config.history_turns :] if self.config.history_turns else []
        if recent:
            lines.extend(["", "Recent conversation:"])
            lines.extend(
                f"{message.role}: {truncate(message.content, self.config.history_chars)}"
                for message in recent
            )
        lines.extend(["", "Tool results:"])
        lines.append("\n\n---\n\n".join(_describe_result(result) for result in execution.tool_results))
        if execution.requires_follow_up:
            lines.extend(["", "NOTE: Human follow-up has been initiated for this request."])
        if execution.suggested_actions:
            lines.append(f"Suggested actions: {', '.join(execution.suggested_actions)}")
        lines.extend(
            [
                "",
                "Write a helpful answer that:",
                "1. Directly answers the question using the tool results.",
                "2. Cites the source of every factual claim.",
                "3. Suggests 2-3 relevant follow-up questions if appropriate.",
                "4. Says whether clarification is needed.",
                "",
                "Respond with JSON only.",
            ]
        )
        return "\n".join(lines)

    def _format(
        self,
        text: str,
        intent: ClassifiedIntent,
        execution: ExecutionResult,
        district: DistrictProfile | None,
    ) -> GeneratedResponse:
        metadata: dict[str, Any] = {
            "intent": intent.category.value,
            "tools_used": [result.tool_name for result in execution.tool_results],
            "processing_time_ms": execution.total_execution_time_ms,
        }
        tool_citations = [citation for result in execution.tool_results for citation in result.citations]
        try:
            reply = parse_json_object(text, GenerationReply)
        except ResponseFormatError as exc:
            if not text.strip():
                logger.warning("generation_empty_reply")
                return fallback.provider_failure_response(intent, execution, district)
            logger.info("generation_reply_not_json", error=str(exc))
            return GeneratedResponse(
                content=text.strip(),
                confidence=execution.combined_confidence * self.config.parse_error_penalty,
                citations=merge_citations(tool_citations, []),
                suggested_follow_ups=[],
                requires_follow_up=execution.requires_follow_up,
                metadata={**metadata, "parse_error": True},
            )

        follow_ups = list(reply.suggested_follow_ups)
        if reply.clarification_needed and reply.clarification_prompt:
            follow_ups.insert(0, reply.clarification_prompt)
        return GeneratedResponse(
            content=reply.main_response,
            confidence=execution.combined_confidence,
            citations=merge_citations(tool_citations, reply.citations),
            suggested_follow_ups=follow_ups,
            requires_follow_up=execution.requires_follow_up or reply.clarification_needed,
            metadata=metadata,
        )


def merge_citations(tool_citations: list[Citation], model_citations: list[ModelCitation]) -> list[Citation]:
    """Tool citations first, keyed by source; model citations only for new sources."""

    merged: dict[str, Citation] = {}
    for citation in tool_citations:
        merged.setdefault(citation.source_id, citation)
    for suggestion in model_citations:
        if suggestion.source_id not in merged:
            merged[suggestion.source_id] = Citation(
                source_id=suggestion.source_id,
                title=suggestion.title or suggestion.source_id,
                excerpt=suggestion.quote,
            )
    return list(merged.values())


def _describe_result(result: ToolResult) -> str:
    if not result.success:
        return f"[{result.tool_name}] FAILED: {result.error or 'unknown error'}"
    confidence = result.confidence if result.confidence is not None else 0.0
    block = f"[{result.tool_name}] SUCCESS (confidence: {confidence:.2f}):\n{result.content}"
    if result.citations:
        sources = "\n".join(
            f"- {citation.title} ({citation.source_id}): \"{citation.excerpt or ''}\""
            for citation in result.citations
        )
        block += f"\n\nCitations:\n{sources}"
    return block
