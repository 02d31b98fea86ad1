"""Intent classification with layered escalation rules."""

from __future__ import annotations

import asyncio
import json
import re
from collections.abc import Sequence
from typing import Any

import structlog
from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from district_assistant.config import ClassifierConfig
from district_assistant.llm import CompletionClient
from district_assistant.text import truncate
from district_assistant.types import (
    ClassifiedIntent,
    ConversationContext,
    ConversationMessage,
    IntentCategory,
    UrgencyLevel,
    UserRole,
)

logger = structlog.get_logger(__name__)

ROLE_DESCRIPTIONS: dict[UserRole, str] = {
    UserRole.PARENT: "Parent or guardian of enrolled students",
    UserRole.STUDENT: "Student enrolled in the district",
    UserRole.TEACHER: "Teacher at a district school",
    UserRole.STAFF: "School staff member",
    UserRole.ADMIN: "School or district administrator",
    UserRole.GUEST: "Community member without a linked account",
}

INTENT_DESCRIPTIONS: dict[IntentCategory, str] = {
    IntentCategory.CALENDAR_QUERY: "Dates, events, schedules, holidays",
    IntentCategory.POLICY_QUESTION: "School policies, rules, procedures",
    IntentCategory.STUDENT_SPECIFIC: "A specific student's grades, progress or attendance",
    IntentCategory.ASSIGNMENT_HELP: "Homework or assignments",
    IntentCategory.GENERAL_INFO: "General school information, contacts, hours",
    IntentCategory.OPERATIONAL: "Lunch menus, transportation, facilities, supplies",
    IntentCategory.COMPLAINT: "Complaints or concerns that need attention",
    IntentCategory.EMERGENCY: "Urgent safety or emergency situations",
    IntentCategory.ADMINISTRATIVE: "Registration, enrollment, forms, processes",
    IntentCategory.COMMUNICATION: "Sending messages to teachers or staff",
    IntentCategory.TECHNICAL_SUPPORT: "Problems with school systems or accounts",
    IntentCategory.UNKNOWN: "Intent cannot be determined",
}

SAFETY_LEXICON = re.compile(
    r"\b(bull(y|ied|ies|ying)|self[- ]?harm|harm|threat|abus|suicid|weapon|danger|hurt|scared|afraid)",
    re.IGNORECASE,
)

_TOOL_MAPPING: dict[IntentCategory, tuple[str, ...]] = {
    IntentCategory.CALENDAR_QUERY: ("calendar_query", "knowledge_retrieval"),
    IntentCategory.POLICY_QUESTION: ("knowledge_retrieval",),
    IntentCategory.STUDENT_SPECIFIC: ("student_data_fetch", "knowledge_retrieval"),
    IntentCategory.ASSIGNMENT_HELP: ("knowledge_retrieval", "student_data_fetch"),
    IntentCategory.GENERAL_INFO: ("knowledge_retrieval",),
    IntentCategory.OPERATIONAL: ("knowledge_retrieval", "calendar_query"),
    IntentCategory.COMPLAINT: ("escalation", "knowledge_retrieval"),
    IntentCategory.EMERGENCY: ("escalation",),
    IntentCategory.ADMINISTRATIVE: ("knowledge_retrieval",),
    IntentCategory.COMMUNICATION: ("knowledge_retrieval",),
    IntentCategory.TECHNICAL_SUPPORT: ("escalation",),
    IntentCategory.UNKNOWN: ("escalation",),
}

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")

_JSON_CONTRACT = """{
  "category": "category_name",
  "secondaryCategory": "optional_secondary_category",
  "confidence": 0.95,
  "entities": {
    "studentName": "name if mentioned",
    "date": "YYYY-MM-DD if mentioned",
    "dateRange": {"start": "YYYY-MM-DD", "end": "YYYY-MM-DD"},
    "timeReference": "tomorrow, next week, ...",
    "subject": "subject if mentioned",
    "eventType": "event type if mentioned"
  },
  "requiresStudentContext": true,
  "urgency": "low|medium|high|critical",
  "shouldEscalate": false,
  "reasoning": "why this category was chosen"
}"""


class ClassificationReply(BaseModel):
    """Classifier reply; camelCase keys as requested in the prompt."""

    model_config = ConfigDict(extra="ignore")

    category: IntentCategory = Field(validation_alias=AliasChoices("category", "intent"))
    secondary_category: IntentCategory | None = Field(
        default=None,
        validation_alias=AliasChoices("secondaryCategory", "secondaryIntent", "secondary_category"),
    )
    confidence: float = Field(ge=0.0, le=1.0)
    entities: dict[str, Any] = Field(default_factory=dict)
    requires_student_context: bool = Field(
        default=False,
        validation_alias=AliasChoices("requiresStudentContext", "requires_student_context"),
    )
    urgency: UrgencyLevel = UrgencyLevel.LOW
    should_escalate: bool = Field(
        default=False, validation_alias=AliasChoices("shouldEscalate", "should_escalate")
    )
    reasoning: str = ""


class IntentClassifier:
    """Maps a user message plus conversation context to a `ClassifiedIntent`.

    The model's own escalation flag is only a starting point: emergencies,
    low confidence, urgent complaints and safety language always escalate.
    `classify` never raises; any failure becomes an escalating UNKNOWN intent.
    """

    def __init__(self, client: CompletionClient, config: ClassifierConfig | None = None) -> None:
        self.client = client
        self.config = config or ClassifierConfig()

    async def classify(self, message: str, context: ConversationContext) -> ClassifiedIntent:
        try:
            reply = await self.client.complete_json(
                self.build_prompt(message, context),
                ClassificationReply,
                attempts=self.config.json_attempts,
                max_tokens=self.config.max_tokens,
                temperature=self.config.temperature,
                timeout_seconds=self.config.timeout_seconds,
            )
        except Exception as exc:
            logger.warning("intent_classification_failed", error=str(exc))
            return ClassifiedIntent(
                category=IntentCategory.UNKNOWN,
                confidence=0.0,
                urgency=UrgencyLevel.LOW,
                should_escalate=True,
                reasoning=f"Classification failed: {exc}",
                original_query=message,
            )

        entities = normalize_entities(reply.entities)
        intent = ClassifiedIntent(
            category=reply.category,
            confidence=reply.confidence,
            urgency=reply.urgency,
            entities=entities,
            suggested_tools=list(_TOOL_MAPPING.get(reply.category, ())),
            requires_student_context=reply.requires_student_context,
            should_escalate=False,
            reasoning=reply.reasoning,
            original_query=message,
            secondary_category=reply.secondary_category,
        )
        intent.should_escalate = self.should_escalate(intent, model_flag=reply.should_escalate)
        logger.info(
            "intent_classified",
            category=intent.category.value,
            confidence=intent.confidence,
            urgency=intent.urgency.value,
            should_escalate=intent.should_escalate,
        )
        return intent

    def should_escalate(self, intent: ClassifiedIntent, *, model_flag: bool = False) -> bool:
        if model_flag or intent.category is IntentCategory.EMERGENCY:
            return True
        if intent.confidence < self.config.escalation_threshold:
            return True
        if intent.category is IntentCategory.COMPLAINT and intent.urgency.is_elevated:
            return True
        return contains_safety_concern(intent.reasoning, intent.entities)

    async def batch_classify(
        self, items: Sequence[tuple[str, ConversationContext]]
    ) -> list[ClassifiedIntent]:
        """Classify many messages with bounded concurrency, preserving order."""

        semaphore = asyncio.Semaphore(self.config.batch_concurrency)

        async def _one(message: str, context: ConversationContext) -> ClassifiedIntent:
            async with semaphore:
                return await self.classify(message, context)

        return list(await asyncio.gather(*(_one(message, context) for message, context in items)))

    def build_prompt(self, message: str, context: ConversationContext) -> str:
        user = context.user
        district = context.district.name if context.district else "Unknown District"
        lines = [
            "You are an intent classifier for a K-12 school district assistant.",
            "",
            "USER CONTEXT:",
            f"- Role: {user.role.value} ({ROLE_DESCRIPTIONS.get(user.role, 'Unknown role')})",
            f"- District: {district} (id: {user.tenant_id})",
        ]
        if context.active_child_id:
            lines.append(f"- Currently discussing child ID: {context.active_child_id}")
        if user.child_ids:
            lines.append(f"- Has {len(user.child_ids)} children enrolled")

        history = self._history_block(context.history)
        if history:
            lines.extend(["", "RECENT CONVERSATION:", history])

        lines.extend(["", f'USER MESSAGE: "{message}"', "", "Classify this message into ONE of these categories:"])
        lines.extend(f"- {category.value}: {text}" for category, text in INTENT_DESCRIPTIONS.items())
        lines.extend(
            [
                "",
                "INSTRUCTIONS:",
                "1. Choose the most specific category that matches.",
                "2. Extract every relevant entity from the message.",
                "3. Consider the user's role when setting requiresStudentContext.",
                "4. Set urgency from time-sensitivity and importance.",
                "5. Set shouldEscalate for emergencies, unclear intent, concerning content,",
                "   or when the user needs a person.",
                "",
                "Respond with ONLY valid JSON in this format:",
                _JSON_CONTRACT,
            ]
        )
        return "\n".join(lines)

    def _history_block(self, history: list[ConversationMessage]) -> str:
        if self.config.history_turns == 0:
            return ""
        recent = history[-self.config.history_turns :]
        return "\n".join(
            f"{'User' if msg.role == 'user' else 'Assistant'}: "
            f"{truncate(msg.content, self.config.history_chars)}"
            for msg in recent
        )

    @staticmethod
    def tool_mapping() -> dict[IntentCategory, list[str]]:
        """Category -> tool names that usually serve it."""
        return {category: list(names) for category, names in _TOOL_MAPPING.items()}


def normalize_entities(entities: dict[str, Any]) -> dict[str, Any]:
    """snake_case keys, empty values dropped, nested dicts normalized too."""

    normalized: dict[str, Any] = {}
    for key, value in entities.items():
        if value is None or value == "" or value == {} or value == []:
            continue
        if isinstance(value, dict):
            value = normalize_entities(value)
        normalized[_CAMEL_BOUNDARY.sub("_", str(key)).lower()] = value
    return normalized


def contains_safety_concern(reasoning: str, entities: dict[str, Any]) -> bool:
    if SAFETY_LEXICON.search(reasoning):
        return True
    return bool(SAFETY_LEXICON.search(json.dumps(entities, default=str)))
