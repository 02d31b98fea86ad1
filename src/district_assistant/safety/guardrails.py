"""PII detection, content filtering and disclosure checks for chat text."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Literal

import structlog

from district_assistant.agent.permissions import may_view_student
from district_assistant.config import SafetyConfig
from district_assistant.types import (
    ClassifiedIntent,
    ConversationMessage,
    GeneratedResponse,
    IntentCategory,
    PiiMatch,
    PiiType,
    SafetyCheckResult,
    SafetyViolation,
    Severity,
    UserContext,
    UserRole,
    ViolationType,
)

logger = structlog.get_logger(__name__)

Direction = Literal["inbound", "outbound"]

REDACTED = "[REDACTED]"
REMOVED = "[REMOVED]"

_PII_PATTERNS: tuple[tuple[PiiType, re.Pattern[str]], ...] = (
    (PiiType.SSN, re.compile(r"\b\d{3}[-.\s]?\d{2}[-.\s]?\d{4}\b")),
    (PiiType.SSN, re.compile(r"\bssn\s*[:\-]?\s*\d{9}\b", re.IGNORECASE)),
    (PiiType.PHONE, re.compile(r"(?<!\d)\(?\d{3}\)?[-.\s]?\d{3}[-.\s]?\d{4}\b")),
    (PiiType.PHONE, re.compile(r"\b\d{3}[-.\s]\d{4}\b")),
    (PiiType.EMAIL, re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")),
    (
        PiiType.ADDRESS,
        re.compile(
            r"\b\d{1,5}\s+[\w\s]{1,30}?\s+(street|st|avenue|ave|road|rd|boulevard|blvd|"
            r"drive|dr|lane|ln|court|ct)\b",
            re.IGNORECASE,
        ),
    ),
    (PiiType.DATE_OF_BIRTH, re.compile(r"\b(0?[1-9]|1[0-2])[/-](0?[1-9]|[12]\d|3[01])[/-](19|20)\d{2}\b")),
    (
        PiiType.DATE_OF_BIRTH,
        re.compile(
            r"\b(january|february|march|april|may|june|july|august|september|october|"
            r"november|december)\s+\d{1,2},?\s+(19|20)\d{2}\b",
            re.IGNORECASE,
        ),
    ),
    (PiiType.STUDENT_ID, re.compile(r"\bstudent\s*id\s*[:\-#]?\s*\d{5,10}\b", re.IGNORECASE)),
    (PiiType.STUDENT_ID, re.compile(r"\bid\s*#?\s*\d{6,}\b", re.IGNORECASE)),
    (PiiType.CREDIT_CARD, re.compile(r"\b\d{4}[-.\s]?\d{4}[-.\s]?\d{4}[-.\s]?\d{4}\b")),
    (PiiType.PASSWORD, re.compile(r"\b(password|pwd)\s*[:\-]?\s*\S+", re.IGNORECASE)),
)

_PII_CONFIDENCE: dict[PiiType, float] = {
    PiiType.EMAIL: 0.9,
    PiiType.PHONE: 0.8,
}

_HARMFUL_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"\b(kill|murder|suicide|self[- ]?harm)\b", re.IGNORECASE),
    re.compile(r"\b(bomb|weapon|gun|explosive)s?\s+(make|build|create|how\s+to)\b", re.IGNORECASE),
    re.compile(r"\b(abuse|molest|assault)\b", re.IGNORECASE),
)

_EDUCATION_RECORD = re.compile(
    r"\b(grades?|gpa|attendance|behavior|iep|504|special\s+education|disciplin\w*)\b",
    re.IGNORECASE,
)

EXCESSIVE_DISCLOSURE_TERMS: tuple[str, ...] = (
    "social security",
    "ssn",
    "home address",
    "medical record",
    "psychological",
    "therapy",
    "medication",
)


@dataclass(slots=True)
class ThreadModeration:
    needs_moderation: bool
    reasons: list[str] = field(default_factory=list)
    flagged_indices: list[int] = field(default_factory=list)


class SafetyGuardrails:
    """Stateless checks applied to inbound questions and outbound answers.

    A check fails on one HIGH or two MEDIUM violations. Only failed results
    carry `sanitized_content`: PII spans are merged and replaced right to left
    with ``[REDACTED]``, and custom blocked terms become ``[REMOVED]``.
    """

    def __init__(self, config: SafetyConfig | None = None) -> None:
        self.config = config or SafetyConfig()
        self._blocked_terms = [term.lower() for term in self.config.custom_blocked_terms if term.strip()]
        self._sensitive_terms = [term.lower() for term in self.config.sensitive_terms if term.strip()]

    def check_message(
        self,
        text: str,
        direction: Direction,
        user: UserContext | None = None,
        intent: ClassifiedIntent | None = None,
    ) -> SafetyCheckResult:
        violations: list[SafetyViolation] = []
        recommendations: list[str] = []

        if self.config.enable_pii_detection:
            matches = self.detect_pii(text)
            severity = Severity.HIGH if direction == "outbound" else Severity.MEDIUM
            violations.extend(
                SafetyViolation(
                    type=ViolationType.PII_DETECTED,
                    severity=severity,
                    description=f"Detected {match.type.value} in message",
                    position=(match.start, match.end),
                )
                for match in matches
            )
            if matches:
                recommendations.append(
                    "Remove or mask PII before sending the response"
                    if direction == "outbound"
                    else "Consider whether the personal information in the question is needed"
                )

        if self.config.enable_content_filter:
            content_violations = self.filter_content(text)
            violations.extend(content_violations)
            if any(v.severity is Severity.HIGH for v in content_violations):
                recommendations.append("Block this content and escalate to an administrator")
            elif any(v.severity is Severity.MEDIUM for v in content_violations):
                recommendations.append("Review the content for appropriateness")

        if self.config.enable_compliance_check and direction == "outbound" and user is not None:
            compliance = self.check_compliance(text, user, intent)
            violations.extend(compliance)
            if compliance:
                recommendations.append("Review the response for student-record disclosure")

        if len(text) > self.config.max_response_length:
            violations.append(
                SafetyViolation(
                    type=ViolationType.LENGTH_EXCEEDED,
                    severity=Severity.LOW,
                    description=f"Text exceeds maximum length ({len(text)}/{self.config.max_response_length})",
                )
            )
            recommendations.append("Truncate or summarize the response")

        high = sum(1 for v in violations if v.severity is Severity.HIGH)
        medium = sum(1 for v in violations if v.severity is Severity.MEDIUM)
        passed = high == 0 and medium < 2
        if not passed:
            logger.info(
                "safety_check_failed",
                direction=direction,
                violations=[v.type.value for v in violations],
                high=high,
                medium=medium,
            )
        return SafetyCheckResult(
            passed=passed,
            violations=violations,
            sanitized_content=None if passed else self.sanitize(text, violations),
            recommendations=recommendations,
        )

    def check_input(self, text: str, user: UserContext | None = None) -> SafetyCheckResult:
        return self.check_message(text, "inbound", user)

    def check_output(
        self, response: GeneratedResponse, user: UserContext, intent: ClassifiedIntent | None = None
    ) -> SafetyCheckResult:
        return self.check_message(response.content, "outbound", user, intent)

    def detect_pii(self, text: str) -> list[PiiMatch]:
        """Every PII span; same-type spans inside a larger one are dropped."""

        found: list[PiiMatch] = []
        for pii_type, pattern in _PII_PATTERNS:
            for match in pattern.finditer(text):
                found.append(
                    PiiMatch(
                        type=pii_type,
                        start=match.start(),
                        end=match.end(),
                        confidence=_confidence(pii_type, match.group(0)),
                    )
                )

        found.sort(key=lambda item: (item.start, -(item.end - item.start)))
        kept: list[PiiMatch] = []
        for candidate in found:
            if any(
                other.type is candidate.type and other.start <= candidate.start and candidate.end <= other.end
                for other in kept
            ):
                continue
            kept.append(candidate)
        return kept

    def filter_content(self, text: str) -> list[SafetyViolation]:
        violations: list[SafetyViolation] = []
        for pattern in _HARMFUL_PATTERNS:
            match = pattern.search(text)
            if match:
                violations.append(
                    SafetyViolation(
                        type=ViolationType.HARMFUL_CONTENT,
                        severity=Severity.HIGH,
                        description="Harmful content detected",
                        position=(match.start(), match.end()),
                    )
                )
                break

        lowered = text.lower()
        violations.extend(
            SafetyViolation(
                type=ViolationType.BLOCKED_TERM,
                severity=Severity.MEDIUM,
                description="Contains a blocked term",
            )
            for term in self._blocked_terms
            if term in lowered
        )
        violations.extend(
            SafetyViolation(
                type=ViolationType.SENSITIVE_TERM,
                severity=Severity.LOW,
                description="Contains a sensitive term",
            )
            for term in self._sensitive_terms
            if term in lowered
        )
        return violations

    def check_compliance(
        self, text: str, user: UserContext, intent: ClassifiedIntent | None = None
    ) -> list[SafetyViolation]:
        """Student-record authorization and over-disclosure checks for answers."""

        violations: list[SafetyViolation] = []
        if _EDUCATION_RECORD.search(text):
            entities = intent.entities if intent is not None else {}
            target = entities.get("student_id")
            if isinstance(target, str) and target and not may_view_student(user, target):
                violations.append(
                    SafetyViolation(
                        type=ViolationType.UNAUTHORIZED_ACCESS,
                        severity=Severity.HIGH,
                        description=(
                            f"{user.role.value} {user.user_id} is not authorized to see records "
                            f"of student {target}"
                        ),
                    )
                )
            elif user.role is UserRole.GUEST and intent is not None and (
                target or intent.category is IntentCategory.STUDENT_SPECIFIC
            ):
                violations.append(
                    SafetyViolation(
                        type=ViolationType.UNAUTHORIZED_ACCESS,
                        severity=Severity.HIGH,
                        description="Guests may not receive student records",
                    )
                )

        lowered = text.lower()
        for term in EXCESSIVE_DISCLOSURE_TERMS:
            match = re.search(rf"\b{re.escape(term)}\b", lowered)
            if match:
                violations.append(
                    SafetyViolation(
                        type=ViolationType.EXCESSIVE_DISCLOSURE,
                        severity=Severity.HIGH,
                        description=f"Response contains sensitive information: {term}",
                        position=(match.start(), match.end()),
                    )
                )
        return violations

    def sanitize(self, text: str, violations: list[SafetyViolation]) -> str:
        spans = sorted(
            v.position
            for v in violations
            if v.type is ViolationType.PII_DETECTED and v.position is not None
        )
        merged: list[tuple[int, int]] = []
        for start, end in spans:
            if merged and start <= merged[-1][1]:
                merged[-1] = (merged[-1][0], max(merged[-1][1], end))
            else:
                merged.append((start, end))

        sanitized = text
        for start, end in reversed(merged):
            sanitized = sanitized[:start] + REDACTED + sanitized[end:]
        for term in self._blocked_terms:
            sanitized = re.sub(re.escape(term), REMOVED, sanitized, flags=re.IGNORECASE)
        return sanitized

    def check_conversation_thread(
        self, messages: list[ConversationMessage], user: UserContext
    ) -> ThreadModeration:
        """Re-check a stored thread; user turns inbound, assistant turns outbound."""

        reasons: dict[str, None] = {}
        flagged: list[int] = []
        for index, message in enumerate(messages):
            direction: Direction = "inbound" if message.role == "user" else "outbound"
            result = self.check_message(message.content, direction, user)
            if result.passed:
                continue
            flagged.append(index)
            reasons.update((violation.description, None) for violation in result.violations)
        return ThreadModeration(needs_moderation=bool(flagged), reasons=list(reasons), flagged_indices=flagged)


def _confidence(pii_type: PiiType, matched: str) -> float:
    if pii_type is PiiType.SSN:
        return 0.95 if len(re.sub(r"\D", "", matched)) == 9 else 0.7
    if pii_type is PiiType.CREDIT_CARD:
        return 0.95 if luhn_valid(matched) else 0.5
    return _PII_CONFIDENCE.get(pii_type, 0.7)


def luhn_valid(number: str) -> bool:
    digits = [int(char) for char in number if char.isdigit()]
    if not 13 <= len(digits) <= 19:
        return False
    total = 0
    for position, digit in enumerate(reversed(digits)):
        if position % 2 == 1:
            digit *= 2
            if digit > 9:
                digit -= 9
        total += digit
    return total % 10 == 0
