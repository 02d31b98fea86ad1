"""Shared domain models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Generic, TypeVar

T = TypeVar("T")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# --------------------------------------------------------------------------
# Closed vocabularies
# --------------------------------------------------------------------------


class IntentCategory(str, Enum):
    CALENDAR_QUERY = "calendar_query"
    POLICY_QUESTION = "policy_question"
    STUDENT_SPECIFIC = "student_specific"
    ASSIGNMENT_HELP = "assignment_help"
    GENERAL_INFO = "general_info"
    OPERATIONAL = "operational"
    COMPLAINT = "complaint"
    EMERGENCY = "emergency"
    ADMINISTRATIVE = "administrative"
    COMMUNICATION = "communication"
    TECHNICAL_SUPPORT = "technical_support"
    UNKNOWN = "unknown"

    @classmethod
    def _missing_(cls, value: object) -> "IntentCategory":
        if isinstance(value, str):
            normalized = value.strip().lower()
            for member in cls:
                if member.value == normalized:
                    return member
        return cls.UNKNOWN


class UrgencyLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @classmethod
    def _missing_(cls, value: object) -> "UrgencyLevel":
        if isinstance(value, str):
            normalized = value.strip().lower()
            for member in cls:
                if member.value == normalized:
                    return member
        return cls.LOW

    @property
    def is_elevated(self) -> bool:
        return self in (UrgencyLevel.HIGH, UrgencyLevel.CRITICAL)


class UserRole(str, Enum):
    PARENT = "parent"
    STUDENT = "student"
    TEACHER = "teacher"
    STAFF = "staff"
    ADMIN = "admin"
    GUEST = "guest"


class Permission(str, Enum):
    READ_OWN_STUDENT = "read:own_student"
    READ_ALL_STUDENTS = "read:all_students"
    READ_KNOWLEDGE = "read:knowledge"
    READ_CALENDAR = "read:calendar"
    SEND_MESSAGES = "send:messages"
    CREATE_TICKETS = "create:tickets"
    ADMIN = "admin"


class EscalationReason(str, Enum):
    EMERGENCY = "emergency"
    SAFETY_CONCERN = "safety_concern"
    LOW_CONFIDENCE = "low_confidence"
    COMPLAINT = "complaint"
    SENSITIVE_TOPIC = "sensitive_topic"
    COMPLEX_QUERY = "complex_query"
    USER_REQUEST = "user_request"
    AUTHORIZATION_REQUIRED = "authorization_required"
    POLICY_EXCEPTION = "policy_exception"
    SYSTEM_ERROR = "system_error"

    @classmethod
    def _missing_(cls, value: object) -> "EscalationReason":
        if isinstance(value, str):
            normalized = value.strip().lower().replace(" ", "_").replace("-", "_")
            for member in cls:
                if member.value == normalized:
                    return member
        return cls.COMPLEX_QUERY


class ChunkType(str, Enum):
    SECTION = "section"
    SEMANTIC = "semantic"
    PARAGRAPH = "paragraph"
    OVERLAP = "overlap"


class ViolationType(str, Enum):
    PII_DETECTED = "pii_detected"
    HARMFUL_CONTENT = "harmful_content"
    BLOCKED_TERM = "blocked_term"
    SENSITIVE_TERM = "sensitive_term"
    UNAUTHORIZED_ACCESS = "unauthorized_access"
    EXCESSIVE_DISCLOSURE = "excessive_disclosure"
    LENGTH_EXCEEDED = "length_exceeded"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class PiiType(str, Enum):
    SSN = "ssn"
    PHONE = "phone"
    EMAIL = "email"
    ADDRESS = "address"
    DATE_OF_BIRTH = "date_of_birth"
    STUDENT_ID = "student_id"
    CREDIT_CARD = "credit_card"
    PASSWORD = "password"


class IngestionStage(str, Enum):
    QUEUED = "queued"
    PARSING = "parsing"
    CHUNKING = "chunking"
    EMBEDDING = "embedding"
    INDEXING = "indexing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (IngestionStage.COMPLETED, IngestionStage.FAILED)


# --------------------------------------------------------------------------
# Documents and chunks
# --------------------------------------------------------------------------


@dataclass(slots=True)
class DocumentSection:
    """A headed region of a parsed document; content is kept line by line."""

    title: str
    content: list[str]
    level: int = 1


@dataclass(slots=True)
class ParsedDocument:
    """A parsed source document before chunking."""

    doc_id: str
    text: str
    metadata: dict[str, Any] = field(default_factory=dict)
    sections: list[DocumentSection] = field(default_factory=list)


@dataclass(slots=True)
class SourceRecord:
    """Source-level facts the knowledge store filters on."""

    source_id: str
    tenant_id: str
    title: str
    source_type: str = "document"
    category: str | None = None
    tags: list[str] = field(default_factory=list)
    url: str | None = None
    published: bool = True


@dataclass(slots=True)
class ChunkMetadata:
    index: int
    type: ChunkType
    section_header: str | None = None
    start_offset: int | None = None
    end_offset: int | None = None
    start_sentence: int | None = None
    end_sentence: int | None = None
    source_id: str | None = None


@dataclass(slots=True)
class Chunk:
    """A retrievable unit of document text."""

    chunk_id: str
    content: str
    token_estimate: int
    metadata: ChunkMetadata


@dataclass(slots=True)
class ChunkingStatistics:
    total_chunks: int = 0
    total_tokens: int = 0
    average_chunk_size: float = 0.0
    min_chunk_size: int = 0
    max_chunk_size: int = 0
    section_based_chunks: int = 0
    semantic_chunks: int = 0
    overlap_chunks: int = 0


@dataclass(slots=True)
class ChunkingResult:
    chunks: list[Chunk]
    statistics: ChunkingStatistics


@dataclass(slots=True)
class EmbeddedChunk:
    chunk: Chunk
    vector: list[float]
    content_hash: str


@dataclass(slots=True)
class EmbeddingStatistics:
    total_chunks: int = 0
    total_tokens: int = 0
    cached_chunks: int = 0
    generated_chunks: int = 0
    total_duration_ms: float = 0.0
    average_latency_ms: float = 0.0
    model: str = ""
    degraded: bool = False


@dataclass(slots=True)
class EmbeddingResult:
    chunks: list[EmbeddedChunk]
    statistics: EmbeddingStatistics


# --------------------------------------------------------------------------
# Retrieval
# --------------------------------------------------------------------------


@dataclass(slots=True)
class SearchFilters:
    """Optional source-level filters; an empty list means no constraint."""

    source_types: list[str] = field(default_factory=list)
    categories: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    source_ids: list[str] = field(default_factory=list)


@dataclass(slots=True)
class HybridSearchOptions:
    query: str
    tenant_id: str
    limit: int = 10
    offset: int = 0
    filters: SearchFilters | None = None
    vector_weight: float | None = None
    use_reranking: bool | None = None
    min_score: float = 0.0


@dataclass(slots=True)
class VectorSearchResult:
    chunk_id: str
    source_id: str
    content: str
    score: float
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class KeywordSearchResult:
    chunk_id: str
    source_id: str
    content: str
    score: float
    highlights: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class HybridSearchResult:
    """A fused retrieval hit; ``combined_score`` alone determines order."""

    chunk_id: str
    source_id: str
    content: str
    combined_score: float
    vector_score: float | None = None
    keyword_score: float | None = None
    rerank_score: float | None = None
    highlights: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class SearchTiming:
    vector_search_ms: float = 0.0
    keyword_search_ms: float = 0.0
    reranking_ms: float = 0.0
    total_ms: float = 0.0


@dataclass(slots=True)
class SearchResponse(Generic[T]):
    results: list[T]
    total: int
    query: str
    timing: SearchTiming


# --------------------------------------------------------------------------
# Users and conversations
# --------------------------------------------------------------------------


@dataclass(slots=True)
class UserContext:
    """Authenticated user facts resolved by the caller."""

    user_id: str
    tenant_id: str
    role: UserRole
    display_name: str = ""
    child_ids: list[str] = field(default_factory=list)
    school_ids: list[str] = field(default_factory=list)
    section_ids: list[str] = field(default_factory=list)
    permissions: set[Permission] = field(default_factory=set)
    student_id: str | None = None

    @property
    def own_student_id(self) -> str | None:
        if self.role is not UserRole.STUDENT:
            return None
        return self.student_id or self.user_id


@dataclass(slots=True)
class DistrictProfile:
    name: str
    timezone: str = "America/New_York"
    helpline_info: str | None = None
    main_office_contact: str | None = None


@dataclass(slots=True)
class ConversationMessage:
    role: str
    content: str
    tools_used: list[str] = field(default_factory=list)
    intent_category: IntentCategory | None = None
    confidence: float | None = None
    timestamp: datetime = field(default_factory=utc_now)


@dataclass(slots=True)
class ConversationContext:
    user: UserContext
    history: list[ConversationMessage] = field(default_factory=list)
    conversation_id: str | None = None
    active_child_id: str | None = None
    topics: list[str] = field(default_factory=list)
    district: DistrictProfile | None = None


@dataclass(slots=True)
class ClassifiedIntent:
    category: IntentCategory
    confidence: float
    urgency: UrgencyLevel = UrgencyLevel.LOW
    entities: dict[str, Any] = field(default_factory=dict)
    suggested_tools: list[str] = field(default_factory=list)
    requires_student_context: bool = False
    should_escalate: bool = False
    reasoning: str = ""
    original_query: str = ""
    secondary_category: IntentCategory | None = None
    classified_at: datetime = field(default_factory=utc_now)

    @property
    def requires_tools(self) -> bool:
        return bool(self.suggested_tools)


# --------------------------------------------------------------------------
# Tools and routing
# --------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ToolDefinition:
    """Static tool description; registered once at startup."""

    name: str
    description: str
    required_permissions: tuple[Permission, ...] = ()
    handled_intents: tuple[IntentCategory, ...] = ()
    requires_student_context: bool = False
    timeout_ms: int = 10_000


@dataclass(slots=True)
class Citation:
    source_id: str
    title: str
    excerpt: str | None = None


@dataclass(slots=True)
class ToolResult:
    """Structured outcome of one tool call."""

    success: bool
    content: str
    citations: list[Citation] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    suggested_actions: list[str] = field(default_factory=list)
    requires_follow_up: bool = False

    @property
    def tool_name(self) -> str:
        return str(self.metadata.get("tool_name", "unknown"))

    @property
    def error(self) -> str | None:
        value = self.metadata.get("error")
        return str(value) if value else None

    @property
    def confidence(self) -> float | None:
        value = self.metadata.get("confidence")
        return float(value) if value is not None else None


@dataclass(slots=True)
class ToolCall:
    """Everything a tool sees for one invocation."""

    params: dict[str, Any]
    intent: ClassifiedIntent
    user: UserContext
    history: list[ConversationMessage] = field(default_factory=list)
    district: DistrictProfile | None = None
    active_child_id: str | None = None


@dataclass(slots=True)
class ToolSelection:
    name: str
    priority: int = 1
    params: dict[str, Any] = field(default_factory=dict)
    reasoning: str = ""


@dataclass(slots=True)
class RoutingDecision:
    selected_tools: list[ToolSelection]
    reasoning: str
    requires_escalation: bool = False
    escalation_reason: EscalationReason | None = None
    strategy: str = "model"


@dataclass(slots=True)
class ExecutionResult:
    tool_results: list[ToolResult]
    all_successful: bool
    combined_confidence: float
    total_execution_time_ms: float
    requires_follow_up: bool = False
    suggested_actions: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ToolTrace:
    """Trace record for an executed tool call."""

    name: str
    input_payload: dict[str, Any]
    output_preview: str
    latency_ms: float
    success: bool = True


# --------------------------------------------------------------------------
# Safety
# --------------------------------------------------------------------------


@dataclass(slots=True)
class PiiMatch:
    type: PiiType
    start: int
    end: int
    confidence: float


@dataclass(slots=True)
class SafetyViolation:
    type: ViolationType
    severity: Severity
    description: str
    position: tuple[int, int] | None = None


@dataclass(slots=True)
class SafetyCheckResult:
    passed: bool
    violations: list[SafetyViolation] = field(default_factory=list)
    sanitized_content: str | None = None
    recommendations: list[str] = field(default_factory=list)

    @property
    def has_high_severity(self) -> bool:
        return any(v.severity is Severity.HIGH for v in self.violations)


# --------------------------------------------------------------------------
# Responses
# --------------------------------------------------------------------------


@dataclass(slots=True)
class GeneratedResponse:
    content: str
    confidence: float
    citations: list[Citation] = field(default_factory=list)
    suggested_follow_ups: list[str] = field(default_factory=list)
    requires_follow_up: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class AssistantReply:
    """Final answer for one user turn."""

    content: str
    confidence: float
    citations: list[Citation] = field(default_factory=list)
    suggested_follow_ups: list[str] = field(default_factory=list)
    requires_follow_up: bool = False
    intent_category: IntentCategory = IntentCategory.UNKNOWN
    tools_used: list[str] = field(default_factory=list)
    safety_filtered: bool = False
    escalated: bool = False
    reference_id: str = ""
    latency_ms: float = 0.0
    user_message: str = ""

    def history_entries(self) -> list[ConversationMessage]:
        """Minimal fields worth persisting for future turns."""
        return [
            ConversationMessage(role="user", content=self.user_message),
            ConversationMessage(
                role="assistant",
                content=self.content,
                tools_used=list(self.tools_used),
                intent_category=self.intent_category,
                confidence=self.confidence,
            ),
        ]


# --------------------------------------------------------------------------
# Ingestion
# --------------------------------------------------------------------------


@dataclass(slots=True)
class IngestionStatus:
    source_id: str
    stage: IngestionStage
    progress: int = 0
    current_step: str | None = None
    error: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None


@dataclass(slots=True)
class IngestionReport:
    source_id: str
    tenant_id: str
    chunking: ChunkingStatistics
    embedding: EmbeddingStatistics
    chunks_indexed: int
    duration_ms: float
