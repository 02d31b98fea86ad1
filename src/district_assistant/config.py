"""Configuration models for the district assistant."""

from __future__ import annotations

from pydantic import AliasChoices, BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ChunkingConfig(BaseModel):
    """Configures structure-aware and sentence-based chunking."""

    min_chunk_size: int = Field(default=200, ge=1)
    max_chunk_size: int = Field(default=600, ge=1)
    overlap_size: int = Field(default=50, ge=0)
    respect_section_boundaries: bool = True
    preserve_paragraphs: bool = True

    @model_validator(mode="after")
    def _check_bounds(self) -> "ChunkingConfig":
        if self.min_chunk_size > self.max_chunk_size:
            raise ValueError("min_chunk_size must not exceed max_chunk_size")
        if self.overlap_size * 2 >= self.max_chunk_size:
            raise ValueError("overlap_size must be less than half of max_chunk_size")
        return self


class EmbeddingConfig(BaseModel):
    """Configures batched, cached embedding generation."""

    model: str = "text-embedding-3-small"
    dimensions: int = Field(default=1536, ge=8)
    batch_size: int = Field(default=50, ge=1)
    max_retries: int = Field(default=3, ge=1)
    retry_delay_ms: float = Field(default=1000.0, ge=0.0)
    inter_batch_delay_ms: float = Field(default=200.0, ge=0.0)
    timeout_seconds: float = Field(default=30.0, gt=0.0)


class RetrievalConfig(BaseModel):
    """Configures hybrid retrieval, fusion and re-ranking."""

    default_limit: int = Field(default=10, ge=1)
    candidate_multiplier: int = Field(default=3, ge=1)
    vector_weight: float = Field(default=0.7, ge=0.0, le=1.0)
    rrf_k: int = Field(default=60, ge=1)
    rerank_top_n: int = Field(default=20, ge=1)
    rerank_content_chars: int = Field(default=500, ge=50)
    rerank_model: str = "gpt-4o-mini"
    search_timeout_seconds: float = Field(default=10.0, gt=0.0)
    rerank_timeout_seconds: float = Field(default=15.0, gt=0.0)


class ClassifierConfig(BaseModel):
    """Configures intent classification and its escalation rules."""

    model: str = "gpt-4o-mini"
    temperature: float = Field(default=0.1, ge=0.0, le=2.0)
    max_tokens: int = Field(default=500, ge=1)
    escalation_threshold: float = Field(default=0.6, ge=0.0, le=1.0)
    history_turns: int = Field(default=3, ge=0)
    history_chars: int = Field(default=200, ge=10)
    json_attempts: int = Field(default=2, ge=1)
    timeout_seconds: float = Field(default=15.0, gt=0.0)
    batch_concurrency: int = Field(default=5, ge=1)


class RouterConfig(BaseModel):
    """Configures tool selection and execution."""

    model: str = "gpt-4o-mini"
    temperature: float = Field(default=0.1, ge=0.0, le=2.0)
    max_tokens: int = Field(default=800, ge=1)
    max_tools: int = Field(default=3, ge=1)
    parallel_execution: bool = True
    mandatory_escalation_confidence: float = Field(default=0.3, ge=0.0, le=1.0)
    simple_routing_confidence: float = Field(default=0.85, ge=0.0, le=1.0)
    heuristic_escalation_confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    json_attempts: int = Field(default=2, ge=1)
    selection_timeout_seconds: float = Field(default=15.0, gt=0.0)


class SafetyConfig(BaseModel):
    """Configures PII detection, content filtering and compliance checks."""

    enable_pii_detection: bool = True
    enable_content_filter: bool = True
    enable_compliance_check: bool = True
    custom_blocked_terms: list[str] = Field(default_factory=list)
    sensitive_terms: list[str] = Field(default_factory=list)
    max_response_length: int = Field(default=10_000, ge=1)


class GeneratorConfig(BaseModel):
    """Configures final response generation."""

    model: str = "gpt-4o"
    temperature: float = Field(default=0.3, ge=0.0, le=2.0)
    max_tokens: int = Field(default=1500, ge=1)
    history_turns: int = Field(default=3, ge=0)
    history_chars: int = Field(default=200, ge=10)
    parse_error_penalty: float = Field(default=0.8, ge=0.0, le=1.0)
    timeout_seconds: float = Field(default=30.0, gt=0.0)


class AssistantSettings(BaseSettings):
    """Process-level settings read from the environment.

    Every field can be set with an ``ASSISTANT_`` prefixed variable; the OpenAI
    key is also read from the conventional ``OPENAI_API_KEY``.
    """

    model_config = SettingsConfigDict(
        env_prefix="ASSISTANT_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    openai_api_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices("ASSISTANT_OPENAI_API_KEY", "OPENAI_API_KEY"),
    )
    openai_base_url: str | None = None
    log_level: str = "INFO"
    log_json: bool = True

    chunking: ChunkingConfig = Field(default_factory=ChunkingConfig)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    retrieval: RetrievalConfig = Field(default_factory=RetrievalConfig)
    classifier: ClassifierConfig = Field(default_factory=ClassifierConfig)
    router: RouterConfig = Field(default_factory=RouterConfig)
    safety: SafetyConfig = Field(default_factory=SafetyConfig)
    generator: GeneratorConfig = Field(default_factory=GeneratorConfig)
