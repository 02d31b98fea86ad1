"""Component wiring for the ingestion and assistant pipelines."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import structlog
from langchain_core.embeddings import Embeddings

from district_assistant.agent.generator import ResponseGenerator
from district_assistant.agent.intent import IntentClassifier
from district_assistant.agent.pipeline import AssistantPipeline
from district_assistant.agent.registry import ToolRegistry
from district_assistant.agent.router import ToolRouter
from district_assistant.agent.services import CalendarService, EscalationService, StudentDataService
from district_assistant.agent.tools import register_builtin_tools
from district_assistant.config import AssistantSettings
from district_assistant.ingest.chunker import SemanticChunker
from district_assistant.ingest.embedder import EmbeddingGenerator
from district_assistant.ingest.parser import ParserRegistry
from district_assistant.ingest.pipeline import IngestionPipeline
from district_assistant.llm import ChatModel, CompletionClient, create_chat_model, create_embeddings
from district_assistant.obs.tracing import TraceStore
from district_assistant.retrieval.fusion import FusionLayer, LLMReranker
from district_assistant.retrieval.retriever import HybridRetriever
from district_assistant.retrieval.vector_store import KnowledgeStore
from district_assistant.safety.guardrails import SafetyGuardrails

logger = structlog.get_logger(__name__)


@dataclass(slots=True)
class Assistant:
    """Everything a host process needs: both pipelines and their shared parts."""

    pipeline: AssistantPipeline
    ingestion: IngestionPipeline
    retriever: HybridRetriever
    registry: ToolRegistry
    trace_store: TraceStore
    degraded_embeddings: bool

    def health(self) -> dict[str, Any]:
        return {
            "status": "ok",
            "tools": sorted(tool.name for tool in self.registry.all()),
            "embedding_mode": "hashing" if self.degraded_embeddings else "provider",
            "trace_count": len(self.trace_store.list_recent(limit=1000)),
        }


def build_assistant(
    settings: AssistantSettings,
    *,
    store: KnowledgeStore,
    calendar_service: CalendarService,
    student_data_service: StudentDataService,
    escalation_service: EscalationService,
    chat_model: ChatModel | None = None,
    embeddings: Embeddings | None = None,
    trace_store: TraceStore | None = None,
) -> Assistant:
    """Wire every component from settings.

    A passed `chat_model` is shared by all completion clients. Without one,
    an OpenAI model is created per component and missing credentials raise
    `ConfigurationError`. Missing embedding credentials only degrade to
    hashing embeddings.
    """

    def client(model: str, temperature: float, max_tokens: int, timeout_seconds: float) -> CompletionClient:
        llm = chat_model or create_chat_model(settings, model=model, temperature=temperature)
        return CompletionClient(
            llm,
            model=model,
            temperature=temperature,
            max_tokens=max_tokens,
            timeout_seconds=timeout_seconds,
        )

    if embeddings is None:
        embeddings = create_embeddings(settings)
    embedder = EmbeddingGenerator(embeddings, config=settings.embedding)

    retrieval = settings.retrieval
    reranker = LLMReranker(
        client(retrieval.rerank_model, 0.0, 200, retrieval.rerank_timeout_seconds),
        retrieval,
    )
    retriever = HybridRetriever(store, embedder, FusionLayer(retrieval, reranker), retrieval)

    registry = ToolRegistry()
    register_builtin_tools(
        registry,
        retriever=retriever,
        calendar_service=calendar_service,
        student_data_service=student_data_service,
        escalation_service=escalation_service,
    )

    classifier_cfg = settings.classifier
    router_cfg = settings.router
    generator_cfg = settings.generator
    pipeline = AssistantPipeline(
        guardrails=SafetyGuardrails(settings.safety),
        classifier=IntentClassifier(
            client(
                classifier_cfg.model,
                classifier_cfg.temperature,
                classifier_cfg.max_tokens,
                classifier_cfg.timeout_seconds,
            ),
            classifier_cfg,
        ),
        router=ToolRouter(
            registry,
            client(
                router_cfg.model,
                router_cfg.temperature,
                router_cfg.max_tokens,
                router_cfg.selection_timeout_seconds,
            ),
            router_cfg,
        ),
        generator=ResponseGenerator(
            client(
                generator_cfg.model,
                generator_cfg.temperature,
                generator_cfg.max_tokens,
                generator_cfg.timeout_seconds,
            ),
            generator_cfg,
        ),
        trace_store=trace_store or TraceStore(),
    )

    ingestion = IngestionPipeline(
        SemanticChunker(settings.chunking),
        embedder,
        store,
        parser_registry=ParserRegistry(),
    )
    logger.info(
        "assistant_built",
        tools=len(registry),
        degraded_embeddings=embedder.degraded,
        shared_chat_model=chat_model is not None,
    )
    return Assistant(
        pipeline=pipeline,
        ingestion=ingestion,
        retriever=retriever,
        registry=registry,
        trace_store=pipeline.trace_store,
        degraded_embeddings=embedder.degraded,
    )
