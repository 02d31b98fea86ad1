"""End-to-end ingest pipeline: parse -> chunk -> embed -> index."""

from __future__ import annotations

import asyncio
from time import perf_counter

import structlog

from district_assistant.errors import InvalidInputError, NotFoundError
from district_assistant.ingest.chunker import SemanticChunker
from district_assistant.ingest.embedder import EmbeddingGenerator
from district_assistant.ingest.parser import ParserRegistry
from district_assistant.retrieval.vector_store import KnowledgeStore
from district_assistant.types import (
    IngestionReport,
    IngestionStage,
    IngestionStatus,
    ParsedDocument,
    SourceRecord,
    utc_now,
)

logger = structlog.get_logger(__name__)

STAGE_PROGRESS: dict[IngestionStage, int] = {
    IngestionStage.QUEUED: 0,
    IngestionStage.PARSING: 10,
    IngestionStage.CHUNKING: 30,
    IngestionStage.EMBEDDING: 50,
    IngestionStage.INDEXING: 80,
    IngestionStage.COMPLETED: 100,
}


class IngestionStatusTracker:
    """Owned, in-memory status map keyed by source id.

    Best effort only: nothing here survives a restart.
    """

    def __init__(self) -> None:
        self._statuses: dict[str, IngestionStatus] = {}

    def update(
        self,
        source_id: str,
        stage: IngestionStage,
        *,
        step: str | None = None,
        error: str | None = None,
    ) -> IngestionStatus:
        status = self._statuses.get(source_id)
        if status is None or stage is IngestionStage.QUEUED:
            status = IngestionStatus(source_id=source_id, stage=stage)
            self._statuses[source_id] = status
        if status.started_at is None and stage is not IngestionStage.QUEUED:
            status.started_at = utc_now()
        status.stage = stage
        status.current_step = step
        status.error = error
        if stage in STAGE_PROGRESS:
            status.progress = STAGE_PROGRESS[stage]
        if stage.is_terminal:
            status.completed_at = utc_now()
        return status

    def get(self, source_id: str) -> IngestionStatus:
        status = self._statuses.get(source_id)
        if status is None:
            raise NotFoundError(f"No ingestion status for source: {source_id}")
        return status

    def all(self) -> list[IngestionStatus]:
        return list(self._statuses.values())

    def is_active(self, source_id: str) -> bool:
        status = self._statuses.get(source_id)
        return status is not None and not status.stage.is_terminal

    def evict(self, source_id: str) -> bool:
        return self._statuses.pop(source_id, None) is not None

    def evict_finished(self) -> int:
        finished = [key for key, status in self._statuses.items() if status.stage.is_terminal]
        for key in finished:
            del self._statuses[key]
        return len(finished)

    def clear(self) -> None:
        self._statuses.clear()


class IngestionPipeline:
    """Coordinates parser, chunker, embedder and knowledge store stages.

    Re-ingesting a source replaces its whole chunk set. Every stage is
    recorded in the tracker; a failure marks the source ``failed`` and is
    re-raised to the caller.
    """

    def __init__(
        self,
        chunker: SemanticChunker,
        embedder: EmbeddingGenerator,
        store: KnowledgeStore,
        *,
        parser_registry: ParserRegistry | None = None,
        tracker: IngestionStatusTracker | None = None,
    ) -> None:
        self.chunker = chunker
        self.embedder = embedder
        self.store = store
        self.parser_registry = parser_registry or ParserRegistry()
        self.tracker = tracker or IngestionStatusTracker()
        self._tasks: dict[str, asyncio.Task[IngestionReport]] = {}

    async def ingest(
        self,
        document: ParsedDocument | str,
        source: SourceRecord,
        *,
        format_name: str = "text",
    ) -> IngestionReport:
        started = perf_counter()
        source_id = source.source_id
        log = logger.bind(source_id=source_id, tenant_id=source.tenant_id)
        try:
            self.tracker.update(source_id, IngestionStage.PARSING, step="detecting structure")
            if isinstance(document, str):
                document = self.parser_registry.parse_text(
                    document,
                    doc_id=source_id,
                    format_name=format_name,
                    metadata={"title": source.title},
                )
            elif document.doc_id != source_id:
                raise InvalidInputError(
                    f"document {document.doc_id!r} does not belong to source {source_id!r}"
                )

            self.tracker.update(source_id, IngestionStage.CHUNKING, step="splitting text")
            chunking = self.chunker.chunk(document)

            self.tracker.update(
                source_id,
                IngestionStage.EMBEDDING,
                step=f"embedding {chunking.statistics.total_chunks} chunks",
            )
            embedding = await self.embedder.generate_embeddings(chunking.chunks)

            self.tracker.update(source_id, IngestionStage.INDEXING, step="replacing stored chunks")
            indexed = await self.store.replace_source(source, embedding.chunks)
        except Exception as exc:
            self.tracker.update(source_id, IngestionStage.FAILED, error=str(exc))
            log.exception("ingestion_failed")
            raise

        self.tracker.update(source_id, IngestionStage.COMPLETED)
        report = IngestionReport(
            source_id=source_id,
            tenant_id=source.tenant_id,
            chunking=chunking.statistics,
            embedding=embedding.statistics,
            chunks_indexed=indexed,
            duration_ms=(perf_counter() - started) * 1000.0,
        )
        log.info(
            "ingestion_completed",
            chunks=indexed,
            cached=embedding.statistics.cached_chunks,
            degraded=embedding.statistics.degraded,
            duration_ms=round(report.duration_ms, 2),
        )
        return report

    def submit(
        self,
        document: ParsedDocument | str,
        source: SourceRecord,
        *,
        format_name: str = "text",
    ) -> asyncio.Task[IngestionReport]:
        """Schedule `ingest` as a task; must be called from a running loop."""

        source_id = source.source_id
        running = self._tasks.get(source_id)
        if running is not None and not running.done():
            raise InvalidInputError(f"ingestion already in progress for source: {source_id}")

        self.tracker.update(source_id, IngestionStage.QUEUED, step="waiting to start")
        task = asyncio.create_task(
            self.ingest(document, source, format_name=format_name),
            name=f"ingest:{source_id}",
        )
        self._tasks[source_id] = task
        task.add_done_callback(lambda done: self._on_done(source_id, done))
        return task

    def status(self, source_id: str) -> IngestionStatus:
        return self.tracker.get(source_id)

    def _on_done(self, source_id: str, task: asyncio.Task[IngestionReport]) -> None:
        if self._tasks.get(source_id) is task:
            del self._tasks[source_id]
        if task.cancelled():
            self.tracker.update(source_id, IngestionStage.FAILED, error="cancelled")
            logger.warning("ingestion_cancelled", source_id=source_id)
            return
        exc = task.exception()
        if exc is not None:
            logger.error("ingestion_task_failed", source_id=source_id, error=str(exc))
