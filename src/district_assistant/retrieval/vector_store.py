"""Knowledge store contract and a tenant-scoped in-memory implementation."""

from __future__ import annotations

import re
from collections import Counter
from typing import Any, Protocol

from district_assistant.errors import InvalidInputError
from district_assistant.ingest.embedder import EmbeddingGenerator
from district_assistant.text import words
from district_assistant.types import (
    EmbeddedChunk,
    KeywordSearchResult,
    SearchFilters,
    SourceRecord,
    VectorSearchResult,
)

_MIN_TERM_LENGTH = 3
_HIGHLIGHT_RADIUS = 60


class KnowledgeStore(Protocol):
    """Persistence contract for chunk vectors and text.

    Every query is scoped to one tenant; results never cross tenants.
    """

    async def vector_search(
        self,
        vector: list[float],
        tenant_id: str,
        limit: int,
        filters: SearchFilters | None = None,
    ) -> list[VectorSearchResult]:
        """Nearest chunks by cosine similarity, best first."""

    async def keyword_search(
        self,
        query: str,
        tenant_id: str,
        limit: int,
        filters: SearchFilters | None = None,
    ) -> list[KeywordSearchResult]:
        """Chunks matching query terms, best first."""

    async def replace_source(self, source: SourceRecord, chunks: list[EmbeddedChunk]) -> int:
        """Swap the whole chunk set of one source; returns chunks stored."""

    async def delete_source(self, tenant_id: str, source_id: str) -> int:
        """Drop a source and its chunks; returns chunks removed."""

    async def get_chunk(self, tenant_id: str, chunk_id: str) -> EmbeddedChunk | None:
        """Look up one stored chunk."""


class InMemoryKnowledgeStore:
    """Deterministic store used for tests and local prototyping."""

    def __init__(self) -> None:
        self._sources: dict[tuple[str, str], SourceRecord] = {}
        self._chunks: dict[tuple[str, str], list[EmbeddedChunk]] = {}

    async def replace_source(self, source: SourceRecord, chunks: list[EmbeddedChunk]) -> int:
        if not source.tenant_id:
            raise InvalidInputError("source must belong to a tenant")
        key = (source.tenant_id, source.source_id)
        self._sources[key] = source
        self._chunks[key] = list(chunks)
        return len(chunks)

    async def delete_source(self, tenant_id: str, source_id: str) -> int:
        key = (tenant_id, source_id)
        self._sources.pop(key, None)
        return len(self._chunks.pop(key, []))

    async def get_chunk(self, tenant_id: str, chunk_id: str) -> EmbeddedChunk | None:
        for _, embedded in self._candidates(tenant_id, None):
            if embedded.chunk.chunk_id == chunk_id:
                return embedded
        return None

    async def vector_search(
        self,
        vector: list[float],
        tenant_id: str,
        limit: int,
        filters: SearchFilters | None = None,
    ) -> list[VectorSearchResult]:
        scored: list[VectorSearchResult] = []
        for source, embedded in self._candidates(tenant_id, filters):
            if len(embedded.vector) != len(vector):
                continue
            scored.append(
                VectorSearchResult(
                    chunk_id=embedded.chunk.chunk_id,
                    source_id=source.source_id,
                    content=embedded.chunk.content,
                    score=EmbeddingGenerator.cosine_similarity(vector, embedded.vector),
                    metadata=_result_metadata(source, embedded),
                )
            )
        scored.sort(key=lambda item: (-item.score, item.chunk_id))
        return scored[:limit]

    async def keyword_search(
        self,
        query: str,
        tenant_id: str,
        limit: int,
        filters: SearchFilters | None = None,
    ) -> list[KeywordSearchResult]:
        terms = list(dict.fromkeys(w for w in words(query) if len(w) >= _MIN_TERM_LENGTH))
        if not terms:
            return []

        scored: list[KeywordSearchResult] = []
        for source, embedded in self._candidates(tenant_id, filters):
            counts = Counter(words(embedded.chunk.content))
            matched = [term for term in terms if counts[term]]
            if not matched:
                continue
            score = sum(counts[t] / (counts[t] + 1.2) for t in matched) / len(terms)
            scored.append(
                KeywordSearchResult(
                    chunk_id=embedded.chunk.chunk_id,
                    source_id=source.source_id,
                    content=embedded.chunk.content,
                    score=score,
                    highlights=_highlights(embedded.chunk.content, matched[:3]),
                    metadata=_result_metadata(source, embedded),
                )
            )
        scored.sort(key=lambda item: (-item.score, item.chunk_id))
        return scored[:limit]

    def _candidates(
        self, tenant_id: str, filters: SearchFilters | None
    ) -> list[tuple[SourceRecord, EmbeddedChunk]]:
        candidates: list[tuple[SourceRecord, EmbeddedChunk]] = []
        for (owner, _), source in self._sources.items():
            if owner != tenant_id or not source.published:
                continue
            if not _source_match(source, filters):
                continue
            for embedded in self._chunks.get((owner, source.source_id), []):
                candidates.append((source, embedded))
        return candidates


def _source_match(source: SourceRecord, filters: SearchFilters | None) -> bool:
    if filters is None:
        return True
    if filters.source_types and source.source_type not in filters.source_types:
        return False
    if filters.categories and source.category not in filters.categories:
        return False
    if filters.source_ids and source.source_id not in filters.source_ids:
        return False
    if filters.tags and not set(filters.tags) & set(source.tags):
        return False
    return True


def _result_metadata(source: SourceRecord, embedded: EmbeddedChunk) -> dict[str, Any]:
    return {
        "title": source.title,
        "source_type": source.source_type,
        "category": source.category,
        "tags": list(source.tags),
        "url": source.url,
        "section_header": embedded.chunk.metadata.section_header,
        "chunk_index": embedded.chunk.metadata.index,
        "chunk_type": embedded.chunk.metadata.type.value,
    }


def _highlights(content: str, terms: list[str]) -> list[str]:
    snippets: list[str] = []
    for term in terms:
        match = re.search(rf"\b{re.escape(term)}\b", content, flags=re.IGNORECASE)
        if match is None:
            continue
        start = max(0, match.start() - _HIGHLIGHT_RADIUS)
        end = min(len(content), match.end() + _HIGHLIGHT_RADIUS)
        snippet = content[start:end].replace("\n", " ").strip()
        prefix = "..." if start > 0 else ""
        suffix = "..." if end < len(content) else ""
        snippets.append(f"{prefix}{snippet}{suffix}")
    return snippets
