"""Hybrid retriever: concurrent vector + keyword routes, fused with RRF."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from time import perf_counter
from typing import TypeVar

import structlog

from district_assistant.config import RetrievalConfig
from district_assistant.errors import InvalidInputError, ProviderError
from district_assistant.ingest.embedder import EmbeddingGenerator
from district_assistant.retrieval.fusion import FusionLayer
from district_assistant.retrieval.vector_store import KnowledgeStore
from district_assistant.types import (
    HybridSearchOptions,
    HybridSearchResult,
    SearchResponse,
    SearchTiming,
    VectorSearchResult,
)

logger = structlog.get_logger(__name__)

R = TypeVar("R")


class HybridRetriever:
    """Combines semantic and lexical retrieval for one tenant.

    Both routes oversample (`candidate_multiplier * limit`) so that chunks
    ranked moderately by each route can still win after fusion. A route that
    fails or times out contributes nothing; the search only fails when both
    routes do.
    """

    def __init__(
        self,
        store: KnowledgeStore,
        embedder: EmbeddingGenerator,
        fusion_layer: FusionLayer | None = None,
        config: RetrievalConfig | None = None,
    ) -> None:
        self.store = store
        self.embedder = embedder
        self.config = config or RetrievalConfig()
        self.fusion_layer = fusion_layer or FusionLayer(self.config)

    async def search(self, options: HybridSearchOptions) -> SearchResponse[HybridSearchResult]:
        if not options.tenant_id:
            raise InvalidInputError("search requires a tenant_id")
        if options.limit < 1 or options.offset < 0:
            raise InvalidInputError("limit must be positive and offset non-negative")

        started = perf_counter()
        candidate_limit = options.limit * self.config.candidate_multiplier
        timing = SearchTiming()

        (vector_results, vector_ok), (keyword_results, keyword_ok) = await asyncio.gather(
            self._timed("vector", self._vector_route(options, candidate_limit), timing),
            self._timed(
                "keyword",
                self.store.keyword_search(
                    options.query, options.tenant_id, candidate_limit, options.filters
                ),
                timing,
            ),
        )
        if not vector_ok and not keyword_ok:
            raise ProviderError("both retrieval routes failed")

        fused = self.fusion_layer.fuse(
            vector_results, keyword_results, vector_weight=options.vector_weight
        )

        if options.use_reranking is not False and self.fusion_layer.reranker is not None:
            rerank_started = perf_counter()
            fused = await self.fusion_layer.rerank(options.query, fused)
            timing.reranking_ms = (perf_counter() - rerank_started) * 1000.0

        filtered = [item for item in fused if item.combined_score >= options.min_score]
        page = filtered[options.offset : options.offset + options.limit]
        timing.total_ms = (perf_counter() - started) * 1000.0

        logger.info(
            "hybrid_search_completed",
            tenant_id=options.tenant_id,
            vector_hits=len(vector_results),
            keyword_hits=len(keyword_results),
            returned=len(page),
            total_ms=round(timing.total_ms, 2),
        )
        return SearchResponse(results=page, total=len(filtered), query=options.query, timing=timing)

    async def find_similar_chunks(
        self, chunk_id: str, tenant_id: str, limit: int = 5
    ) -> list[VectorSearchResult]:
        """Nearest neighbours of a stored chunk, excluding the chunk itself."""

        stored = await self.store.get_chunk(tenant_id, chunk_id)
        if stored is None:
            return []
        neighbours = await self.store.vector_search(stored.vector, tenant_id, limit + 1)
        return [item for item in neighbours if item.chunk_id != chunk_id][:limit]

    async def _vector_route(
        self, options: HybridSearchOptions, limit: int
    ) -> list[VectorSearchResult]:
        vector = await self.embedder.embed_query(options.query)
        return await self.store.vector_search(vector, options.tenant_id, limit, options.filters)

    async def _timed(
        self, route: str, call: Awaitable[list[R]], timing: SearchTiming
    ) -> tuple[list[R], bool]:
        started = perf_counter()
        try:
            results = await asyncio.wait_for(call, timeout=self.config.search_timeout_seconds)
            ok = True
        except Exception as exc:
            logger.warning("retrieval_route_failed", route=route, error=str(exc))
            results, ok = [], False
        elapsed = (perf_counter() - started) * 1000.0
        if route == "vector":
            timing.vector_search_ms = elapsed
        else:
            timing.keyword_search_ms = elapsed
        return results, ok
