"""Reciprocal rank fusion and optional model re-ranking."""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod

import structlog

from district_assistant.config import RetrievalConfig
from district_assistant.errors import ResponseFormatError
from district_assistant.llm import CompletionClient, parse_json_array
from district_assistant.text import truncate
from district_assistant.types import HybridSearchResult, KeywordSearchResult, VectorSearchResult

logger = structlog.get_logger(__name__)

_RERANK_PROMPT = """Rate how relevant each document is to the query on a scale of 0-10.

Query: {query}

Documents:
{documents}

Respond with only a JSON array of {count} numbers, one score per document in order, e.g. [8, 3, 6]."""


class Reranker(ABC):
    """Scores fused candidates against the query."""

    @abstractmethod
    async def score(self, query: str, candidates: list[HybridSearchResult]) -> list[float]:
        """Return one relevance score in [0, 1] per candidate, in order."""


class LLMReranker(Reranker):
    """Asks a completion model for 0-10 relevance scores in one batched call."""

    def __init__(self, client: CompletionClient, config: RetrievalConfig | None = None) -> None:
        self.client = client
        self.config = config or RetrievalConfig()

    async def score(self, query: str, candidates: list[HybridSearchResult]) -> list[float]:
        documents = "\n\n".join(
            f"[{i + 1}] {truncate(item.content, self.config.rerank_content_chars)}"
            for i, item in enumerate(candidates)
        )
        reply = await self.client.complete(
            _RERANK_PROMPT.format(query=query, documents=documents, count=len(candidates)),
            max_tokens=max(50, len(candidates) * 6),
            temperature=0.0,
            timeout_seconds=self.config.rerank_timeout_seconds,
        )
        raw_scores = parse_json_array(reply)
        if len(raw_scores) != len(candidates):
            raise ResponseFormatError(
                f"expected {len(candidates)} scores, got {len(raw_scores)}"
            )
        try:
            return [min(max(float(value), 0.0), 10.0) / 10.0 for value in raw_scores]
        except (TypeError, ValueError) as exc:
            raise ResponseFormatError(f"non-numeric rerank score: {exc}") from exc


class FusionLayer:
    """Fuses vector and keyword routes with RRF, then optionally re-ranks."""

    def __init__(
        self,
        config: RetrievalConfig | None = None,
        reranker: Reranker | None = None,
    ) -> None:
        self.config = config or RetrievalConfig()
        self.reranker = reranker

    def fuse(
        self,
        vector_results: list[VectorSearchResult],
        keyword_results: list[KeywordSearchResult],
        *,
        vector_weight: float | None = None,
    ) -> list[HybridSearchResult]:
        """Weighted reciprocal rank fusion.

        combined = w / (k + rank_vector) + (1 - w) / (k + rank_keyword), with
        ranks starting at 1 and a missing list contributing nothing.
        """

        weight = self.config.vector_weight if vector_weight is None else vector_weight
        k = self.config.rrf_k
        merged: dict[str, HybridSearchResult] = {}

        for rank, item in enumerate(vector_results, start=1):
            merged[item.chunk_id] = HybridSearchResult(
                chunk_id=item.chunk_id,
                source_id=item.source_id,
                content=item.content,
                combined_score=weight / (k + rank),
                vector_score=item.score,
                metadata=dict(item.metadata),
            )

        for rank, item in enumerate(keyword_results, start=1):
            contribution = (1.0 - weight) / (k + rank)
            current = merged.get(item.chunk_id)
            if current is None:
                merged[item.chunk_id] = HybridSearchResult(
                    chunk_id=item.chunk_id,
                    source_id=item.source_id,
                    content=item.content,
                    combined_score=contribution,
                    keyword_score=item.score,
                    highlights=list(item.highlights),
                    metadata=dict(item.metadata),
                )
            else:
                current.combined_score += contribution
                current.keyword_score = item.score
                current.highlights = list(item.highlights)

        return sorted(merged.values(), key=lambda item: (-item.combined_score, item.chunk_id))

    async def rerank(self, query: str, fused: list[HybridSearchResult]) -> list[HybridSearchResult]:
        """Blend model scores into the top of the list; fails open.

        Only the first `rerank_top_n` items are re-scored and re-sorted; the
        tail keeps its fused order after them.
        """

        if self.reranker is None or not fused:
            return fused

        head = fused[: self.config.rerank_top_n]
        tail = fused[self.config.rerank_top_n :]
        try:
            scores = await asyncio.wait_for(
                self.reranker.score(query, head),
                timeout=self.config.rerank_timeout_seconds,
            )
        except Exception as exc:
            logger.warning("rerank_failed_keeping_fused_order", error=str(exc), candidates=len(head))
            return fused
        if len(scores) != len(head):
            logger.warning("rerank_score_count_mismatch", expected=len(head), received=len(scores))
            return fused

        rescored: list[HybridSearchResult] = []
        for item, score in zip(head, scores, strict=True):
            rescored.append(
                HybridSearchResult(
                    chunk_id=item.chunk_id,
                    source_id=item.source_id,
                    content=item.content,
                    combined_score=(item.combined_score + score) / 2.0,
                    vector_score=item.vector_score,
                    keyword_score=item.keyword_score,
                    rerank_score=score,
                    highlights=item.highlights,
                    metadata=item.metadata,
                )
            )
        rescored.sort(key=lambda item: (-item.combined_score, item.chunk_id))
        return rescored + tail
