import pytest

from district_assistant.config import RetrievalConfig
from district_assistant.llm import CompletionClient
from district_assistant.retrieval.fusion import FusionLayer, LLMReranker, Reranker
from district_assistant.types import HybridSearchResult, KeywordSearchResult, VectorSearchResult
from fakes import ScriptedLLM


def _vector(chunk_id: str, score: float) -> VectorSearchResult:
    return VectorSearchResult(chunk_id=chunk_id, source_id="src", content=chunk_id, score=score)


def _keyword(chunk_id: str, score: float) -> KeywordSearchResult:
    return KeywordSearchResult(
        chunk_id=chunk_id, source_id="src", content=chunk_id, score=score, highlights=[chunk_id]
    )


class _FixedReranker(Reranker):
    def __init__(self, scores: list[float] | Exception) -> None:
        self.scores = scores

    async def score(self, query: str, candidates: list[HybridSearchResult]) -> list[float]:
        if isinstance(self.scores, Exception):
            raise self.scores
        return self.scores


def test_rrf_rewards_items_found_by_both_routes() -> None:
    fusion = FusionLayer(RetrievalConfig(vector_weight=0.5, rrf_k=60))

    fused = fusion.fuse(
        [_vector("a", 0.9), _vector("b", 0.8)],
        [_keyword("b", 0.7), _keyword("c", 0.6)],
    )

    assert [item.chunk_id for item in fused] == ["b", "a", "c"]
    both = fused[0]
    assert both.combined_score == pytest.approx(0.5 / 62 + 0.5 / 61)
    assert both.vector_score == 0.8 and both.keyword_score == 0.7
    assert both.highlights == ["b"]


def test_vector_weight_override_changes_order() -> None:
    fusion = FusionLayer(RetrievalConfig())

    fused = fusion.fuse([_vector("a", 0.9)], [_keyword("c", 0.6)], vector_weight=0.0)

    assert [item.chunk_id for item in fused] == ["c", "a"]
    assert fused[1].combined_score == 0.0


@pytest.mark.asyncio
async def test_rerank_blends_scores_for_head_only() -> None:
    fusion = FusionLayer(RetrievalConfig(rerank_top_n=2), _FixedReranker([0.1, 0.9]))
    fused = fusion.fuse([_vector("a", 0.9), _vector("b", 0.8), _vector("c", 0.7)], [])

    reranked = await fusion.rerank("query", fused)

    assert [item.chunk_id for item in reranked] == ["b", "a", "c"]
    assert reranked[0].rerank_score == 0.9
    assert reranked[2].rerank_score is None


@pytest.mark.asyncio
async def test_rerank_failure_keeps_fused_order() -> None:
    fused = FusionLayer().fuse([_vector("a", 0.9), _vector("b", 0.8)], [])

    failing = FusionLayer(reranker=_FixedReranker(RuntimeError("model down")))
    short = FusionLayer(reranker=_FixedReranker([0.5]))

    assert await failing.rerank("q", fused) == fused
    assert await short.rerank("q", fused) == fused


@pytest.mark.asyncio
async def test_llm_reranker_scales_model_scores() -> None:
    llm = ScriptedLLM("Scores: [8, 2.5, 12]")
    reranker = LLMReranker(CompletionClient(llm), RetrievalConfig())
    candidates = FusionLayer().fuse([_vector("a", 0.9), _vector("b", 0.8), _vector("c", 0.7)], [])

    scores = await reranker.score("bus times", candidates)

    assert scores == [0.8, 0.25, 1.0]
    assert "Query: bus times" in llm.prompt()
