import pytest

from district_assistant.config import EmbeddingConfig
from district_assistant.errors import InvalidInputError, ProviderError
from district_assistant.ingest.embedder import EmbeddingCache, EmbeddingGenerator, content_hash
from district_assistant.types import Chunk, ChunkMetadata, ChunkType
from fakes import FlakyEmbeddings

DIMENSIONS = 8


def _config(**overrides) -> EmbeddingConfig:
    values = {
        "dimensions": DIMENSIONS,
        "batch_size": 2,
        "max_retries": 3,
        "retry_delay_ms": 0,
        "inter_batch_delay_ms": 0,
    }
    values.update(overrides)
    return EmbeddingConfig(**values)


def _chunk(index: int, content: str) -> Chunk:
    return Chunk(
        chunk_id=f"doc-chunk-{index:04d}",
        content=content,
        token_estimate=len(content) // 4,
        metadata=ChunkMetadata(index=index, type=ChunkType.SEMANTIC, source_id="doc"),
    )


@pytest.mark.asyncio
async def test_vectors_follow_input_order_and_batching() -> None:
    provider = FlakyEmbeddings(DIMENSIONS)
    generator = EmbeddingGenerator(provider, config=_config())
    chunks = [_chunk(i, f"chunk text {'x' * i}") for i in range(5)]

    result = await generator.generate_embeddings(chunks)

    assert [item.chunk.chunk_id for item in result.chunks] == [c.chunk_id for c in chunks]
    assert [len(batch) for batch in provider.batches] == [2, 2, 1]
    assert all(len(item.vector) == DIMENSIONS for item in result.chunks)
    assert result.statistics.generated_chunks == 5
    assert result.statistics.degraded is False


@pytest.mark.asyncio
async def test_cache_and_duplicate_content_skip_provider() -> None:
    provider = FlakyEmbeddings(DIMENSIONS)
    cache = EmbeddingCache()
    generator = EmbeddingGenerator(provider, config=_config(), cache=cache)

    first = await generator.generate_embeddings([_chunk(0, "same"), _chunk(1, "same")])
    second = await generator.generate_embeddings([_chunk(2, "same"), _chunk(3, "new text")])

    assert first.statistics.generated_chunks == 1
    assert first.statistics.cached_chunks == 1
    assert second.statistics.cached_chunks == 1
    assert second.statistics.generated_chunks == 1
    assert provider.batches == [["same"], ["new text"]]
    assert content_hash("same") in cache
    assert generator.cache_stats()["size"] == 2


@pytest.mark.asyncio
async def test_transient_failures_are_retried() -> None:
    provider = FlakyEmbeddings(DIMENSIONS, failures=2)
    generator = EmbeddingGenerator(provider, config=_config())

    result = await generator.generate_embeddings([_chunk(0, "retry me")])

    assert len(provider.batches) == 3
    assert len(result.chunks) == 1


@pytest.mark.asyncio
async def test_exhausted_retries_raise_provider_error() -> None:
    provider = FlakyEmbeddings(DIMENSIONS, failures=5)
    generator = EmbeddingGenerator(provider, config=_config(max_retries=2))

    with pytest.raises(ProviderError):
        await generator.generate_embeddings([_chunk(0, "never works")])
    assert len(provider.batches) == 2


@pytest.mark.asyncio
async def test_wrong_dimension_from_provider_is_rejected() -> None:
    generator = EmbeddingGenerator(FlakyEmbeddings(4), config=_config())

    with pytest.raises(ProviderError):
        await generator.generate_embeddings([_chunk(0, "short vectors")])


@pytest.mark.asyncio
async def test_missing_provider_degrades_to_hashing() -> None:
    generator = EmbeddingGenerator(None, config=_config(dimensions=64))

    result = await generator.generate_embeddings([_chunk(0, "attendance policy")])
    query = await generator.embed_query("attendance policy")

    assert result.statistics.degraded is True
    assert result.statistics.model == "hashing"
    assert EmbeddingGenerator.cosine_similarity(result.chunks[0].vector, query) == pytest.approx(1.0)


def test_cosine_similarity_rejects_mismatched_dimensions() -> None:
    with pytest.raises(InvalidInputError):
        EmbeddingGenerator.cosine_similarity([1.0, 0.0], [1.0])
    assert EmbeddingGenerator.cosine_similarity([0.0, 0.0], [1.0, 0.0]) == 0.0
