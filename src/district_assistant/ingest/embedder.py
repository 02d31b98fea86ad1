"""Embedding generation with content-hash caching and batched retries."""

from __future__ import annotations

import asyncio
from hashlib import blake2b, sha256
from math import sqrt
from time import perf_counter

import structlog
from langchain_core.embeddings import Embeddings
from tenacity import AsyncRetrying, RetryCallState, stop_after_attempt, wait_exponential

from district_assistant.config import EmbeddingConfig
from district_assistant.errors import InvalidInputError, ProviderError, ProviderTimeoutError
from district_assistant.text import estimate_tokens
from district_assistant.types import Chunk, EmbeddedChunk, EmbeddingResult, EmbeddingStatistics

logger = structlog.get_logger(__name__)


class HashingEmbeddings(Embeddings):
    """Deterministic normalized vectors without external model calls.

    Tokens are hashed into signed buckets, so texts sharing words land close
    to each other. Used when no embedding credential is configured and in
    tests.
    """

    def __init__(self, dimension: int = 256) -> None:
        self.dimension = dimension

    def embed_documents(self, texts: list[str]) -> list[list[float]]:
        return [self._embed(text) for text in texts]

    def embed_query(self, text: str) -> list[float]:
        return self._embed(text)

    async def aembed_documents(self, texts: list[str]) -> list[list[float]]:
        return self.embed_documents(texts)

    async def aembed_query(self, text: str) -> list[float]:
        return self._embed(text)

    def _embed(self, text: str) -> list[float]:
        vector = [0.0 for _ in range(self.dimension)]
        tokens = text.lower().split()
        if not tokens:
            return vector

        for token in tokens:
            digest = blake2b(token.strip(".,;:!?\"'()").encode("utf-8"), digest_size=8).digest()
            idx = int.from_bytes(digest[:4], "little") % self.dimension
            sign = -1.0 if digest[4] % 2 else 1.0
            vector[idx] += sign

        norm = sqrt(sum(value * value for value in vector))
        if norm == 0:
            return vector
        return [value / norm for value in vector]


class EmbeddingCache:
    """Content-hash keyed vector cache.

    Owned by whoever builds the generator; share one instance across
    generators to share hits, call `clear()` to reset.
    """

    def __init__(self) -> None:
        self._vectors: dict[str, list[float]] = {}
        self.hits = 0
        self.misses = 0

    def get(self, content_hash: str) -> list[float] | None:
        vector = self._vectors.get(content_hash)
        if vector is None:
            self.misses += 1
        else:
            self.hits += 1
        return vector

    def put(self, content_hash: str, vector: list[float]) -> None:
        self._vectors[content_hash] = vector

    def __contains__(self, content_hash: object) -> bool:
        return content_hash in self._vectors

    @property
    def size(self) -> int:
        return len(self._vectors)

    def clear(self) -> None:
        self._vectors.clear()
        self.hits = 0
        self.misses = 0

    def stats(self) -> dict[str, int]:
        return {
            "size": self.size,
            "hits": self.hits,
            "misses": self.misses,
            "memory_estimate_bytes": sum(len(v) for v in self._vectors.values()) * 8,
        }


def content_hash(text: str) -> str:
    return sha256(text.encode("utf-8")).hexdigest()


class EmbeddingGenerator:
    """Turns chunks into vectors through a LangChain `Embeddings` provider."""

    def __init__(
        self,
        embeddings: Embeddings | None = None,
        *,
        config: EmbeddingConfig | None = None,
        cache: EmbeddingCache | None = None,
    ) -> None:
        self.config = config or EmbeddingConfig()
        self.cache = cache if cache is not None else EmbeddingCache()
        self.degraded = embeddings is None
        self._provider = embeddings or HashingEmbeddings(self.config.dimensions)
        if self.degraded:
            logger.warning("embedding_provider_missing_using_hashing", dimensions=self.config.dimensions)

    async def generate_embeddings(self, chunks: list[Chunk]) -> EmbeddingResult:
        """Embed chunks, reusing cached vectors; output order matches input order.

        Raises:
            ProviderError: a batch still failed after `max_retries` attempts.
        """

        started = perf_counter()
        hashes = [content_hash(chunk.content) for chunk in chunks]
        vectors: dict[str, list[float]] = {}
        pending: dict[str, str] = {}
        cached_chunks = 0

        for digest, chunk in zip(hashes, chunks, strict=True):
            if digest in vectors or digest in pending:
                cached_chunks += 1
                continue
            hit = self.cache.get(digest)
            if hit is not None:
                vectors[digest] = hit
                cached_chunks += 1
            else:
                pending[digest] = chunk.content

        batch_latencies: list[float] = []
        items = list(pending.items())
        for batch_number, start in enumerate(range(0, len(items), self.config.batch_size)):
            if batch_number > 0 and self.config.inter_batch_delay_ms > 0:
                await asyncio.sleep(self.config.inter_batch_delay_ms / 1000.0)
            batch = items[start : start + self.config.batch_size]
            batch_started = perf_counter()
            batch_vectors = await self._embed_batch([text for _, text in batch])
            batch_latencies.append((perf_counter() - batch_started) * 1000.0)
            for (digest, _), vector in zip(batch, batch_vectors, strict=True):
                self.cache.put(digest, vector)
                vectors[digest] = vector

        embedded = [
            EmbeddedChunk(chunk=chunk, vector=vectors[digest], content_hash=digest)
            for digest, chunk in zip(hashes, chunks, strict=True)
        ]
        statistics = EmbeddingStatistics(
            total_chunks=len(chunks),
            total_tokens=sum(estimate_tokens(chunk.content) for chunk in chunks),
            cached_chunks=cached_chunks,
            generated_chunks=len(pending),
            total_duration_ms=(perf_counter() - started) * 1000.0,
            average_latency_ms=(
                sum(batch_latencies) / len(batch_latencies) if batch_latencies else 0.0
            ),
            model=self.model_name,
            degraded=self.degraded,
        )
        logger.info(
            "embeddings_generated",
            total=statistics.total_chunks,
            cached=statistics.cached_chunks,
            generated=statistics.generated_chunks,
            degraded=self.degraded,
        )
        return EmbeddingResult(chunks=embedded, statistics=statistics)

    async def embed_query(self, text: str) -> list[float]:
        digest = content_hash(text)
        cached = self.cache.get(digest)
        if cached is not None:
            return cached
        vector = (await self._embed_batch([text]))[0]
        self.cache.put(digest, vector)
        return vector

    @property
    def model_name(self) -> str:
        return "hashing" if self.degraded else self.config.model

    @staticmethod
    def cosine_similarity(a: list[float], b: list[float]) -> float:
        if len(a) != len(b):
            raise InvalidInputError(
                f"vector dimension mismatch: {len(a)} != {len(b)}"
            )
        numerator = sum(x * y for x, y in zip(a, b, strict=True))
        norm_a = sqrt(sum(x * x for x in a))
        norm_b = sqrt(sum(y * y for y in b))
        if norm_a == 0 or norm_b == 0:
            return 0.0
        return numerator / (norm_a * norm_b)

    def cache_stats(self) -> dict[str, int]:
        return self.cache.stats()

    def clear_cache(self) -> None:
        self.cache.clear()

    async def _embed_batch(self, texts: list[str]) -> list[list[float]]:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.config.max_retries),
            wait=wait_exponential(multiplier=self.config.retry_delay_ms / 1000.0, min=0),
            before_sleep=self._log_retry,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    vectors = await asyncio.wait_for(
                        self._provider.aembed_documents(texts),
                        timeout=self.config.timeout_seconds,
                    )
        except asyncio.TimeoutError as exc:
            raise ProviderTimeoutError(
                f"embedding batch of {len(texts)} timed out after {self.config.max_retries} attempts"
            ) from exc
        except Exception as exc:
            raise ProviderError(
                f"embedding batch of {len(texts)} failed after {self.config.max_retries} attempts: {exc}"
            ) from exc

        if len(vectors) != len(texts):
            raise ProviderError(
                f"provider returned {len(vectors)} vectors for {len(texts)} texts"
            )
        if any(len(vector) != self.config.dimensions for vector in vectors):
            raise ProviderError(
                f"provider returned vectors that are not {self.config.dimensions}-dimensional"
            )
        return [list(vector) for vector in vectors]

    @staticmethod
    def _log_retry(retry_state: RetryCallState) -> None:
        outcome = retry_state.outcome
        logger.warning(
            "embedding_batch_retry",
            attempt=retry_state.attempt_number,
            error=str(outcome.exception()) if outcome is not None else None,
        )
