"""Structure-aware and sentence-based chunking implementation."""

from __future__ import annotations

import math
from dataclasses import dataclass

import structlog

from district_assistant.config import ChunkingConfig
from district_assistant.errors import InvalidInputError
from district_assistant.text import SentenceSpan, estimate_tokens, split_paragraphs, split_sentences
from district_assistant.types import (
    Chunk,
    ChunkingResult,
    ChunkingStatistics,
    ChunkMetadata,
    ChunkType,
    ParsedDocument,
)

logger = structlog.get_logger(__name__)


@dataclass(slots=True)
class _Draft:
    content: str
    type: ChunkType
    section_header: str | None = None
    start_offset: int | None = None
    end_offset: int | None = None
    start_sentence: int | None = None
    end_sentence: int | None = None


class SemanticChunker:
    """Splits parsed documents into retrievable chunks.

    Design notes:
    1. Structure first.
       When the parser found sections, every section that fits under
       `max_chunk_size` becomes one chunk tagged with its header. Larger
       sections are packed paragraph by paragraph, and a paragraph that is
       still too large is split by sentence. The header travels with every
       sub-chunk so retrieval hits can always be attributed to a section.

    2. Sentences otherwise.
       Without sections the text is packed sentence by sentence. When the next
       sentence would overflow the chunk, the chunk is closed and the next one
       is seeded with trailing sentences worth at most `overlap_size` tokens.

    3. Bridging overlap.
       For structured documents, adjacent primary chunks get an extra
       `overlap` chunk made of the tail of the left chunk and the head of the
       right one. Overlap chunks only add context; they never carry content
       that is missing from the primary chunks.

    A single sentence or paragraph larger than `max_chunk_size` is kept whole;
    that is the only case where a chunk exceeds the maximum.
    """

    def __init__(self, config: ChunkingConfig | None = None) -> None:
        self.config = config or ChunkingConfig()

    def chunk(
        self, document: ParsedDocument, config: ChunkingConfig | None = None
    ) -> ChunkingResult:
        """Chunk a parsed document.

        Args:
            document: Parsed text, metadata and optional sections.
            config: Per-call override of the chunker configuration.

        Returns:
            Ordered chunks with unique indexes plus aggregate statistics.
        """

        cfg = config or self.config
        if not isinstance(document.text, str):
            raise InvalidInputError("document text must be a string")
        if not document.doc_id:
            raise InvalidInputError("document must have a doc_id")

        if cfg.respect_section_boundaries and document.sections:
            strategy = "structure"
            drafts = self._chunk_by_structure(document, cfg)
        else:
            strategy = "semantic"
            drafts = self._sentence_drafts(document.text, cfg, header=None, offset_base=0)

        chunks = self._finalize(document, drafts)
        statistics = self._statistics(chunks)
        logger.debug(
            "document_chunked",
            doc_id=document.doc_id,
            strategy=strategy,
            chunks=statistics.total_chunks,
            tokens=statistics.total_tokens,
        )
        return ChunkingResult(chunks=chunks, statistics=statistics)

    def _chunk_by_structure(self, document: ParsedDocument, cfg: ChunkingConfig) -> list[_Draft]:
        primaries: list[_Draft] = []
        for section in document.sections:
            text = "\n".join(section.content).strip()
            if not text:
                continue
            if estimate_tokens(text) <= cfg.max_chunk_size:
                primaries.append(_Draft(text, ChunkType.SECTION, section.title))
            else:
                primaries.extend(self._split_section(text, section.title, cfg))

        orphan_text = self._orphan_text(document)
        if orphan_text and estimate_tokens(orphan_text) > cfg.min_chunk_size / 2:
            primaries.extend(self._sentence_drafts(orphan_text, cfg, header=None))

        if cfg.overlap_size <= 0 or len(primaries) < 2:
            return primaries

        drafts: list[_Draft] = [primaries[0]]
        for left, right in zip(primaries, primaries[1:]):
            bridge = f"{_tail_words(left.content, cfg.overlap_size)} {_head_words(right.content, cfg.overlap_size)}".strip()
            if estimate_tokens(bridge) >= cfg.min_chunk_size / 2:
                drafts.append(_Draft(bridge, ChunkType.OVERLAP))
            drafts.append(right)
        return drafts

    def _split_section(self, text: str, header: str, cfg: ChunkingConfig) -> list[_Draft]:
        paragraphs = split_paragraphs(text) if cfg.preserve_paragraphs else [text]
        drafts: list[_Draft] = []
        current: list[str] = []

        def flush() -> None:
            if current:
                drafts.append(_Draft("\n\n".join(current), ChunkType.PARAGRAPH, header))
                current.clear()

        for paragraph in paragraphs:
            if estimate_tokens(paragraph) > cfg.max_chunk_size:
                flush()
                drafts.extend(self._sentence_drafts(paragraph, cfg, header=header))
                continue
            if current and estimate_tokens("\n\n".join([*current, paragraph])) > cfg.max_chunk_size:
                flush()
            current.append(paragraph)
        flush()
        return drafts

    def _sentence_drafts(
        self,
        text: str,
        cfg: ChunkingConfig,
        *,
        header: str | None,
        offset_base: int | None = None,
    ) -> list[_Draft]:
        sentences = split_sentences(text)
        drafts: list[_Draft] = []
        current: list[SentenceSpan] = []
        first_index = 0

        for i, sentence in enumerate(sentences):
            would_exceed = (
                bool(current)
                and estimate_tokens(_join([*current, sentence])) > cfg.max_chunk_size
            )
            # max_chunk_size is the hard bound: an accumulation still below
            # min_chunk_size is closed anyway when the next sentence won't fit.
            if would_exceed:
                drafts.append(self._sentence_draft(current, first_index, header, offset_base))
                seed = _overlap_seed(current, cfg.overlap_size)
                if seed and estimate_tokens(_join([*seed, sentence])) > cfg.max_chunk_size:
                    seed = []
                current = seed
                first_index = i - len(seed)
            current.append(sentence)

        if current:
            drafts.append(self._sentence_draft(current, first_index, header, offset_base))
        return drafts

    @staticmethod
    def _sentence_draft(
        sentences: list[SentenceSpan],
        first_index: int,
        header: str | None,
        offset_base: int | None,
    ) -> _Draft:
        return _Draft(
            content=_join(sentences),
            type=ChunkType.SEMANTIC,
            section_header=header,
            start_offset=None if offset_base is None else offset_base + sentences[0].start,
            end_offset=None if offset_base is None else offset_base + sentences[-1].end,
            start_sentence=first_index,
            end_sentence=first_index + len(sentences) - 1,
        )

    @staticmethod
    def _orphan_text(document: ParsedDocument) -> str:
        claimed: set[str] = set()
        for section in document.sections:
            claimed.add(section.title.strip())
            claimed.update(line.strip() for line in section.content)
        lines: list[str] = []
        for line in document.text.splitlines():
            stripped = line.strip()
            # markdown header lines carry their title after the hashes
            if not stripped or stripped in claimed or stripped.lstrip("#").strip() in claimed:
                continue
            lines.append(stripped)
        return " ".join(lines)

    @staticmethod
    def _finalize(document: ParsedDocument, drafts: list[_Draft]) -> list[Chunk]:
        chunks: list[Chunk] = []
        for index, draft in enumerate(drafts):
            kind = "overlap" if draft.type is ChunkType.OVERLAP else "chunk"
            chunks.append(
                Chunk(
                    chunk_id=f"{document.doc_id}-{kind}-{index:04d}",
                    content=draft.content,
                    token_estimate=estimate_tokens(draft.content),
                    metadata=ChunkMetadata(
                        index=index,
                        type=draft.type,
                        section_header=draft.section_header,
                        start_offset=draft.start_offset,
                        end_offset=draft.end_offset,
                        start_sentence=draft.start_sentence,
                        end_sentence=draft.end_sentence,
                        source_id=document.doc_id,
                    ),
                )
            )
        return chunks

    @staticmethod
    def _statistics(chunks: list[Chunk]) -> ChunkingStatistics:
        if not chunks:
            return ChunkingStatistics()
        sizes = [chunk.token_estimate for chunk in chunks]
        types = [chunk.metadata.type for chunk in chunks]
        return ChunkingStatistics(
            total_chunks=len(chunks),
            total_tokens=sum(sizes),
            average_chunk_size=sum(sizes) / len(sizes),
            min_chunk_size=min(sizes),
            max_chunk_size=max(sizes),
            section_based_chunks=sum(
                1 for t in types if t in (ChunkType.SECTION, ChunkType.PARAGRAPH)
            ),
            semantic_chunks=types.count(ChunkType.SEMANTIC),
            overlap_chunks=types.count(ChunkType.OVERLAP),
        )


def _join(sentences: list[SentenceSpan]) -> str:
    return " ".join(sentence.text for sentence in sentences)


def _overlap_seed(sentences: list[SentenceSpan], overlap_tokens: int) -> list[SentenceSpan]:
    """Trailing sentences worth at most `overlap_tokens`, never the whole chunk."""
    seed: list[SentenceSpan] = []
    total = 0
    for sentence in reversed(sentences[1:]):
        size = estimate_tokens(sentence.text)
        if total + size > overlap_tokens:
            break
        seed.insert(0, sentence)
        total += size
    return seed


def _head_words(text: str, target_tokens: int) -> str:
    taken: list[str] = []
    length = 0
    for word in text.split():
        length += len(word) + (1 if taken else 0)
        taken.append(word)
        if math.ceil(length / 4) >= target_tokens:
            break
    return " ".join(taken)


def _tail_words(text: str, target_tokens: int) -> str:
    taken: list[str] = []
    length = 0
    for word in reversed(text.split()):
        length += len(word) + (1 if taken else 0)
        taken.append(word)
        if math.ceil(length / 4) >= target_tokens:
            break
    return " ".join(reversed(taken))
