import pytest

from district_assistant.config import ChunkingConfig
from district_assistant.errors import InvalidInputError
from district_assistant.ingest.chunker import SemanticChunker
from district_assistant.ingest.parser import ParserRegistry
from district_assistant.types import ChunkType, DocumentSection, ParsedDocument


def _rules(count: int) -> str:
    return " ".join(f"Rule {i:02d} explains the attendance policy here." for i in range(count))


def test_sentence_chunks_respect_max_and_carry_overlap() -> None:
    config = ChunkingConfig(min_chunk_size=20, max_chunk_size=60, overlap_size=12)
    chunker = SemanticChunker(config)
    doc = ParsedDocument(doc_id="handbook", text=_rules(20))

    result = chunker.chunk(doc)
    chunks = result.chunks

    assert len(chunks) >= 3
    assert all(chunk.token_estimate <= 60 for chunk in chunks)
    assert all(chunk.metadata.type is ChunkType.SEMANTIC for chunk in chunks)
    for left, right in zip(chunks, chunks[1:]):
        assert right.metadata.start_sentence == left.metadata.end_sentence
        last_sentence = left.content.rsplit("Rule", 1)[1]
        assert right.content.startswith("Rule" + last_sentence)
    assert chunks[-1].metadata.end_sentence == 19
    assert result.statistics.semantic_chunks == len(chunks)


def test_sentence_offsets_point_into_source_text() -> None:
    chunker = SemanticChunker(ChunkingConfig(min_chunk_size=20, max_chunk_size=60, overlap_size=0))
    text = _rules(8)
    doc = ParsedDocument(doc_id="handbook", text=text)

    for chunk in chunker.chunk(doc).chunks:
        start, end = chunk.metadata.start_offset, chunk.metadata.end_offset
        assert start is not None and end is not None
        assert text[start:end] == chunk.content


def test_markdown_sections_become_section_chunks_with_bridges() -> None:
    config = ChunkingConfig(min_chunk_size=20, max_chunk_size=200, overlap_size=12)
    markdown = (
        "# Attendance\n"
        "Students must arrive by 8:00 AM. Parents report absences to the front office before noon.\n"
        "\n"
        "# Dress Code\n"
        "Uniforms are required Monday through Thursday. Friday is a free dress day for all grades.\n"
    )
    doc = ParserRegistry().parse_text(markdown, doc_id="policies", format_name="markdown")

    chunks = SemanticChunker(config).chunk(doc).chunks

    assert [chunk.metadata.type for chunk in chunks] == [
        ChunkType.SECTION,
        ChunkType.OVERLAP,
        ChunkType.SECTION,
    ]
    assert [chunk.metadata.section_header for chunk in chunks] == ["Attendance", None, "Dress Code"]
    assert chunks[1].chunk_id == "policies-overlap-0001"
    assert "noon" in chunks[1].content and "Uniforms" in chunks[1].content
    assert all(chunk.metadata.source_id == "policies" for chunk in chunks)
    assert "#" not in " ".join(chunk.content for chunk in chunks)


def test_oversized_section_is_split_by_paragraph_and_keeps_header() -> None:
    config = ChunkingConfig(min_chunk_size=10, max_chunk_size=20, overlap_size=0)
    paragraphs = [
        "Bus routes are posted on the district website each August.",
        "Riders must be at the stop five minutes before pickup time.",
        "Changes to a route are announced through the parent portal.",
    ]
    doc = ParsedDocument(
        doc_id="transport",
        text="TRANSPORTATION\n" + "\n\n".join(paragraphs),
        sections=[
            DocumentSection(
                title="TRANSPORTATION",
                content="\n\n".join(paragraphs).splitlines(),
            )
        ],
    )

    result = SemanticChunker(config).chunk(doc)

    assert len(result.chunks) == 3
    assert all(chunk.metadata.type is ChunkType.PARAGRAPH for chunk in result.chunks)
    assert all(chunk.metadata.section_header == "TRANSPORTATION" for chunk in result.chunks)
    assert result.statistics.section_based_chunks == 3


def test_single_sentence_longer_than_max_is_kept_whole() -> None:
    config = ChunkingConfig(min_chunk_size=5, max_chunk_size=20, overlap_size=0)
    sentence = "This one sentence about the district enrollment window is much longer than the limit"
    doc = ParsedDocument(doc_id="long", text=sentence)

    chunks = SemanticChunker(config).chunk(doc).chunks

    assert len(chunks) == 1
    assert chunks[0].content == sentence
    assert chunks[0].token_estimate > 20


def test_chunk_rejects_document_without_id() -> None:
    with pytest.raises(InvalidInputError):
        SemanticChunker().chunk(ParsedDocument(doc_id="", text="Hello there."))


def test_invalid_overlap_is_rejected_by_config() -> None:
    with pytest.raises(ValueError):
        ChunkingConfig(min_chunk_size=10, max_chunk_size=40, overlap_size=20)
