import pytest

from district_assistant.errors import InvalidInputError
from district_assistant.ingest.parser import ParserRegistry, TextParser


def test_text_parser_detects_all_caps_headers() -> None:
    text = "ATTENDANCE POLICY\nStudents must attend.\n\nLATE ARRIVALS\nSign in at the office.\n"

    sections = TextParser().detect_sections(text)

    assert [section.title for section in sections] == ["ATTENDANCE POLICY", "LATE ARRIVALS"]
    assert sections[0].content == ["Students must attend.", ""]


def test_text_parser_ignores_shouted_sentences() -> None:
    sections = TextParser().detect_sections("NO SCHOOL ON FRIDAY.\nEnjoy the long weekend.")

    assert sections == []


def test_markdown_header_levels() -> None:
    doc = ParserRegistry().parse_text(
        "# Handbook\nIntro\n## Meals ##\nLunch is served at noon.",
        doc_id="handbook",
        format_name="markdown",
        metadata={"title": "Family Handbook"},
    )

    assert [(s.title, s.level) for s in doc.sections] == [("Handbook", 1), ("Meals", 2)]
    assert doc.metadata == {"format": "markdown", "title": "Family Handbook"}


def test_parse_path_uses_extension_and_stem(tmp_path) -> None:
    path = tmp_path / "bus-routes.md"
    path.write_text("# Routes\nRoute 4 starts at 7:10 AM.", encoding="utf-8")

    doc = ParserRegistry().parse_path(path)

    assert doc.doc_id == "bus-routes"
    assert doc.metadata["source"] == str(path)
    assert doc.sections[0].title == "Routes"


def test_unknown_format_and_extension_are_rejected(tmp_path) -> None:
    registry = ParserRegistry()
    with pytest.raises(InvalidInputError):
        registry.parse_text("x", doc_id="a", format_name="pdf")

    path = tmp_path / "scan.pdf"
    path.write_bytes(b"%PDF")
    with pytest.raises(InvalidInputError):
        registry.parse_path(path)
