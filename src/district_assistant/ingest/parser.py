"""Structure detection for plain-text and markdown sources.

Binary formats (PDF, HTML pages) are converted to text upstream; these
parsers only recover headed sections so the chunker can respect them.
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from collections.abc import Callable
from pathlib import Path
from typing import Any

from district_assistant.errors import InvalidInputError
from district_assistant.types import DocumentSection, ParsedDocument

_MARKDOWN_HEADER = re.compile(r"^(#{1,6})\s+(.+?)\s*#*\s*$")


class Parser(ABC):
    """Base parser interface used by the ingestion pipeline."""

    extensions: tuple[str, ...] = ()
    format_name: str = "text"

    @abstractmethod
    def detect_sections(self, text: str) -> list[DocumentSection]:
        """Return headed sections found in `text`, in document order."""

    def parse_text(
        self,
        text: str,
        *,
        doc_id: str,
        metadata: dict[str, Any] | None = None,
    ) -> ParsedDocument:
        return ParsedDocument(
            doc_id=doc_id,
            text=text,
            metadata={"format": self.format_name, **(metadata or {})},
            sections=self.detect_sections(text),
        )


class TextParser(Parser):
    """Plain text; a short all-caps line starts a new section."""

    extensions = (".txt",)
    format_name = "text"

    def detect_sections(self, text: str) -> list[DocumentSection]:
        return _collect_sections(text, self._header)

    @staticmethod
    def _header(line: str) -> tuple[str, int] | None:
        stripped = line.strip()
        if (
            3 <= len(stripped) <= 80
            and stripped.upper() == stripped
            and any(ch.isalpha() for ch in stripped)
            and not stripped.endswith((".", ",", ";"))
        ):
            return stripped, 1
        return None


class MarkdownParser(Parser):
    """Markdown; ATX headers (`#`, `##`, ...) start sections."""

    extensions = (".md", ".markdown")
    format_name = "markdown"

    def detect_sections(self, text: str) -> list[DocumentSection]:
        return _collect_sections(text, self._header)

    @staticmethod
    def _header(line: str) -> tuple[str, int] | None:
        match = _MARKDOWN_HEADER.match(line.strip())
        if match is None:
            return None
        return match.group(2).strip(), len(match.group(1))


def _collect_sections(
    text: str, header_of: Callable[[str], tuple[str, int] | None]
) -> list[DocumentSection]:
    sections: list[DocumentSection] = []
    current: DocumentSection | None = None
    for line in text.splitlines():
        header = header_of(line)
        if header is not None:
            title, level = header
            current = DocumentSection(title=title, content=[], level=level)
            sections.append(current)
        elif current is not None:
            current.content.append(line)
    return sections


class ParserRegistry:
    """Maps file extensions and format names to parser implementations."""

    def __init__(self, parsers: list[Parser] | None = None) -> None:
        self._by_extension: dict[str, Parser] = {}
        self._by_format: dict[str, Parser] = {}
        for parser in parsers or [TextParser(), MarkdownParser()]:
            self.register(parser)

    def register(self, parser: Parser) -> None:
        for extension in parser.extensions:
            self._by_extension[extension.lower()] = parser
        self._by_format[parser.format_name] = parser

    def parse_text(
        self,
        text: str,
        *,
        doc_id: str,
        format_name: str = "text",
        metadata: dict[str, Any] | None = None,
    ) -> ParsedDocument:
        parser = self._by_format.get(format_name)
        if parser is None:
            raise InvalidInputError(f"No parser registered for format: {format_name}")
        return parser.parse_text(text, doc_id=doc_id, metadata=metadata)

    def parse_path(self, path: str | Path, *, doc_id: str | None = None) -> ParsedDocument:
        file_path = Path(path)
        parser = self._by_extension.get(file_path.suffix.lower())
        if parser is None:
            raise InvalidInputError(f"No parser registered for extension: {file_path.suffix}")
        return parser.parse_text(
            file_path.read_text(encoding="utf-8"),
            doc_id=doc_id or file_path.stem,
            metadata={"source": str(file_path)},
        )
