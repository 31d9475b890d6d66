from __future__ import annotations

import logging
import re
import unicodedata
import warnings
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from html.entities import name2codepoint
from typing import Iterator

from bs4 import (
    BeautifulSoup,
    Comment,
    Declaration,
    Doctype,
    FeatureNotFound,
    NavigableString,
    PageElement,
    ProcessingInstruction,
    Tag,
    XMLParsedAsHTMLWarning,
)
from bs4.exceptions import ParserRejectedMarkup

from .archive import decode_bytes
from .manifest import KIND_MARKUP, KIND_NON_TEXT, KIND_TEXT

logger = logging.getLogger(__name__)

PARAGRAPH_TEXT = "text"
PARAGRAPH_HEADING = "heading"
PARAGRAPH_PLACEHOLDER = "placeholder"

CONTENT_UNAVAILABLE = "[content unavailable]"

# Block elements whose start and end close the current paragraph.
BLOCK_LEVEL_TAGS = {
    "address",
    "article",
    "aside",
    "blockquote",
    "body",
    "caption",
    "center",
    "dd",
    "details",
    "dialog",
    "div",
    "dl",
    "dt",
    "figcaption",
    "figure",
    "footer",
    "form",
    "header",
    "hgroup",
    "li",
    "main",
    "nav",
    "ol",
    "p",
    "section",
    "summary",
    "ul",
}
HEADING_TAGS = {"h1", "h2", "h3", "h4", "h5", "h6"}
BREAK_TAGS = {"br", "hr"}
SKIPPED_TAGS = {"head", "script", "style", "title", "rp", "noscript", "template"}
# Constructs that are not rendered; each becomes one placeholder paragraph.
UNSUPPORTED_BLOCK_TAGS = {
    "table": "table",
    "pre": "code block",
    "svg": "image",
    "math": "math",
    "video": "video",
    "audio": "audio",
}
IMAGE_TAGS = {"img", "image"}
_XML_ENTITIES = {"amp", "lt", "gt", "quot", "apos"}
_AMPERSAND_PATTERN = re.compile(r"&(?:(#[0-9]+|#[xX][0-9A-Fa-f]+|[A-Za-z][A-Za-z0-9]*);)?")
_MARKUP_PATTERN = re.compile(r"<\s*[A-Za-z!?]")
_BLANK_LINES = re.compile(r"\n\s*\n")


class UnparsableDocumentError(ValueError):
    """Raised when a content document has no recoverable markup structure."""


@dataclass(frozen=True)
class Paragraph:
    text: str
    word_count: int
    kind: str = PARAGRAPH_TEXT

    @property
    def is_placeholder(self) -> bool:
        return self.kind == PARAGRAPH_PLACEHOLDER


def normalize_text(text: str) -> str:
    text = unicodedata.normalize("NFKC", text).replace("\u00ad", "")
    return " ".join(text.split())


def make_paragraph(text: str, kind: str = PARAGRAPH_TEXT) -> Paragraph:
    return Paragraph(text=text, word_count=len(text.split()), kind=kind)


def placeholder(label: str) -> Paragraph:
    return make_paragraph(label, PARAGRAPH_PLACEHOLDER)


def omitted(construct: str) -> Paragraph:
    return placeholder(f"[{construct} omitted]")


class _ParagraphCollector:
    def __init__(self) -> None:
        self.paragraphs: list[Paragraph] = []
        self._buffer: list[str] = []

    def add_text(self, text: str) -> None:
        self._buffer.append(text)

    def flush(self, kind: str = PARAGRAPH_TEXT) -> None:
        if not self._buffer:
            return
        text = normalize_text("".join(self._buffer))
        self._buffer = []
        if text:
            self.paragraphs.append(make_paragraph(text, kind))

    def add_placeholder(self, construct: str) -> None:
        self.flush()
        self.paragraphs.append(omitted(construct))


def _local_name(tag: Tag) -> str:
    return (tag.name or "").rsplit(":", 1)[-1].lower()


def _walk(root: Tag, out: _ParagraphCollector) -> None:
    # Explicit stack: deeply nested documents must not hit the recursion limit.
    # Each frame is (remaining children, paragraph kind flushed when it closes).
    stack: list[tuple[Iterator[PageElement], str | None]] = [(iter(root.children), None)]
    while stack:
        children, _ = stack[-1]
        child = next(children, None)
        if child is None:
            _, close_kind = stack.pop()
            if close_kind is not None:
                out.flush(close_kind)
            continue
        if isinstance(child, (Comment, Declaration, Doctype, ProcessingInstruction)):
            continue
        if isinstance(child, NavigableString):
            out.add_text(str(child))
            continue
        if not isinstance(child, Tag):
            continue
        name = _local_name(child)
        if name in SKIPPED_TAGS:
            continue
        if name in UNSUPPORTED_BLOCK_TAGS:
            out.add_placeholder(UNSUPPORTED_BLOCK_TAGS[name])
        elif name in IMAGE_TAGS:
            alt = normalize_text(child.get("alt") or "")
            out.add_text(f" [image: {alt}] " if alt else " [image] ")
        elif name in BREAK_TAGS:
            # Recovering parsers may nest the text after an unclosed <br> inside it.
            out.flush()
            stack.append((iter(child.children), PARAGRAPH_TEXT))
        elif name in HEADING_TAGS:
            out.flush()
            stack.append((iter(child.children), PARAGRAPH_HEADING))
        elif name in BLOCK_LEVEL_TAGS:
            out.flush()
            stack.append((iter(child.children), PARAGRAPH_TEXT))
        else:
            stack.append((iter(child.children), None))


def _xml_safe_entities(markup: str) -> str:
    # XHTML documents routinely use HTML named entities and bare ampersands,
    # both of which XML parsers reject or silently drop.
    def _replace(match: re.Match[str]) -> str:
        ref = match.group(1)
        if ref is None:
            return "&amp;"
        if ref.startswith("#") or ref in _XML_ENTITIES:
            return match.group(0)
        if ref in name2codepoint:
            return f"&#{name2codepoint[ref]};"
        return f"&amp;{ref};"

    return _AMPERSAND_PATTERN.sub(_replace, markup)


def _looks_like_xml(markup: str) -> bool:
    stripped = markup.lstrip()
    lower_head = stripped[:300].lower()
    return stripped.startswith("<?xml") or ("<html" in lower_head and "xmlns" in lower_head)


def _is_well_formed(markup: str) -> bool:
    try:
        ET.fromstring(markup)
    except ET.ParseError:
        return False
    return True


def _soup_from_markup(markup: str) -> BeautifulSoup:
    # The XML parser is only trusted with well-formed input; its recovery mode
    # drops text around unclosed or mismatched tags, where the HTML parser keeps it.
    # huge_tree lifts libxml2's nesting depth cap, which would truncate the chapter.
    if _looks_like_xml(markup):
        xml_markup = _xml_safe_entities(markup.lstrip())
        if _is_well_formed(xml_markup):
            try:
                soup = BeautifulSoup(xml_markup, "lxml-xml", huge_tree=True)
            except FeatureNotFound:
                soup = None
            if soup is not None and soup.find("body") is not None:
                return soup
        else:
            logger.debug("Markup is not well-formed XML; parsing it as HTML")
    with warnings.catch_warnings():
        warnings.filterwarnings("ignore", category=XMLParsedAsHTMLWarning)
        return BeautifulSoup(markup, "lxml", huge_tree=True)


def _parse_markup(raw: bytes) -> list[Paragraph]:
    markup = decode_bytes(raw)
    if "\x00" in markup:
        raise UnparsableDocumentError("Document contains binary data")
    if not _MARKUP_PATTERN.search(markup):
        raise UnparsableDocumentError("Document has no markup structure")
    try:
        soup = _soup_from_markup(markup)
        root = soup.find("body") or soup
        if root.find(True) is None and not root.get_text(strip=True):
            raise UnparsableDocumentError("Document has no recoverable root element")
        collector = _ParagraphCollector()
        _walk(root, collector)
    except ParserRejectedMarkup as exc:
        raise UnparsableDocumentError(f"Parser rejected document: {exc}") from exc
    except RecursionError as exc:
        raise UnparsableDocumentError("Document is nested too deeply") from exc
    collector.flush()
    return collector.paragraphs


def _parse_plain_text(raw: bytes) -> list[Paragraph]:
    paragraphs = []
    for block in _BLANK_LINES.split(decode_bytes(raw)):
        text = normalize_text(block)
        if text:
            paragraphs.append(make_paragraph(text))
    return paragraphs


def _non_text_placeholder(media_type: str | None) -> Paragraph:
    normalized = (media_type or "").split(";", 1)[0].strip().lower()
    if normalized.startswith("image/"):
        return omitted("image")
    return omitted(f"{normalized or 'unknown'} content")


def parse_document(raw: bytes, kind: str, media_type: str | None = None) -> list[Paragraph]:
    """
    Convert one content document into normalized paragraphs.

    Pure function: safe to call from several worker threads at once.
    Unsupported constructs (tables, preformatted blocks, SVG, MathML) are
    replaced in flow by a single placeholder paragraph. Raises
    UnparsableDocumentError only when no markup structure can be recovered.
    """
    if kind == KIND_NON_TEXT:
        return [_non_text_placeholder(media_type)]
    if kind == KIND_TEXT:
        return _parse_plain_text(raw)
    if kind == KIND_MARKUP:
        return _parse_markup(raw)
    raise ValueError(f"Unknown document kind: {kind!r}")
