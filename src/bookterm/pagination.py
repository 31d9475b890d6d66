from __future__ import annotations

import re
from bisect import bisect_right
from dataclasses import dataclass
from datetime import timedelta
from typing import Sequence

from rich.cells import cell_len

from .core import Book

DEFAULT_WPM = 238

_WORD_PATTERN = re.compile(r"\S+")


@dataclass(frozen=True)
class Viewport:
    width: int
    height: int

    def __post_init__(self) -> None:
        if self.width < 1 or self.height < 1:
            raise ValueError(f"Viewport must be at least 1x1, got {self.width}x{self.height}")


@dataclass(frozen=True)
class Line:
    text: str
    chapter_index: int
    paragraph_index: int | None
    offset: int
    words: int = 0

    @property
    def is_separator(self) -> bool:
        return self.paragraph_index is None


@dataclass(frozen=True)
class Page:
    index: int
    lines: tuple[Line, ...]
    first_line: int

    @property
    def word_count(self) -> int:
        return sum(line.words for line in self.lines)

    @property
    def offset(self) -> int:
        return self.lines[0].offset if self.lines else 0

    @property
    def chapter_index(self) -> int | None:
        for line in self.lines:
            if not line.is_separator:
                return line.chapter_index
        return self.lines[0].chapter_index if self.lines else None

    @property
    def first_paragraph(self) -> tuple[int, int] | None:
        for line in self.lines:
            if line.paragraph_index is not None:
                return line.chapter_index, line.paragraph_index
        return None

    @property
    def last_paragraph(self) -> tuple[int, int] | None:
        for line in reversed(self.lines):
            if line.paragraph_index is not None:
                return line.chapter_index, line.paragraph_index
        return None

    @property
    def text_lines(self) -> list[str]:
        return [line.text for line in self.lines]


def _hard_break(word: str, width: int) -> list[tuple[int, str]]:
    pieces: list[tuple[int, str]] = []
    start = 0
    cells = 0
    for idx, ch in enumerate(word):
        ch_cells = cell_len(ch)
        if cells and cells + ch_cells > width:
            pieces.append((start, word[start:idx]))
            start = idx
            cells = 0
        cells += ch_cells
    pieces.append((start, word[start:]))
    return pieces


def wrap_paragraph(text: str, width: int) -> list[tuple[str, int, int]]:
    """
    Greedy word wrap measured in terminal cells.

    Returns ``(line_text, start_offset, words)`` triples. Words longer than
    ``width`` are hard-broken; only the piece holding a word's first
    character counts that word, so the ``words`` column sums to the
    paragraph's word count.
    """
    if width < 1:
        raise ValueError("width must be positive")
    lines: list[tuple[str, int, int]] = []
    line_start: int | None = None
    line_end = 0
    line_cells = 0
    line_words = 0
    for match in _WORD_PATTERN.finditer(text):
        word = match.group(0)
        word_cells = cell_len(word)
        if line_start is not None:
            if line_cells + 1 + word_cells <= width:
                line_end = match.end()
                line_cells += 1 + word_cells
                line_words += 1
                continue
            lines.append((text[line_start:line_end], line_start, line_words))
            line_start = None
        if word_cells <= width:
            line_start, line_end = match.start(), match.end()
            line_cells, line_words = word_cells, 1
            continue
        pieces = _hard_break(word, width)
        for position, (piece_start, piece) in enumerate(pieces[:-1]):
            lines.append((piece, match.start() + piece_start, 1 if position == 0 else 0))
        tail_start, tail = pieces[-1]
        line_start = match.start() + tail_start
        line_end = match.end()
        line_cells = cell_len(tail)
        line_words = 1 if len(pieces) == 1 else 0
    if line_start is not None:
        lines.append((text[line_start:line_end], line_start, line_words))
    return lines


def wrap_book(book: Book, width: int) -> list[Line]:
    """
    Wrap the whole book into one line sequence.

    Paragraph texts are laid end to end, joined by a single newline, to form
    the assembled text that ``Line.offset`` indexes into. A blank separator
    line sits between consecutive paragraphs (chapter boundaries included)
    and carries the end offset of the paragraph before it, so offsets never
    decrease along the sequence.
    """
    lines: list[Line] = []
    base = 0
    for chapter in book.chapters:
        for paragraph_index, paragraph in enumerate(chapter.paragraphs):
            if lines:
                lines.append(Line("", chapter.index, None, base - 1, 0))
            for text, start, words in wrap_paragraph(paragraph.text, width):
                lines.append(Line(text, chapter.index, paragraph_index, base + start, words))
            base += len(paragraph.text) + 1
    return lines


def paginate(book: Book, viewport: Viewport) -> list[Page]:
    lines = wrap_book(book, viewport.width)
    if not lines:
        return [Page(index=0, lines=(), first_line=0)]
    height = viewport.height
    return [
        Page(index=page_index, lines=tuple(lines[start : start + height]), first_line=start)
        for page_index, start in enumerate(range(0, len(lines), height))
    ]


def chapter_start_pages(pages: Sequence[Page]) -> dict[int, int]:
    starts: dict[int, int] = {}
    for page in pages:
        for line in page.lines:
            if not line.is_separator:
                starts.setdefault(line.chapter_index, page.index)
    return starts


def page_for_offset(pages: Sequence[Page], offset: int) -> int:
    """Index of the page holding the last line whose offset is <= ``offset``."""
    firsts = [page.offset for page in pages]
    return max(0, bisect_right(firsts, offset) - 1)


def _minutes(words: int, wpm: int) -> timedelta:
    if wpm <= 0:
        raise ValueError(f"words per minute must be positive, got {wpm}")
    return timedelta(minutes=words / wpm)


def estimated_reading_time(page: Page, wpm: int = DEFAULT_WPM) -> timedelta:
    return _minutes(page.word_count, wpm)


def remaining_reading_time(pages: Sequence[Page], index: int, wpm: int = DEFAULT_WPM) -> timedelta:
    return _minutes(sum(page.word_count for page in pages[index:]), wpm)


def chapter_remaining_time(pages: Sequence[Page], index: int, wpm: int = DEFAULT_WPM) -> timedelta:
    chapter = pages[index].chapter_index if pages else None
    if chapter is None:
        return _minutes(0, wpm)
    words = 0
    for page in pages[index:]:
        for line in page.lines:
            if line.chapter_index == chapter:
                words += line.words
            elif line.chapter_index > chapter:
                return _minutes(words, wpm)
    return _minutes(words, wpm)


def reading_fraction(pages: Sequence[Page], index: int) -> float:
    if len(pages) <= 1:
        return 1.0
    return index / (len(pages) - 1)


def format_duration(value: timedelta) -> str:
    total_minutes = int(round(value.total_seconds() / 60))
    if total_minutes < 1:
        return "<1 min"
    hours, minutes = divmod(total_minutes, 60)
    if hours:
        return f"{hours}h {minutes:02d}m"
    return f"{minutes} min"
