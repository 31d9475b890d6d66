from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from pathlib import Path

from .core import Book
from .pagination import (
    DEFAULT_WPM,
    Line,
    Page,
    Viewport,
    chapter_remaining_time,
    estimated_reading_time,
    page_for_offset,
    paginate,
    reading_fraction,
    remaining_reading_time,
)
from .progress import ProgressSaveError, ReadingProgress, save_progress

logger = logging.getLogger(__name__)


class Intent(str, Enum):
    NEXT_PAGE = "next_page"
    PREV_PAGE = "prev_page"
    SCROLL_UP = "scroll_up"
    SCROLL_DOWN = "scroll_down"
    SHOW_ETA = "show_eta"
    SHOW_METADATA = "show_metadata"
    QUIT = "quit"


@dataclass(frozen=True)
class ReadingEstimate:
    page: timedelta
    chapter_remaining: timedelta
    book_remaining: timedelta
    wpm: int


@dataclass(frozen=True)
class SessionUpdate:
    intent: Intent | None
    page_index: int
    changed: bool = False
    saved: bool = False
    estimate: ReadingEstimate | None = None
    warning: str | None = None


class ReadingSession:
    """
    Current position in one book plus the progress it persists.

    Page turns are committed (progress ``set`` + ``save``); scrolling is a
    transient line offset from the page top and is never saved.
    """

    def __init__(
        self,
        book: Book,
        viewport: Viewport,
        *,
        progress: ReadingProgress,
        progress_path: Path,
        wpm: int = DEFAULT_WPM,
    ) -> None:
        if wpm <= 0:
            raise ValueError(f"words per minute must be positive, got {wpm}")
        self.book = book
        self.progress = progress
        self.progress_path = Path(progress_path)
        self.wpm = wpm
        self.scroll = 0
        self.show_metadata = False
        self.finished = False
        self._paginate(viewport)
        stored = progress.get(book.path) or 0
        self.page_index = min(stored, len(self.pages) - 1)

    def _paginate(self, viewport: Viewport) -> None:
        self.viewport = viewport
        self.pages: list[Page] = paginate(self.book, viewport)
        self._lines: list[Line] = [line for page in self.pages for line in page.lines]

    @property
    def page(self) -> Page:
        return self.pages[self.page_index]

    @property
    def page_count(self) -> int:
        return len(self.pages)

    @property
    def fraction(self) -> float:
        return reading_fraction(self.pages, self.page_index)

    @property
    def chapter_title(self) -> str | None:
        chapter_index = self.page.chapter_index
        if chapter_index is None:
            return None
        return self.book.chapters[chapter_index].title

    def _top_line(self) -> int:
        return self.page.first_line + self.scroll

    def visible_lines(self) -> list[Line]:
        top = self._top_line()
        return self._lines[top : top + self.viewport.height]

    def dispatch(self, intent: Intent) -> SessionUpdate:
        if intent is Intent.NEXT_PAGE:
            return self.turn_page(1)
        if intent is Intent.PREV_PAGE:
            return self.turn_page(-1)
        if intent is Intent.SCROLL_DOWN:
            return self.scroll_by(1)
        if intent is Intent.SCROLL_UP:
            return self.scroll_by(-1)
        if intent is Intent.SHOW_ETA:
            return SessionUpdate(intent, self.page_index, estimate=self.estimate())
        if intent is Intent.SHOW_METADATA:
            self.show_metadata = not self.show_metadata
            return SessionUpdate(intent, self.page_index, changed=True)
        if intent is Intent.QUIT:
            return self.quit()
        raise ValueError(f"Unknown intent: {intent!r}")

    def turn_page(self, delta: int) -> SessionUpdate:
        intent = Intent.NEXT_PAGE if delta > 0 else Intent.PREV_PAGE
        target = max(0, min(self.page_index + delta, len(self.pages) - 1))
        had_scroll = self.scroll != 0
        self.scroll = 0
        if target == self.page_index:
            return SessionUpdate(intent, self.page_index, changed=had_scroll)
        self.page_index = target
        saved, warning = self._commit()
        return SessionUpdate(intent, self.page_index, changed=True, saved=saved, warning=warning)

    def scroll_by(self, delta: int) -> SessionUpdate:
        intent = Intent.SCROLL_DOWN if delta > 0 else Intent.SCROLL_UP
        top = self._top_line() + delta
        top = max(0, min(top, max(len(self._lines) - 1, 0)))
        new_scroll = top - self.page.first_line
        changed = new_scroll != self.scroll
        self.scroll = new_scroll
        return SessionUpdate(intent, self.page_index, changed=changed)

    def estimate(self) -> ReadingEstimate:
        return ReadingEstimate(
            page=estimated_reading_time(self.page, self.wpm),
            chapter_remaining=chapter_remaining_time(self.pages, self.page_index, self.wpm),
            book_remaining=remaining_reading_time(self.pages, self.page_index, self.wpm),
            wpm=self.wpm,
        )

    def resize(self, viewport: Viewport) -> SessionUpdate:
        """Re-paginate for a new viewport, keeping the top visible line in view."""
        if viewport == self.viewport:
            return SessionUpdate(None, self.page_index)
        anchor_lines = self.visible_lines()
        anchor = anchor_lines[0].offset if anchor_lines else 0
        self._paginate(viewport)
        self.scroll = 0
        self.page_index = page_for_offset(self.pages, anchor)
        return SessionUpdate(None, self.page_index, changed=True)

    def quit(self) -> SessionUpdate:
        saved, warning = self._commit()
        self.finished = True
        return SessionUpdate(Intent.QUIT, self.page_index, saved=saved, warning=warning)

    def _commit(self) -> tuple[bool, str | None]:
        self.progress = self.progress.set(self.book.path, self.page_index, self.wpm)
        try:
            save_progress(self.progress, self.progress_path)
        except ProgressSaveError as exc:
            logger.warning("%s", exc)
            return False, str(exc)
        return True, None
