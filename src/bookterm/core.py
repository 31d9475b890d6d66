from __future__ import annotations

import logging
import os
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Sequence

from .archive import ArchiveError, ArchiveHandle, open_archive
from .content import (
    CONTENT_UNAVAILABLE,
    PARAGRAPH_HEADING,
    Paragraph,
    UnparsableDocumentError,
    parse_document,
    placeholder,
)
from .manifest import BookMetadata, ContentRef, resolve_manifest

logger = logging.getLogger(__name__)

WORKERS_ENV = "BOOKTERM_WORKERS"

DocumentParser = Callable[..., list[Paragraph]]
EntryLoader = Callable[[str], bytes]


@dataclass(frozen=True)
class Chapter:
    index: int
    source: str
    title: str | None
    paragraphs: tuple[Paragraph, ...]
    degraded: bool = False

    @property
    def word_count(self) -> int:
        return sum(paragraph.word_count for paragraph in self.paragraphs)


@dataclass(frozen=True)
class Book:
    path: str
    metadata: BookMetadata
    chapters: tuple[Chapter, ...]

    @property
    def title(self) -> str:
        return self.metadata.title or Path(self.path).stem

    @property
    def word_count(self) -> int:
        return sum(chapter.word_count for chapter in self.chapters)


@dataclass
class _ParseOutcome:
    paragraphs: list[Paragraph] | None
    error: str | None = None


def resolve_worker_count(requested: int | None, jobs: int) -> int:
    workers = requested
    if workers is None:
        env_workers = os.getenv(WORKERS_ENV)
        if env_workers:
            try:
                parsed = int(env_workers)
                if parsed > 0:
                    workers = parsed
            except ValueError:
                logger.debug("Ignoring invalid %s=%r", WORKERS_ENV, env_workers)
    if workers is None:
        workers = os.cpu_count() or 1
    return max(1, min(workers, max(jobs, 1)))


def _first_heading(paragraphs: Sequence[Paragraph]) -> str | None:
    for paragraph in paragraphs:
        if paragraph.kind == PARAGRAPH_HEADING:
            return paragraph.text
    return None


def assemble_chapters(
    refs: Sequence[ContentRef],
    load: EntryLoader,
    *,
    toc: dict[int, str] | None = None,
    max_workers: int | None = None,
    parser: DocumentParser = parse_document,
) -> tuple[list[Chapter], list[str]]:
    """
    Parse every content document in parallel and rebuild spine order.

    Each worker receives its spine index and returns an owned result, which is
    written into a slot list by index. Nothing is emitted until all workers
    have finished. A document that cannot be read or parsed becomes a
    single-paragraph placeholder chapter instead of failing the whole book.
    """
    toc = toc or {}
    slots: list[_ParseOutcome | None] = [None] * len(refs)
    workers = resolve_worker_count(max_workers, len(refs))
    logger.debug("Parsing %d documents with %d workers", len(refs), workers)

    def _worker(position: int, ref: ContentRef) -> tuple[int, _ParseOutcome]:
        try:
            raw = load(ref.path)
            return position, _ParseOutcome(parser(raw, ref.kind, ref.media_type))
        except (UnparsableDocumentError, ArchiveError) as exc:
            return position, _ParseOutcome(None, f"{ref.path}: {exc}")

    if refs:
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="bookterm-parse") as executor:
            futures = [executor.submit(_worker, position, ref) for position, ref in enumerate(refs)]
            for future in futures:
                position, outcome = future.result()
                slots[position] = outcome

    chapters: list[Chapter] = []
    warnings: list[str] = []
    for position, (ref, outcome) in enumerate(zip(refs, slots)):
        if outcome is None or outcome.paragraphs is None:
            message = outcome.error if outcome else f"{ref.path}: no result"
            logger.warning("Content unavailable for spine item %d (%s)", position, message)
            warnings.append(f"Content unavailable: {message}")
            chapters.append(
                Chapter(
                    index=position,
                    source=ref.path,
                    title=toc.get(ref.index),
                    paragraphs=(placeholder(CONTENT_UNAVAILABLE),),
                    degraded=True,
                )
            )
            continue
        paragraphs = tuple(outcome.paragraphs)
        chapters.append(
            Chapter(
                index=position,
                source=ref.path,
                title=toc.get(ref.index) or _first_heading(paragraphs),
                paragraphs=paragraphs,
            )
        )
    return chapters, warnings


def load_book_from_archive(
    handle: ArchiveHandle,
    *,
    max_workers: int | None = None,
    parser: DocumentParser = parse_document,
) -> tuple[Book, list[str]]:
    manifest = resolve_manifest(handle)
    chapters, warnings = assemble_chapters(
        manifest.spine,
        handle.read_entry,
        toc=manifest.toc,
        max_workers=max_workers,
        parser=parser,
    )
    book = Book(path=str(handle.path), metadata=manifest.metadata, chapters=tuple(chapters))
    return book, warnings


def load_book(
    path: str | Path,
    *,
    max_workers: int | None = None,
) -> tuple[Book, list[str]]:
    """
    Open an EPUB and assemble it into a Book.

    Returns the book and the list of degraded-content warnings. Archive and
    package failures (ArchiveError, PackageError) propagate to the caller.
    """
    with open_archive(path) as handle:
        book, warnings = load_book_from_archive(handle, max_workers=max_workers)
    logger.debug(
        "Loaded %s: %d chapters, %d words", book.path, len(book.chapters), book.word_count
    )
    return book, warnings
