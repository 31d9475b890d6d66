from __future__ import annotations

import threading
from pathlib import Path

import pytest

from bookterm.archive import ArchiveNotFoundError, EntryMissingError, NotAnArchiveError
from bookterm.content import CONTENT_UNAVAILABLE, parse_document
from bookterm.core import assemble_chapters, load_book, resolve_worker_count
from bookterm.manifest import KIND_MARKUP, ContentRef, MalformedPackageError, MissingRootError
from conftest import chapter_doc, xhtml


def _refs(*names: str) -> list[ContentRef]:
    return [
        ContentRef(index=idx, item_id=name, path=f"{name}.xhtml", media_type="application/xhtml+xml", kind=KIND_MARKUP)
        for idx, name in enumerate(names)
    ]


def test_load_book_preserves_spine_order_and_metadata(make_epub) -> None:
    epub = make_epub(reverse_entries=True)
    book, warnings = load_book(epub, max_workers=3)

    assert warnings == []
    assert book.path == str(Path(epub).resolve())
    assert book.metadata.title == "Sample Book"
    assert book.title == "Sample Book"
    assert [chapter.index for chapter in book.chapters] == [0, 1, 2]
    assert [chapter.title for chapter in book.chapters] == ["Chapter One", "Chapter Two", "Chapter Three"]
    assert book.chapters[1].paragraphs[1].text == "This is the second chapter."
    assert book.word_count == sum(chapter.word_count for chapter in book.chapters)


def test_completion_order_does_not_affect_chapter_order() -> None:
    # Completion order forced to C, A, B.
    done = {name: threading.Event() for name in "ABC"}
    waits_for = {"A": "C", "B": "A", "C": None}
    completed: list[str] = []
    lock = threading.Lock()

    def _parser(raw: bytes, kind: str, media_type: str | None = None):
        name = raw.decode()
        dependency = waits_for[name]
        if dependency is not None:
            assert done[dependency].wait(timeout=5)
        with lock:
            completed.append(name)
        done[name].set()
        return parse_document(f"<p>{name}</p>".encode(), kind)

    def _load(path: str) -> bytes:
        return path.split(".")[0].encode()

    chapters, warnings = assemble_chapters(_refs("A", "B", "C"), _load, max_workers=3, parser=_parser)

    assert completed == ["C", "A", "B"]
    assert warnings == []
    assert [chapter.paragraphs[0].text for chapter in chapters] == ["A", "B", "C"]
    assert [chapter.source for chapter in chapters] == ["A.xhtml", "B.xhtml", "C.xhtml"]


def test_corrupt_document_yields_placeholder_chapter(make_epub) -> None:
    documents = [
        ("ch1", "ch1.xhtml", chapter_doc("Chapter One", "Intact opening.")),
        ("ch2", "ch2.xhtml", b"\x00\x00\xff garbage \x00"),
        ("ch3", "ch3.xhtml", chapter_doc("Chapter Three", "Intact ending.")),
    ]
    book, warnings = load_book(make_epub(documents), max_workers=2)

    assert len(book.chapters) == 3
    first, middle, last = book.chapters
    assert not first.degraded and first.paragraphs[-1].text == "Intact opening."
    assert middle.degraded
    assert [p.text for p in middle.paragraphs] == [CONTENT_UNAVAILABLE]
    assert not last.degraded and last.paragraphs[-1].text == "Intact ending."
    assert len(warnings) == 1
    assert "ch2.xhtml" in warnings[0]


def test_missing_spine_entry_yields_placeholder_chapter() -> None:
    def _load(path: str) -> bytes:
        if path == "B.xhtml":
            raise EntryMissingError(path)
        return b"<p>ok</p>"

    chapters, warnings = assemble_chapters(_refs("A", "B"), _load, max_workers=1)
    assert chapters[0].paragraphs[0].text == "ok"
    assert chapters[1].degraded
    assert warnings and "B.xhtml" in warnings[0]


def test_unexpected_errors_propagate() -> None:
    def _parser(raw: bytes, kind: str, media_type: str | None = None):
        raise RuntimeError("bug")

    with pytest.raises(RuntimeError, match="bug"):
        assemble_chapters(_refs("A"), lambda path: b"<p/>", parser=_parser)


def test_toc_title_takes_precedence_over_heading() -> None:
    chapters, _ = assemble_chapters(
        _refs("A", "B"),
        lambda path: b"<html><body><h1>Heading</h1><p>text</p></body></html>",
        toc={1: "From TOC"},
        max_workers=1,
    )
    assert [chapter.title for chapter in chapters] == ["Heading", "From TOC"]


def test_empty_spine_gives_empty_book() -> None:
    chapters, warnings = assemble_chapters([], lambda path: b"")
    assert chapters == [] and warnings == []


def test_worker_count_is_bounded(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("BOOKTERM_WORKERS", raising=False)
    assert resolve_worker_count(8, 3) == 3
    assert resolve_worker_count(0, 3) == 1
    monkeypatch.setenv("BOOKTERM_WORKERS", "2")
    assert resolve_worker_count(None, 10) == 2
    monkeypatch.setenv("BOOKTERM_WORKERS", "lots")
    assert 1 <= resolve_worker_count(None, 10) <= 10


def test_load_book_fatal_errors(tmp_path: Path, make_epub) -> None:
    with pytest.raises(ArchiveNotFoundError):
        load_book(tmp_path / "nope.epub")
    bogus = tmp_path / "bogus.epub"
    bogus.write_bytes(b"plain bytes")
    with pytest.raises(NotAnArchiveError):
        load_book(bogus)
    with pytest.raises(MissingRootError):
        load_book(make_epub(container=False))
    with pytest.raises(MalformedPackageError):
        load_book(make_epub(spine=["ch1", "missing"]))


def test_deeply_nested_document_does_not_abort_the_book(make_epub) -> None:
    depth = 3000
    nested = xhtml("Deep", "<p>" + "<span>" * depth + "deep" + "</span>" * depth + "</p>")
    documents = [
        ("ch1", "ch1.xhtml", chapter_doc("Chapter One", "Intact opening.")),
        ("ch2", "ch2.xhtml", nested),
        ("ch3", "ch3.xhtml", chapter_doc("Chapter Three", "Intact ending.")),
    ]
    book, warnings = load_book(make_epub(documents), max_workers=3)

    assert [chapter.index for chapter in book.chapters] == [0, 1, 2]
    first, middle, last = book.chapters
    assert first.paragraphs[-1].text == "Intact opening."
    assert last.paragraphs[-1].text == "Intact ending."
    assert not middle.degraded
    assert [p.text for p in middle.paragraphs] == ["deep"]
    assert warnings == []
