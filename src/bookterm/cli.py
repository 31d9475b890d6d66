from __future__ import annotations

import argparse
import sys
from importlib import metadata
from pathlib import Path
from typing import Callable, Sequence

import tomllib
from rich.console import Console
from rich.markup import escape
from rich.table import Table
from rich.text import Text

from .archive import ArchiveError
from .config import load_config
from .content import PARAGRAPH_HEADING, PARAGRAPH_PLACEHOLDER
from .core import Book, load_book
from .logging_utils import configure_logging
from .manifest import PackageError
from .pagination import Line, Viewport, format_duration
from .progress import load_progress
from .session import Intent, ReadingSession, SessionUpdate

RESERVED_ROWS = 3
HELP_LINE = "n/Enter next · p previous · j/k scroll · e time left · m metadata · q quit"
KEY_INTENTS = {
    "": Intent.NEXT_PAGE,
    "n": Intent.NEXT_PAGE,
    "p": Intent.PREV_PAGE,
    "b": Intent.PREV_PAGE,
    "j": Intent.SCROLL_DOWN,
    "k": Intent.SCROLL_UP,
    "e": Intent.SHOW_ETA,
    "m": Intent.SHOW_METADATA,
    "q": Intent.QUIT,
}


def _read_local_version() -> str | None:
    try:
        pyproject_path = Path(__file__).resolve().parents[2] / "pyproject.toml"
    except IndexError:  # pragma: no cover
        return None
    try:
        with pyproject_path.open("rb") as fh:
            data = tomllib.load(fh)
    except (FileNotFoundError, tomllib.TOMLDecodeError):
        return None
    return data.get("project", {}).get("version")


try:
    __version__ = metadata.version("bookterm")
except metadata.PackageNotFoundError:
    __version__ = _read_local_version() or "0.0.0+unknown"


def _positive_int(value: str) -> int:
    try:
        parsed = int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"expected an integer, got {value!r}") from exc
    if parsed <= 0:
        raise argparse.ArgumentTypeError(f"must be positive, got {parsed}")
    return parsed


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="bookterm",
        description="Read an EPUB in the terminal, one page at a time.",
    )
    ap.add_argument(
        "-v",
        "--version",
        action="version",
        version=f"bookterm {__version__}",
    )
    ap.add_argument("-p", "--path", required=True, help="Path of the epub file")
    ap.add_argument(
        "-w",
        "--words-per-minute",
        "--word-count",
        dest="wpm",
        type=_positive_int,
        default=None,
        help=(
            "Words per minute used to estimate reading time "
            "(default: 238, the average adult reading speed)"
        ),
    )
    ap.add_argument(
        "--progress-file",
        default=None,
        help="Where reading positions are stored (default: $XDG_STATE_HOME/bookterm/progress.json)",
    )
    ap.add_argument("--debug", action="store_true", help="Enable verbose debug logging.")
    return ap


def viewport_for(console: Console) -> Viewport:
    width, height = console.size
    return Viewport(width=max(width, 1), height=max(height - RESERVED_ROWS, 1))


def _style_for(book: Book, line: Line) -> str:
    if line.paragraph_index is None:
        return ""
    kind = book.chapters[line.chapter_index].paragraphs[line.paragraph_index].kind
    if kind == PARAGRAPH_HEADING:
        return "bold"
    if kind == PARAGRAPH_PLACEHOLDER:
        return "dim italic"
    return ""


def _metadata_table(book: Book) -> Table:
    meta = book.metadata
    table = Table(title=book.title, show_header=False, box=None, pad_edge=False)
    table.add_column(style="bold cyan", no_wrap=True)
    table.add_column()
    table.add_row("Author", meta.author or "Unknown")
    table.add_row("Language", meta.language or "-")
    if meta.identifier:
        table.add_row("Identifier", meta.identifier)
    if meta.cover:
        table.add_row("Cover", meta.cover)
    table.add_row("Chapters", str(len(book.chapters)))
    table.add_row("Words", f"{book.word_count:,}")
    for key, values in meta.fields:
        if key in {"title", "creator", "language", "identifier"}:
            continue
        table.add_row(key.capitalize(), "; ".join(values))
    table.add_row("File", book.path)
    return table


def render(session: ReadingSession, console: Console, status: str | None = None) -> None:
    if console.is_terminal:
        console.clear()
    if session.show_metadata:
        console.print(_metadata_table(session.book))
    else:
        lines = session.visible_lines()
        for line in lines:
            console.print(
                Text(line.text, style=_style_for(session.book, line)),
                no_wrap=True,
                overflow="crop",
            )
        for _ in range(session.viewport.height - len(lines)):
            console.print()
    chapter = session.chapter_title
    parts = [session.book.title]
    if chapter:
        parts.append(chapter)
    parts.append(f"page {session.page_index + 1}/{session.page_count}")
    parts.append(f"{session.fraction:.0%}")
    console.print(Text(" · ".join(parts), style="reverse"), no_wrap=True, overflow="ellipsis")
    if status:
        console.print(Text(status, style="yellow"))


def summarize_notices(notices: Sequence[str]) -> str | None:
    """Fold every load-time warning into one status message."""
    if not notices:
        return None
    if len(notices) == 1:
        return notices[0]
    return f"{len(notices)} warnings while loading: " + "; ".join(notices)


def _describe(update: SessionUpdate) -> str | None:
    if update.warning:
        return update.warning
    if update.estimate is not None:
        est = update.estimate
        return (
            f"This page {format_duration(est.page)} · chapter left {format_duration(est.chapter_remaining)}"
            f" · book left {format_duration(est.book_remaining)} ({est.wpm} wpm)"
        )
    return None


def run_session(
    session: ReadingSession,
    console: Console,
    *,
    read_command: Callable[[], str] | None = None,
    notices: Sequence[str] = (),
) -> int:
    """Drive the session from line-based commands until quit or end of input."""
    if read_command is None:
        read_command = lambda: console.input("> ")  # noqa: E731
    status = summarize_notices(notices)
    while not session.finished:
        session.resize(viewport_for(console))
        render(session, console, status)
        status = None
        try:
            command = read_command()
        except (EOFError, KeyboardInterrupt):
            command = "q"
        key = command.strip().lower()[:1]
        intent = KEY_INTENTS.get(key)
        if intent is None:
            status = f"Unknown command {command.strip()!r}. {HELP_LINE}"
            continue
        status = _describe(session.dispatch(intent))
    return 0


def main(argv: list[str] | None = None) -> int:
    if argv is None:
        argv = sys.argv[1:]
    args = build_parser().parse_args(argv)

    console = Console()
    err_console = Console(stderr=True)
    configure_logging(bool(args.debug), err_console)
    config = load_config(progress_file=args.progress_file, wpm=args.wpm)

    try:
        book, warnings = load_book(args.path, max_workers=config.workers)
    except (ArchiveError, PackageError) as exc:
        err_console.print(f"[bold red]error:[/] {escape(str(exc))}")
        return 1

    loaded = load_progress(config.progress_path)
    notices = list(warnings)
    if loaded.warning:
        notices.append(loaded.warning)
    session = ReadingSession(
        book,
        viewport_for(console),
        progress=loaded.progress,
        progress_path=config.progress_path,
        wpm=config.wpm,
    )
    return run_session(session, console, notices=notices)
