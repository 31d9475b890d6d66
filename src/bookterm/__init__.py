from .archive import (
    ArchiveError,
    ArchiveHandle,
    ArchiveNotFoundError,
    CorruptArchiveError,
    EntryMissingError,
    NotAnArchiveError,
    open_archive,
)
from .content import Paragraph, UnparsableDocumentError, parse_document
from .core import Book, Chapter, assemble_chapters, load_book
from .manifest import (
    BookMetadata,
    MalformedPackageError,
    Manifest,
    MissingRootError,
    PackageError,
    resolve_manifest,
)
from .pagination import (
    DEFAULT_WPM,
    Page,
    Viewport,
    estimated_reading_time,
    page_for_offset,
    paginate,
)
from .progress import ProgressSaveError, ReadingProgress, load_progress, save_progress
from .session import Intent, ReadingSession

__all__ = [
    "ArchiveError",
    "ArchiveHandle",
    "ArchiveNotFoundError",
    "CorruptArchiveError",
    "EntryMissingError",
    "NotAnArchiveError",
    "open_archive",
    "Paragraph",
    "UnparsableDocumentError",
    "parse_document",
    "Book",
    "Chapter",
    "assemble_chapters",
    "load_book",
    "BookMetadata",
    "MalformedPackageError",
    "Manifest",
    "MissingRootError",
    "PackageError",
    "resolve_manifest",
    "DEFAULT_WPM",
    "Page",
    "Viewport",
    "estimated_reading_time",
    "page_for_offset",
    "paginate",
    "ProgressSaveError",
    "ReadingProgress",
    "load_progress",
    "save_progress",
    "Intent",
    "ReadingSession",
]
