from __future__ import annotations

import logging
import threading
import zipfile
import zlib
from pathlib import Path, PurePosixPath
from urllib.parse import unquote

logger = logging.getLogger(__name__)

TEXT_ENCODINGS = ("utf-8", "cp1252", "latin-1")


class ArchiveError(RuntimeError):
    """Base class for failures while opening or reading an EPUB container."""


class ArchiveNotFoundError(ArchiveError):
    """Raised when the EPUB path does not exist or is not a regular file."""


class NotAnArchiveError(ArchiveError):
    """Raised when the file is not a zip container."""


class CorruptArchiveError(ArchiveError):
    """Raised when the zip structure or an entry's data cannot be read."""


class EntryMissingError(ArchiveError):
    """Raised when a named entry is not present in the container."""


def decode_bytes(raw: bytes) -> str:
    if raw.startswith(b"\xef\xbb\xbf"):
        return raw[3:].decode("utf-8", errors="replace")
    if raw.startswith((b"\xff\xfe", b"\xfe\xff")):
        return raw.decode("utf-16", errors="replace")
    for enc in TEXT_ENCODINGS:
        try:
            return raw.decode(enc)
        except UnicodeDecodeError:
            continue
    return raw.decode("utf-8", errors="ignore")  # pragma: no cover - latin-1 never fails


def normalize_entry_name(name: str) -> str:
    """Collapse ``./`` and ``..`` segments and decode percent escapes."""
    decoded = unquote(name).replace("\\", "/")
    parts: list[str] = []
    for part in PurePosixPath(decoded).parts:
        if part in ("", ".", "/"):
            continue
        if part == "..":
            if parts:
                parts.pop()
            continue
        parts.append(part)
    return "/".join(parts)


class ArchiveHandle:
    """Read-only view over an opened EPUB container.

    Entry reads are serialized, so parse workers running in parallel each get
    their own complete byte buffer without sharing the underlying file cursor.
    """

    def __init__(self, path: Path, zf: zipfile.ZipFile) -> None:
        self.path = path
        self._zf = zf
        self._lock = threading.Lock()
        self._names = tuple(info.filename for info in zf.infolist() if not info.is_dir())
        self._name_set = frozenset(self._names)
        self._by_normalized: dict[str, str] = {}
        self._by_folded: dict[str, str] = {}
        for name in self._names:
            normalized = normalize_entry_name(name)
            self._by_normalized.setdefault(normalized, name)
            self._by_folded.setdefault(normalized.casefold(), name)

    def __enter__(self) -> "ArchiveHandle":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        with self._lock:
            self._zf.close()

    def list_entries(self) -> tuple[str, ...]:
        return self._names

    def resolve_name(self, name: str) -> str | None:
        if name in self._name_set:
            return name
        normalized = normalize_entry_name(name)
        found = self._by_normalized.get(normalized)
        if found is None:
            found = self._by_folded.get(normalized.casefold())
        return found

    def has_entry(self, name: str) -> bool:
        return self.resolve_name(name) is not None

    def read_entry(self, name: str) -> bytes:
        actual = self.resolve_name(name)
        if actual is None:
            raise EntryMissingError(f"Entry not found in {self.path.name}: {name}")
        with self._lock:
            try:
                return self._zf.read(actual)
            except (zipfile.BadZipFile, zlib.error, EOFError) as exc:
                raise CorruptArchiveError(f"Cannot read entry {actual}: {exc}") from exc

    def read_text(self, name: str) -> str:
        return decode_bytes(self.read_entry(name))


def open_archive(path: str | Path) -> ArchiveHandle:
    epub_path = Path(path).expanduser()
    if not epub_path.is_file():
        raise ArchiveNotFoundError(f"EPUB not found: {epub_path}")
    if not zipfile.is_zipfile(epub_path):
        raise NotAnArchiveError(f"Not a zip container: {epub_path}")
    try:
        zf = zipfile.ZipFile(epub_path, "r")
    except (zipfile.BadZipFile, OSError) as exc:
        raise CorruptArchiveError(f"Cannot open {epub_path}: {exc}") from exc
    handle = ArchiveHandle(epub_path.resolve(), zf)
    logger.debug("Opened %s with %d entries", epub_path, len(handle.list_entries()))
    return handle
