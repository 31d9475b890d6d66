from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator, Mapping

logger = logging.getLogger(__name__)


class ProgressSaveError(OSError):
    """Raised when the progress file cannot be written."""


@dataclass(frozen=True)
class ProgressRecord:
    last_page: int
    wpm: int

    def as_payload(self) -> dict[str, int]:
        return {"lastPage": self.last_page, "wpm": self.wpm}

    @classmethod
    def from_payload(cls, payload: object) -> "ProgressRecord | None":
        if not isinstance(payload, Mapping):
            return None
        last_page = payload.get("lastPage")
        wpm = payload.get("wpm")
        # bool is an int subclass; reject it explicitly.
        if not isinstance(last_page, int) or isinstance(last_page, bool) or last_page < 0:
            return None
        if not isinstance(wpm, int) or isinstance(wpm, bool) or wpm <= 0:
            return None
        return cls(last_page=last_page, wpm=wpm)


@dataclass(frozen=True)
class ReadingProgress:
    """Book path -> last page record. ``set`` returns an updated copy."""

    _records: Mapping[str, ProgressRecord] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[tuple[str, ProgressRecord]]:
        return iter(sorted(self._records.items()))

    def __contains__(self, book_id: object) -> bool:
        return book_id in self._records

    def record(self, book_id: str) -> ProgressRecord | None:
        return self._records.get(book_id)

    def get(self, book_id: str) -> int | None:
        record = self._records.get(book_id)
        return record.last_page if record else None

    def set(self, book_id: str, page_index: int, wpm: int) -> "ReadingProgress":
        if page_index < 0:
            raise ValueError(f"page index must be non-negative, got {page_index}")
        if wpm <= 0:
            raise ValueError(f"words per minute must be positive, got {wpm}")
        records = dict(self._records)
        records[book_id] = ProgressRecord(last_page=page_index, wpm=wpm)
        return ReadingProgress(records)

    def to_payload(self) -> dict[str, dict[str, int]]:
        return {book_id: record.as_payload() for book_id, record in self}


@dataclass(frozen=True)
class ProgressLoad:
    progress: ReadingProgress
    warning: str | None = None


def _reset(path: Path, reason: str) -> ProgressLoad:
    message = f"Ignoring unreadable progress file {path}: {reason}"
    logger.warning(message)
    return ProgressLoad(ReadingProgress(), message)


def load_progress(path: Path) -> ProgressLoad:
    """
    Load the progress file.

    A missing file yields empty progress. An unreadable or malformed file also
    yields empty progress, with a warning message for the caller to surface.
    """
    path = Path(path)
    try:
        raw_text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return ProgressLoad(ReadingProgress())
    except (OSError, UnicodeDecodeError) as exc:
        return _reset(path, str(exc))
    try:
        raw = json.loads(raw_text)
    except json.JSONDecodeError as exc:
        return _reset(path, f"invalid JSON ({exc})")
    if not isinstance(raw, dict):
        return _reset(path, "unexpected structure")

    records: dict[str, ProgressRecord] = {}
    skipped = 0
    for book_id, payload in raw.items():
        record = ProgressRecord.from_payload(payload)
        if not isinstance(book_id, str) or not book_id or record is None:
            skipped += 1
            continue
        records[book_id] = record
    warning = None
    if skipped:
        warning = f"Skipped {skipped} invalid record(s) in {path}"
        logger.warning(warning)
    logger.debug("Loaded %d progress records from %s", len(records), path)
    return ProgressLoad(ReadingProgress(records), warning)


def save_progress(progress: ReadingProgress, path: Path) -> None:
    """Overwrite the progress file atomically (temp file + fsync + rename)."""
    path = Path(path)
    payload = json.dumps(progress.to_payload(), ensure_ascii=False, indent=2)
    tmp_name: str | None = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(
            "w",
            encoding="utf-8",
            dir=path.parent,
            prefix=f".{path.name}.",
            suffix=".tmp",
            delete=False,
        ) as handle:
            tmp_name = handle.name
            handle.write(payload)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
        tmp_name = None
    except OSError as exc:
        raise ProgressSaveError(f"Cannot write progress file {path}: {exc}") from exc
    finally:
        if tmp_name is not None:
            Path(tmp_name).unlink(missing_ok=True)
    logger.debug("Saved %d progress records to %s", len(progress), path)
