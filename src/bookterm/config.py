from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from .core import WORKERS_ENV
from .pagination import DEFAULT_WPM

logger = logging.getLogger(__name__)

PROGRESS_FILE_ENV = "BOOKTERM_PROGRESS_FILE"
WPM_ENV = "BOOKTERM_WPM"
PROGRESS_FILENAME = "progress.json"


@dataclass(slots=True)
class ReaderConfig:
    progress_path: Path
    wpm: int = DEFAULT_WPM
    workers: int | None = None


def default_progress_path(env: Mapping[str, str] | None = None) -> Path:
    env = os.environ if env is None else env
    state_home = env.get("XDG_STATE_HOME")
    root = Path(state_home) if state_home else Path.home() / ".local" / "state"
    return root / "bookterm" / PROGRESS_FILENAME


def _positive_int(env: Mapping[str, str], name: str) -> int | None:
    raw = env.get(name)
    if not raw:
        return None
    try:
        value = int(raw)
    except ValueError:
        logger.debug("Ignoring invalid %s=%r", name, raw)
        return None
    if value <= 0:
        logger.debug("Ignoring non-positive %s=%r", name, raw)
        return None
    return value


def load_config(
    *,
    progress_file: str | Path | None = None,
    wpm: int | None = None,
    workers: int | None = None,
    env: Mapping[str, str] | None = None,
) -> ReaderConfig:
    """Resolve settings: explicit argument, then environment, then default."""
    env = os.environ if env is None else env
    if progress_file is not None:
        progress_path = Path(progress_file).expanduser()
    elif env.get(PROGRESS_FILE_ENV):
        progress_path = Path(env[PROGRESS_FILE_ENV]).expanduser()
    else:
        progress_path = default_progress_path(env)
    if wpm is not None and wpm <= 0:
        raise ValueError(f"words per minute must be positive, got {wpm}")
    resolved_wpm = wpm or _positive_int(env, WPM_ENV) or DEFAULT_WPM
    resolved_workers = workers or _positive_int(env, WORKERS_ENV)
    return ReaderConfig(progress_path=progress_path, wpm=resolved_wpm, workers=resolved_workers)
