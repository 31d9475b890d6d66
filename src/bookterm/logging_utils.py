from __future__ import annotations

import logging

from rich.console import Console
from rich.logging import RichHandler

LOGGER_NAME = "bookterm"


def configure_logging(debug: bool = False, console: Console | None = None) -> logging.Logger:
    """Route ``bookterm.*`` loggers to a stderr RichHandler (WARNING, or DEBUG)."""
    logger = logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        if getattr(handler, "_bookterm_handler", False):
            logger.removeHandler(handler)
    handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=debug,
        show_time=debug,
        markup=False,
        rich_tracebacks=debug,
    )
    handler._bookterm_handler = True  # type: ignore[attr-defined]
    handler.setFormatter(logging.Formatter("%(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG if debug else logging.WARNING)
    logger.propagate = False
    return logger
