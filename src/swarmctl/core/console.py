"""Console output and logging configuration.

Reports and tables go to ``console`` (stdout); log records go to
``stderr_console`` through a Rich handler, so piping a report never mixes
in progress lines. Records are prefixed with the emitting component
(``scheduler``, ``sequencer``, ...) because many tasks log concurrently.
"""

from __future__ import annotations

import logging

from rich.console import Console
from rich.logging import RichHandler

console = Console()
stderr_console = Console(stderr=True)

APP_LOGGER = "swarmctl"


class _ComponentFilter(logging.Filter):
    """Adds ``component``: the last part of the logger name."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.component = record.name.rsplit(".", 1)[-1]
        return True


def _normalize_level(level: str | int) -> int:
    if isinstance(level, str):
        return getattr(logging, level.upper(), logging.INFO)
    return int(level)


def setup_logging(level: str | int = logging.INFO, verbose: bool = False) -> logging.Logger:
    """Install the Rich handler on the root logger and return the app logger."""
    numeric_level = logging.DEBUG if verbose else _normalize_level(level)

    handler = RichHandler(
        console=stderr_console,
        markup=False,
        rich_tracebacks=True,
        show_path=False,
    )
    handler.addFilter(_ComponentFilter())
    handler.setFormatter(logging.Formatter("[%(component)s] %(message)s"))
    handler.setLevel(numeric_level)

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(numeric_level)
    root.addHandler(handler)

    # asyncio debug chatter drowns out task progress.
    logging.getLogger("asyncio").setLevel(logging.DEBUG if verbose else logging.WARNING)

    logger = logging.getLogger(APP_LOGGER)
    logger.setLevel(numeric_level)
    return logger


__all__ = ["APP_LOGGER", "console", "setup_logging", "stderr_console"]
