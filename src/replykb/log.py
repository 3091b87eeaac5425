"""Logging setup for the replykb CLI.

Library modules only call ``logging.getLogger(__name__)``; handlers are
installed here, once, by the entry point.
"""

from __future__ import annotations

import logging

from rich.console import Console
from rich.logging import RichHandler

_ROOT_LOGGER = "replykb"


def configure_logging(level: str | int = "INFO", console: Console | None = None) -> logging.Logger:
    """Attach a RichHandler to the ``replykb`` logger and set its level.

    Safe to call more than once: previously installed handlers are replaced.

    Args:
        level: Level name or number (e.g. "DEBUG", logging.INFO).
        console: Rich console to render to (defaults to stderr).

    Returns:
        The configured package logger.
    """
    logger = logging.getLogger(_ROOT_LOGGER)
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=False,
        rich_tracebacks=False,
        markup=False,
    )
    handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(level.upper() if isinstance(level, str) else level)
    logger.propagate = False

    # litellm and urllib3 are chatty at INFO
    logging.getLogger("LiteLLM").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    return logger
