"""
Logging configuration.

Log records go to stderr because stdout carries the MCP stdio transport.
"""

import json
import logging
from pathlib import Path
from typing import Optional, Union

from rich.console import Console
from rich.logging import RichHandler

LOGGER_NAME = "perplexity_mcp"
FILE_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s %(context_json)s"


class ContextFilter(logging.Filter):
    """Renders the `context` extra as JSON so formatters can reference it.

    Callers are expected to pass context that already went through
    Sanitizer.sanitize_for_logging.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        context = getattr(record, "context", None)
        if context is None:
            record.context_json = ""
        else:
            record.context_json = json.dumps(context, default=str, sort_keys=True)
        return True


def configure_logging(
    level: Union[int, str] = logging.INFO,
    log_file: Optional[str] = None,
) -> logging.Logger:
    """Configure the package logger.

    Safe to call more than once; previously installed handlers are replaced.

    Args:
        level: Logging level name or number
        log_file: Optional path of a plain-text log file (no rotation)

    Returns:
        The configured package logger
    """
    if isinstance(level, str):
        name = level.upper()
        level = logging.getLevelName(name)
        if not isinstance(level, int):
            raise ValueError(f"Unknown log level: {name}")

    logger = logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    console_handler = RichHandler(
        console=Console(stderr=True),
        show_path=False,
        rich_tracebacks=False,
    )
    console_handler.addFilter(ContextFilter())
    console_handler.setFormatter(logging.Formatter("%(message)s %(context_json)s"))
    logger.addHandler(console_handler)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.addFilter(ContextFilter())
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT))
        logger.addHandler(file_handler)

    logger.setLevel(level)
    logger.propagate = False
    return logger
