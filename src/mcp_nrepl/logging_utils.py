"""Logging helpers for the bridge.

stdout carries the JSON-RPC stream, so log records only ever go to stderr
or to a file.
"""

from __future__ import annotations

import logging
import os
import sys
from pathlib import Path

DEFAULT_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
LOG_LEVEL_ENV = "MCP_NREPL_LOG_LEVEL"
PACKAGE_LOGGER = "mcp_nrepl"


def resolve_level(log_level: str | None = None) -> int | None:
    """Return the numeric level from the argument or the environment.

    Returns None when neither names a level. Raises ValueError for names
    the logging module does not know.
    """
    level_name = (log_level or os.getenv(LOG_LEVEL_ENV) or "").strip().upper()
    if not level_name:
        return None
    level = logging.getLevelName(level_name)
    if isinstance(level, str):
        raise ValueError(f"Invalid log level: {level_name}")
    return level


def _handler(log_file: str | None) -> logging.Handler:
    if log_file:
        path = Path(log_file).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        handler: logging.Handler = logging.FileHandler(path, encoding="utf-8")
    else:
        handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(DEFAULT_LOG_FORMAT))
    return handler


def configure_logging(log_level: str | None = None, log_file: str | None = None) -> None:
    """Configure stdlib logging for the `mcp_nrepl` package.

    Does nothing unless a level (argument or MCP_NREPL_LOG_LEVEL) or a log
    file is given; a log file alone logs at WARNING.
    """
    level = resolve_level(log_level)
    if level is None and not log_file:
        return

    logging.getLogger().setLevel(logging.WARNING)

    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.setLevel(level if level is not None else logging.WARNING)
    logger.propagate = False
    logger.handlers = [_handler(log_file)]


def abbreviate(text: str | None, limit: int = 200) -> str:
    """Return a single-line, truncated preview string."""
    if text is None:
        return ""
    flattened = text.replace("\r", "\\r").replace("\n", "\\n")
    if len(flattened) <= limit:
        return flattened
    return f"{flattened[:limit]}... ({len(flattened)} chars)"
