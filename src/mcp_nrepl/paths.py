"""Locating the nREPL port file."""

from __future__ import annotations

import logging
from pathlib import Path

logger = logging.getLogger(__name__)

PORT_FILE_NAME = ".nrepl-port"


def port_file_default() -> Path:
    return Path.cwd() / PORT_FILE_NAME


def read_port_file(path: Path | None = None) -> int | None:
    """Return the port recorded in `.nrepl-port`, or None if unavailable."""
    path = path or port_file_default()
    try:
        text = path.read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        return None
    except OSError as exc:
        logger.warning("cannot read port file path=%s error=%s", path, exc)
        return None
    try:
        port = int(text)
    except ValueError:
        logger.warning("invalid port file path=%s content=%r", path, text[:40])
        return None
    if not 0 < port < 65536:
        logger.warning("port out of range path=%s port=%s", path, port)
        return None
    return port
