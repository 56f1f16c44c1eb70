"""Logging setup for the visitor agent process."""

from __future__ import annotations

import logging
from pathlib import Path

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def resolve_level(level: int | str | None, default: int = logging.INFO) -> int:
    """Accept a numeric level or a name such as ``"debug"``; unknown names fall back."""
    if isinstance(level, int):
        return level
    token = str(level or "").strip().upper()
    if not token:
        return default
    value = logging.getLevelName(token)
    return value if isinstance(value, int) else default


def configure_logging(level: int | str | None = logging.INFO, log_path: str | Path | None = None) -> int:
    """Configure root logging once per process and return the effective level.

    When handlers already exist (embedding process, test runner) only the
    ``frequent_visitor`` logger level is adjusted.
    """
    resolved = resolve_level(level)
    logging.getLogger("frequent_visitor").setLevel(resolved)
    root = logging.getLogger()
    if root.handlers:
        return resolved
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_path:
        path = Path(log_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(path, encoding="utf-8"))
    logging.basicConfig(level=resolved, format=LOG_FORMAT, datefmt=LOG_DATE_FORMAT, handlers=handlers)
    return resolved
