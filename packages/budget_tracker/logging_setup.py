"""Logging configuration for the ``budget_tracker`` package.

Entry points (the CLI, or a host application embedding the library) call
:func:`configure_logging` once at startup. Library modules only ever call
:func:`get_logger` with a ``"budget_tracker.<module>"`` name and never attach
handlers themselves.

Environment
-----------
``BUDGET_TRACKER_LOG_LEVEL``
    Level used when ``configure_logging`` is called without one.
``BUDGET_TRACKER_SQL_LOG``
    When truthy, SQL statements from ``sqlalchemy.engine`` are emitted at
    INFO through the same handler.
"""

from __future__ import annotations

import logging
import os
import sys
from typing import IO

_PKG_LOGGER_NAME = "budget_tracker"
_DEFAULT_FORMAT = "%(asctime)s %(name)s %(levelname)s %(message)s"
# Chatty HTTP client loggers used under the OpenAI SDK.
_QUIET_LOGGERS: tuple[str, ...] = ("httpx", "httpcore", "openai")

_handler: logging.Handler | None = None


def _parse_level(level: int | str | None) -> int:
    if level is None:
        level = os.getenv("BUDGET_TRACKER_LOG_LEVEL") or logging.INFO
    if isinstance(level, int):
        return level
    text = level.strip().upper()
    if text.isdigit():
        return int(text)
    numeric = logging.getLevelNamesMapping().get(text)
    if numeric is None:
        raise ValueError(f"unknown log level: {level!r}")
    return numeric


def _truthy(value: str | None) -> bool:
    return (value or "").strip().lower() in {"1", "true", "yes", "on"}


def configure_logging(
    level: int | str | None = None,
    *,
    fmt: str | None = None,
    stream: IO[str] = sys.stderr,
) -> None:
    """Attach a single ``StreamHandler`` to the package root logger.

    Calling this more than once is harmless: later calls only adjust the
    level of the existing handler.

    Parameters
    ----------
    level:
        ``int`` or level name. ``None`` falls back to
        ``BUDGET_TRACKER_LOG_LEVEL`` and then ``INFO``.
    fmt:
        Format string for the handler.
    stream:
        Destination stream, ``sys.stderr`` by default.
    """

    global _handler
    resolved = _parse_level(level)
    logger = logging.getLogger(_PKG_LOGGER_NAME)

    if _handler is not None:
        _handler.setLevel(resolved)
        logger.setLevel(resolved)
        return

    for h in list(logger.handlers):
        if isinstance(h, logging.NullHandler):
            logger.removeHandler(h)

    handler = logging.StreamHandler(stream)
    handler.setFormatter(logging.Formatter(fmt or _DEFAULT_FORMAT))
    handler.setLevel(resolved)
    logger.addHandler(handler)
    logger.setLevel(resolved)
    logger.propagate = False

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(resolved, logging.WARNING))

    if _truthy(os.getenv("BUDGET_TRACKER_SQL_LOG")):
        sql_logger = logging.getLogger("sqlalchemy.engine")
        sql_logger.setLevel(logging.INFO)
        sql_logger.addHandler(handler)

    _handler = handler


def get_logger(name: str) -> logging.Logger:
    """Return a logger, keeping the package silent until configured."""

    pkg_logger = logging.getLogger(_PKG_LOGGER_NAME)
    if _handler is None and not pkg_logger.handlers:
        pkg_logger.addHandler(logging.NullHandler())
    return logging.getLogger(name)


__all__ = ["configure_logging", "get_logger"]
