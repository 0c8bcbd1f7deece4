"""Logging setup for ``hybrid_categorizer``.

Entrypoints (the typer CLI, schedulers calling :mod:`hybrid_categorizer.api`)
call :func:`configure_logging` once. Library modules only call
:func:`get_logger` and emit ``module:event key=value`` lines; they never
attach handlers of their own.

The level comes from the ``level`` argument, then ``CATEGORIZER_LOG_LEVEL``,
then ``INFO``.
"""

from __future__ import annotations

import logging
import os
import sys
from typing import IO

ROOT_LOGGER_NAME = "hybrid_categorizer"
LEVEL_ENV_VAR = "CATEGORIZER_LOG_LEVEL"
DEFAULT_FORMAT = "%(asctime)s %(name)s %(levelname)s %(message)s"

# Name of the handler installed by configure_logging; repeat calls are no-ops.
_HANDLER_NAME = "hybrid_categorizer.stream"


def resolve_level(level: int | str | None = None) -> int:
    """Map ``level`` (or ``$CATEGORIZER_LOG_LEVEL``) to a numeric logging level.

    Accepts ints, numeric strings and level names in any case. Unknown names
    resolve to ``INFO``.
    """

    if level is None:
        level = os.getenv(LEVEL_ENV_VAR) or logging.INFO
    if isinstance(level, int):
        return level
    text = level.strip().upper()
    if text.isdigit():
        return int(text)
    return logging.getLevelNamesMapping().get(text, logging.INFO)


def _package_logger() -> logging.Logger:
    return logging.getLogger(ROOT_LOGGER_NAME)


def is_configured() -> bool:
    return any(h.get_name() == _HANDLER_NAME for h in _package_logger().handlers)


def configure_logging(
    level: int | str | None = None,
    *,
    fmt: str | None = None,
    stream: IO[str] = sys.stderr,
) -> None:
    """Attach one ``StreamHandler`` to the package logger.

    Parameters
    ----------
    level:
        Level as ``int`` or name; see :func:`resolve_level`.
    fmt:
        Format string, default :data:`DEFAULT_FORMAT`.
    stream:
        Destination stream (``stderr`` unless given).
    """

    pkg = _package_logger()
    if is_configured():
        return

    for h in [h for h in pkg.handlers if isinstance(h, logging.NullHandler)]:
        pkg.removeHandler(h)

    resolved = resolve_level(level)
    handler = logging.StreamHandler(stream)
    handler.set_name(_HANDLER_NAME)
    handler.setLevel(resolved)
    handler.setFormatter(logging.Formatter(fmt or DEFAULT_FORMAT))
    pkg.addHandler(handler)
    pkg.setLevel(resolved)
    # Output belongs to the entrypoint; keep records off the root logger.
    pkg.propagate = False


def get_logger(name: str) -> logging.Logger:
    """Return ``logging.getLogger(name)``, silencing the package until configured."""

    pkg = _package_logger()
    if not pkg.handlers:
        pkg.addHandler(logging.NullHandler())
    return logging.getLogger(name)


__all__ = [
    "DEFAULT_FORMAT",
    "LEVEL_ENV_VAR",
    "configure_logging",
    "get_logger",
    "is_configured",
    "resolve_level",
]
