"""Opt-in logging for xlabridge.

Every module logs under the ``xlabridge`` namespace. Importing the package
installs only a NullHandler, so nothing is printed until the application
calls `setup_logging` or sets ``XLABRIDGE_LOG_LEVEL`` and calls
`configure_from_env`.

    >>> import xlabridge
    >>> xlabridge.setup_logging("DEBUG")
    >>> xlabridge.setup_logging("INFO", filename="xlabridge.log", stream=False)
"""

from __future__ import annotations

import logging
import sys
from typing import IO, Literal

XLABRIDGE_LOGGER_NAME = "xlabridge"

DEFAULT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DEFAULT_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

LevelName = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]

# Set on handlers this module creates; anything else attached to the
# logger is left alone.
_OWNED = "_xlabridge_owned"


def _logger() -> logging.Logger:
    return logging.getLogger(XLABRIDGE_LOGGER_NAME)


def _drop_owned(logger: logging.Logger) -> None:
    for handler in list(logger.handlers):
        if getattr(handler, _OWNED, False) or isinstance(handler, logging.NullHandler):
            logger.removeHandler(handler)
            handler.close()


def _own(handler: logging.Handler, level: int, formatter: logging.Formatter) -> logging.Handler:
    setattr(handler, _OWNED, True)
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def setup_logging(
    level: LevelName = "INFO",
    *,
    stream: IO[str] | bool | None = None,
    filename: str | None = None,
    format: str | None = None,
    date_format: str | None = None,
    propagate: bool = False,
) -> None:
    """Send xlabridge records somewhere visible.

    Calling it again replaces the handlers an earlier call installed, so the
    most recent call wins. With ``propagate=True`` and no destination the
    records go only to the application's own handlers. ``stream=False``
    skips the stderr handler when only a file is wanted.
    """
    logger = _logger()
    log_level = logging.getLevelName(level.upper())
    if not isinstance(log_level, int):
        raise ValueError(f"unknown log level {level!r}")

    _drop_owned(logger)
    logger.setLevel(log_level)
    logger.propagate = propagate

    formatter = logging.Formatter(format or DEFAULT_FORMAT, datefmt=date_format or DEFAULT_DATE_FORMAT)
    want_stream = stream is not False and not (propagate and stream is None)
    if want_stream:
        target = sys.stderr if stream is None or stream is True else stream
        logger.addHandler(_own(logging.StreamHandler(target), log_level, formatter))
    if filename:
        logger.addHandler(_own(logging.FileHandler(filename), log_level, formatter))
    if not logger.handlers and not propagate:
        logger.addHandler(logging.NullHandler())


def disable_logging() -> None:
    """Go back to the silent default of a freshly imported package."""
    logger = _logger()
    _drop_owned(logger)
    logger.addHandler(logging.NullHandler())
    logger.setLevel(logging.NOTSET)
    logger.propagate = False


def configure_from_env() -> None:
    """Apply ``XLABRIDGE_LOG_LEVEL`` if it is set; otherwise do nothing."""
    from .config import log_level_from_env

    level = log_level_from_env()
    if level is not None:
        setup_logging(level)  # type: ignore[arg-type]


if not any(isinstance(h, logging.NullHandler) for h in _logger().handlers):
    _logger().addHandler(logging.NullHandler())
    _logger().propagate = False
