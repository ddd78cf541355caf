"""Logging setup for the package logger."""

import logging
from typing import Optional, Union

PACKAGE_LOGGER = "llm_runtime_lite"
DEFAULT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(
    level: Union[int, str] = logging.INFO, fmt: Optional[str] = None
) -> logging.Logger:
    """Attach a stream handler to the ``llm_runtime_lite`` logger.

    Only the package logger is touched; the root logger and any handlers the
    host application installed stay as they are. Calling this twice replaces
    the handler installed by the first call instead of stacking a second one.

    Args:
        level: Level number or name (e.g. ``"DEBUG"``).
        fmt: Log record format. Defaults to ``DEFAULT_FORMAT``.

    Returns:
        The configured package logger.
    """
    logger = logging.getLogger(PACKAGE_LOGGER)
    if isinstance(level, str):
        level = level.upper()
    logger.setLevel(level)

    for handler in list(logger.handlers):
        if getattr(handler, "_llm_runtime_handler", False):
            logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(fmt or DEFAULT_FORMAT))
    handler._llm_runtime_handler = True  # type: ignore[attr-defined]
    logger.addHandler(handler)
    return logger
