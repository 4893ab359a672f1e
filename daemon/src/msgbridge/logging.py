"""Logging for the msgbridge daemon and the aiohttp server it runs.

The ``msgbridge`` logger and aiohttp's loggers share one set of handlers,
so request errors from the HTTP/WebSocket surface land in the daemon's log
next to session events. Access lines are only kept at DEBUG, since viewers
poll ``/status`` and ``/qr``.
"""

import logging
from pathlib import Path

from msgbridge.config import Config

PACKAGE_LOGGER = "msgbridge"

# 2025-01-27 10:30:45 [INFO] message
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# aiohttp loggers routed through our handlers
AIOHTTP_LOGGERS = ("aiohttp.server", "aiohttp.web", "aiohttp.access")

_configured: list[logging.Logger] = []


def _parse_level(name: str) -> tuple[int, bool]:
    """Map a level name to its value; unknown names fall back to INFO."""
    level = logging.getLevelName(name.upper())
    if isinstance(level, int):
        return level, True
    return logging.INFO, False


def _build_handlers(config: Config) -> list[logging.Handler]:
    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)
    handlers: list[logging.Handler] = []

    if config.log_file:
        log_path = Path(config.log_file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path))

    handlers.append(logging.StreamHandler())

    for handler in handlers:
        handler.setFormatter(formatter)
    return handlers


def _attach(name: str, level: int, handlers: list[logging.Handler]) -> logging.Logger:
    logger = logging.getLogger(name)
    logger.setLevel(level)
    logger.handlers[:] = handlers
    logger.propagate = False
    _configured.append(logger)
    return logger


def setup_logging(config: Config) -> logging.Logger:
    """Configure daemon logging once per process.

    Args:
        config: Configuration with ``log_level`` and optional ``log_file``.

    Returns:
        The ``msgbridge`` package logger.
    """
    if _configured:
        return _configured[0]

    level, known = _parse_level(config.log_level)
    handlers = _build_handlers(config)

    logger = _attach(PACKAGE_LOGGER, level, handlers)

    # aiohttp only reports problems unless the daemon runs at DEBUG
    aiohttp_level = level if level <= logging.DEBUG else max(level, logging.WARNING)
    for name in AIOHTTP_LOGGERS:
        _attach(name, aiohttp_level, handlers)

    if not known:
        logger.warning(f"Unknown log level {config.log_level!r}, using INFO")

    return logger


def reset_logging() -> None:
    """Detach every handler installed by setup_logging. Used by tests."""
    while _configured:
        logger = _configured.pop()
        for handler in logger.handlers:
            handler.close()
        logger.handlers.clear()
        logger.setLevel(logging.NOTSET)
        logger.propagate = True
