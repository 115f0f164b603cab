"""Logging helpers shared across components."""
from __future__ import annotations

import logging
import os
from typing import Optional


_LOGGER_CACHE: dict[str, logging.Logger] = {}
_NOISY_LOGGERS = ("urllib3", "neo4j")
DEFAULT_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def configure_root_logger(level: Optional[int | str] = None) -> None:
    """Install a single stream handler on the root logger.

    ``level`` falls back to ``KGRAPH_LOG_LEVEL`` (default INFO) and the format to
    ``KGRAPH_LOG_FORMAT``. HTTP and database driver loggers are held at WARNING
    unless the root level is DEBUG. A second call only adjusts the level.
    """
    if level is None:
        level = os.getenv("KGRAPH_LOG_LEVEL", "INFO").upper()
    root = logging.getLogger()
    if root.handlers:
        root.setLevel(level)
        return
    handler = logging.StreamHandler()
    handler.setFormatter(
        logging.Formatter(os.getenv("KGRAPH_LOG_FORMAT", DEFAULT_FORMAT), datefmt="%Y-%m-%d %H:%M:%S")
    )
    logging.basicConfig(level=level, handlers=[handler])
    if root.getEffectiveLevel() > logging.DEBUG:
        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Retrieve a logger, configuring the root logger on first use."""
    if name is None:
        name = os.getenv("KGRAPH_LOGGER_NAME", "kgraph")
    if name not in _LOGGER_CACHE:
        if not logging.getLogger().handlers:
            configure_root_logger()
        _LOGGER_CACHE[name] = logging.getLogger(name)
    return _LOGGER_CACHE[name]
