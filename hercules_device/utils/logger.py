import logging
import os
from typing import Optional

LOG_FORMAT = "[%(asctime)s] %(levelname)s {%(filename)s:%(lineno)d} - %(message)s"


def _build_logger(name: str = "hercules_device") -> logging.Logger:
    _logger = logging.getLogger(name)
    if not _logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        _logger.addHandler(handler)
    _logger.setLevel(os.environ.get("LOG_LEVEL", "INFO").upper())
    _logger.propagate = False
    return _logger


logger = _build_logger()


def set_log_level(level: str) -> None:
    logger.setLevel(level.upper())


def add_file_handler(path: str, level: Optional[str] = None) -> logging.FileHandler:
    """Mirror log records into `path` (the daemon log next to the info record)."""
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    if level:
        handler.setLevel(level.upper())
    logger.addHandler(handler)
    return handler


def remove_handler(handler: logging.Handler) -> None:
    logger.removeHandler(handler)
    handler.close()
