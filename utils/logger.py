import logging
import threading
from typing import Optional, Union

from utils.loguru_config import setup_loguru


_LOGGER_INITIALIZED = False
_SETUP_LOCK = threading.Lock()


def setup_logger(name: str = "BookDownloader", log_file: Optional[str] = "book_downloader.log",
                 level: Union[str, int] = logging.INFO, force: bool = False):
    """Set up application logging through Loguru (idempotent unless ``force``)."""
    global _LOGGER_INITIALIZED

    with _SETUP_LOCK:
        if _LOGGER_INITIALIZED and not force:
            return logging.getLogger(name)

        if isinstance(level, int):
            level = logging.getLevelName(level)
        setup_loguru(log_level=level, log_file=log_file, logger_name=name)
        _LOGGER_INITIALIZED = True

    parent_logger = logging.getLogger(name)
    parent_logger.debug(f"Logging initialized (level={level}, file={log_file})")
    return parent_logger


def get_module_logger(module_name: str) -> logging.Logger:
    """Get a logger for a specific module.

    Module loggers propagate to the root logger, where ``setup_logger`` installs
    the Loguru intercept handler.
    """
    module_logger = logging.getLogger(module_name)
    module_logger.propagate = True
    return module_logger


def get_logger(name: str = "BookDownloader") -> logging.Logger:
    """Get an existing logger instance."""
    return logging.getLogger(name)
