"""Logging setup shared by the API process and the CLI entry point.

- console: ``LOG_LEVEL`` (default INFO)
- file: optional ``LOG_FILE``, rotated at midnight, 7 days kept

Handlers are attached to the ``finance_ledger`` logger only, so uvicorn and
test runners keep control of the root logger.
"""

import logging
import sys
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
LOG_FILE_BACKUP_COUNT = 7
PACKAGE_LOGGER = "finance_ledger"

NOISY_LOGGERS = [
    "sqlalchemy.engine",
    "httpx",
    "httpcore",
    "multipart",
]


def setup_logging(level: str = "INFO", log_file: str | None = None) -> logging.Logger:
    """Configure the package logger. Calling it again replaces the previous handlers."""
    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    for handler in list(logger.handlers):
        if getattr(handler, "_finance_ledger", False):
            logger.removeHandler(handler)
            handler.close()

    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    console_handler._finance_ledger = True
    logger.addHandler(console_handler)

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = TimedRotatingFileHandler(
            filename=path,
            when="midnight",
            interval=1,
            backupCount=LOG_FILE_BACKUP_COUNT,
            encoding="utf-8",
        )
        file_handler.suffix = "%Y-%m-%d"
        file_handler.setFormatter(formatter)
        file_handler._finance_ledger = True
        logger.addHandler(file_handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logger.debug("logging configured: level=%s file=%s", level, log_file or "-")
    return logger
