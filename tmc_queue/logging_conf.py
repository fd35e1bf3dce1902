"""Logging configuration with Betterstack support.

Queue log calls pass ``extra={"source": ..., "item_id": ...}``; the formatter
appends those fields so file and console lines can be grepped per item.
"""
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional
from logtail import LogtailHandler

from tmc_queue import settings

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
CONTEXT_FIELDS = ("source", "item_id", "event_id")


class QueueFormatter(logging.Formatter):
    """Plain-text formatter that appends queue context fields as key=value."""

    def format(self, record):
        line = super().format(record)
        context = " ".join(
            f"{name}={getattr(record, name)}" for name in CONTEXT_FIELDS if getattr(record, name, None) is not None
        )
        return f"{line} [{context}]" if context else line


def setup_logging(level: Optional[str] = None, log_file: Optional[Path] = None) -> logging.Logger:
    level = getattr(logging, (level or settings.LOG_LEVEL).upper(), logging.INFO)
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = []

    formatter = QueueFormatter(LOG_FORMAT)

    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setLevel(level)
    stdout_handler.setFormatter(formatter)
    root_logger.addHandler(stdout_handler)

    # Rotating file, 5 x 10 MB
    file_handler = RotatingFileHandler(
        log_file or settings.LOGS_DIR / "queue.log", maxBytes=10 * 1024 * 1024, backupCount=5
    )
    file_handler.setLevel(logging.INFO)
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)

    # Better Stack gets the raw record; extra fields travel as structured attributes
    if settings.BETTERSTACK_SOURCE_TOKEN:
        try:
            handler_kwargs = {"source_token": settings.BETTERSTACK_SOURCE_TOKEN}
            if settings.BETTERSTACK_INGEST_HOST:
                handler_kwargs["host"] = settings.BETTERSTACK_INGEST_HOST
            betterstack_handler = LogtailHandler(**handler_kwargs)
            betterstack_handler.setLevel(logging.DEBUG)
            root_logger.addHandler(betterstack_handler)
            root_logger.info(f"Better Stack logging enabled ({settings.BETTERSTACK_INGEST_HOST or 'default host'})")
        except Exception as e:
            root_logger.warning(f"Failed to initialize Better Stack logging: {e}")

    return logging.getLogger("tmc_queue")


logger = setup_logging()
