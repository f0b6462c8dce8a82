"""Root logger setup for the service.

Output goes to stdout, to a rotating file, or both; lines are plain text or
one JSON object per line. Every knob falls back to an environment variable
read at call time.
"""

from __future__ import annotations

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from typing import List, Literal

LogOutput = Literal["stdout", "file", "both"]
LogFormat = Literal["text", "json"]

_TEXT_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(threadName)s | %(message)s"
_JSON_FORMAT = (
    '{"timestamp": "%(asctime)s", "level": "%(levelname)s", "name": "%(name)s", '
    '"thread": "%(threadName)s", "message": "%(message)s"}'
)
_MAX_BYTES = 10 * 1024 * 1024


def _handlers(output: str, file_path: str) -> List[logging.Handler]:
    handlers: List[logging.Handler] = []
    if output in ("stdout", "both"):
        handlers.append(logging.StreamHandler(sys.stdout))
    if output in ("file", "both"):
        log_dir = os.path.dirname(file_path)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        handlers.append(RotatingFileHandler(file_path, maxBytes=_MAX_BYTES, backupCount=5))
    return handlers


def configure_logging(
    level: str | int | None = None,
    output: LogOutput | None = None,
    file_path: str | None = None,
    log_format: LogFormat | None = None,
) -> None:
    """Install handlers on the root logger, replacing any present.

    ``level`` defaults to ``LOG_LEVEL`` (INFO), ``output`` to ``LOG_OUTPUT``
    (stdout), ``file_path`` to ``LOG_FILE_PATH`` and ``log_format`` to
    ``LOG_FORMAT`` (text).
    """
    level = level or os.environ.get("LOG_LEVEL", "INFO").upper()
    output = output or os.environ.get("LOG_OUTPUT", "stdout").lower()
    file_path = file_path or os.environ.get("LOG_FILE_PATH", "logs/feedloom.log")
    log_format = log_format or os.environ.get("LOG_FORMAT", "text").lower()

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    formatter = logging.Formatter(_JSON_FORMAT if log_format == "json" else _TEXT_FORMAT)
    for handler in _handlers(output, file_path):
        handler.setFormatter(formatter)
        root_logger.addHandler(handler)

    # urllib3 and watchdog are chatty at DEBUG
    for noisy in ("urllib3", "watchdog"):
        logging.getLogger(noisy).setLevel(max(root_logger.level, logging.INFO))


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def update_prefix(*, is_manual: bool = False, force_reprocess: bool = False) -> str:
    """Tag used at the start of every update log line."""
    if force_reprocess:
        return "[reprocess]"
    if is_manual:
        return "[manual]"
    return "[update]"
