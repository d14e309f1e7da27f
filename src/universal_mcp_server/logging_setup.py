"""Logging configuration.

All log output goes to stderr (and optionally a file). stdout is reserved
for the stdio channel, so nothing here may ever write to it.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime

from .config import LoggingConfig

TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class JsonFormatter(logging.Formatter):
    """One JSON object per log line."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


def configure_logging(config: LoggingConfig | None = None) -> None:
    """Route all loggers to stderr with the configured level and format.

    Removes handlers installed by anything imported earlier so that no
    library keeps writing to stdout.
    """
    config = config or LoggingConfig()

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    for logger_name in list(logging.Logger.manager.loggerDict.keys()):
        logger_instance = logging.getLogger(logger_name)
        for handler in logger_instance.handlers[:]:
            logger_instance.removeHandler(handler)
        logger_instance.propagate = True

    formatter: logging.Formatter
    if config.format == "json":
        formatter = JsonFormatter()
    else:
        formatter = logging.Formatter(TEXT_FORMAT)

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setFormatter(formatter)
    root_logger.addHandler(stderr_handler)

    if config.file:
        file_handler = logging.FileHandler(config.file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    root_logger.setLevel(config.level.upper())
