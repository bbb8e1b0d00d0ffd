"""Structured JSON logging configuration for the API and the dispatcher worker."""

import json
import logging
import sys
from datetime import UTC, datetime
from typing import Any

from shared.config import get_settings

# Context fields copied from `extra={...}` into the JSON payload
EXTRA_FIELDS = (
    "booking_id",
    "barbershop_id",
    "job_id",
    "session_id",
    "waitlist_entry_id",
    "request_path",
)

# Third-party loggers that are chatty at INFO (one line per HTTP call / query)
QUIET_LOGGERS = ("httpx", "httpcore", "stripe", "sqlalchemy.engine")


class JSONFormatter(logging.Formatter):
    """
    One JSON object per line:
    timestamp, level, logger, service, message, any EXTRA_FIELDS passed via
    `extra`, and the formatted exception when exc_info is set.
    """

    def __init__(self, service: str = "api") -> None:
        super().__init__()
        self.service = service

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "service": self.service,
            "message": record.getMessage(),
        }

        for field in EXTRA_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_data[field] = str(value)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, ensure_ascii=False)


def configure_logging(service: str = "api") -> None:
    """
    Install the JSON formatter on the root logger.

    Reads LOG_LEVEL from settings (default: INFO) and writes to stderr.
    Library loggers in QUIET_LOGGERS are held at WARNING unless LOG_LEVEL is
    DEBUG.
    """
    settings = get_settings()
    log_level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(log_level)
    handler.setFormatter(JSONFormatter(service=service))
    root_logger.addHandler(handler)

    library_level = logging.DEBUG if log_level <= logging.DEBUG else logging.WARNING
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(library_level)

    root_logger.info(
        f"Logging configured | service={service} | level={settings.LOG_LEVEL} | "
        f"environment={settings.ENVIRONMENT}"
    )
