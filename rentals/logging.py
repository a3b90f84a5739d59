"""Logging configuration for the rentals service.

Log calls about one contract pass ``extra={"contract_id": ...}`` (and, where
it applies, ``indicator_type`` or ``boundary_date``). Both output formats
surface these fields: the standard format as a ``[contract=7]`` prefix, the
JSON format as top-level keys.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

CONTEXT_FIELDS = ("contract_id", "indicator_type", "boundary_date")

STANDARD_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(context)s%(message)s"


def setup_logging(
    level: str = "INFO",
    format_type: str = "standard",
) -> None:
    """Configure the root logger with a single stdout handler.

    Parameters
    ----------
    level : str
        Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
    format_type : str
        Format type: "standard" or "json".
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    if format_type == "json":
        formatter: logging.Formatter = JsonFormatter()
    else:
        formatter = logging.Formatter(fmt=STANDARD_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.addFilter(ContextFilter())
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    logging.getLogger("rentals").setLevel(log_level)

    # SQL echo is noisy at INFO
    logging.getLogger("sqlalchemy").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def record_context(record: logging.LogRecord) -> dict[str, Any]:
    """Context fields attached to ``record`` through ``extra``."""
    context = {}
    for name in CONTEXT_FIELDS:
        value = getattr(record, name, None)
        if value is not None:
            context[name] = value
    return context


class ContextFilter(logging.Filter):
    """Renders the record's context fields into ``record.context``.

    Records from other libraries carry no context and get an empty prefix.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        context = record_context(record)
        record.context = (
            "[" + " ".join(f"{key}={value}" for key, value in context.items()) + "] "
            if context
            else ""
        )
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per record, with context fields as top-level keys."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        log_data.update(record_context(record))

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        # dates and Decimals in context render as strings
        return json.dumps(log_data, default=str)


def get_logger(name: str) -> logging.Logger:
    """Get a logger with the given name (usually ``__name__``)."""
    return logging.getLogger(name)
