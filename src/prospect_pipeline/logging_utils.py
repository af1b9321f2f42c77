"""Logging setup for the prospect pipeline.

Production runs emit one JSON object per record; development runs get a
compact coloured line. Search-scoped records pass ``run_token`` (and, for
enrichment, ``lead_id``) through ``extra`` so a single search can be
followed across the ingestion, enrichment and persistence loggers.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .config import config

ROOT_LOGGER_NAME = "prospect_pipeline"

# Fields promoted to the top level of a JSON record
PIPELINE_FIELDS = ("run_token", "lead_id", "tier", "generation")

_RESERVED = set(vars(logging.makeLogRecord({}))) | {"message", "asctime"}

_NOISY_LOGGERS = ("httpx", "httpcore", "sqlalchemy.engine", "aiosqlite")


def _record_extras(record: logging.LogRecord) -> Dict[str, Any]:
    return {
        key: value
        for key, value in vars(record).items()
        if key not in _RESERVED and not key.startswith("_")
    }


class StructuredFormatter(logging.Formatter):
    """One JSON object per record."""

    def __init__(self, service_name: str = "prospect-pipeline"):
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        extras = _record_extras(record)
        payload: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "service": self.service_name,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for field in PIPELINE_FIELDS:
            if field in extras:
                payload[field] = extras.pop(field)
        if extras:
            payload["extra"] = extras
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        payload["source"] = f"{record.module}:{record.lineno}"
        return json.dumps(payload, default=str)


class HumanReadableFormatter(logging.Formatter):
    """Single-line output for local runs, coloured when attached to a TTY."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(self, use_colors: bool = True):
        super().__init__()
        self.use_colors = use_colors and sys.stdout.isatty()

    def format(self, record: logging.LogRecord) -> str:
        when = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        level = f"{record.levelname:8}"
        if self.use_colors:
            level = f"{self.COLORS.get(record.levelname, '')}{level}{self.RESET}"

        name = record.name
        if name.startswith(ROOT_LOGGER_NAME + "."):
            name = name[len(ROOT_LOGGER_NAME) + 1:]

        tags = []
        run_token = getattr(record, "run_token", None)
        if run_token is not None:
            tags.append(f"run={run_token}")
        lead_id = getattr(record, "lead_id", None)
        if lead_id is not None:
            tags.append(f"lead={lead_id}")

        line = f"{when} {level} {name}: {record.getMessage()}"
        if tags:
            line += f" [{' '.join(tags)}]"
        if record.exc_info:
            line += f"\n{self.formatException(record.exc_info)}"
        return line


def setup_logging(
    level: Optional[str] = None,
    structured: Optional[bool] = None,
    service_name: str = "prospect-pipeline",
) -> logging.Logger:
    """Configure the root logger and return the package logger.

    Args:
        level: Level name; defaults to ``config.LOG_LEVEL``.
        structured: JSON output; defaults to on outside development.
        service_name: Value of the ``service`` field in JSON records.
    """
    log_level = logging.getLevelName((level or config.LOG_LEVEL).upper())
    if not isinstance(log_level, int):
        log_level = logging.INFO
    if structured is None:
        structured = not config.is_development()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        StructuredFormatter(service_name)
        if structured
        else HumanReadableFormatter()
    )

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(log_level)

    # Client libraries stay at WARNING unless debugging
    client_level = (
        log_level if log_level <= logging.DEBUG else max(log_level, logging.WARNING)
    )
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(client_level)

    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.debug(
        "Logging configured",
        extra={"structured": structured, "service": service_name},
    )
    return logger


def get_logger(name: str) -> logging.Logger:
    """Logger under the ``prospect_pipeline`` namespace."""
    if name != ROOT_LOGGER_NAME and not name.startswith(ROOT_LOGGER_NAME + "."):
        name = f"{ROOT_LOGGER_NAME}.{name}"
    return logging.getLogger(name)
