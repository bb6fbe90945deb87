"""
Application logging setup: console and rotating file handlers driven by the
``LOG_*`` and ``ENABLE_*_LOGGING`` configuration keys.
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler

# Structured fields passed through ``extra=`` use this prefix.
EXTRA_FIELD_PREFIX = "importer_"


def _extra_fields(record):
    return {key: value for key, value in record.__dict__.items() if key.startswith(EXTRA_FIELD_PREFIX)}


class JSONFormatter(logging.Formatter):
    """Render each record as a single JSON object per line."""

    def format(self, record):
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "line": record.lineno,
        }
        payload.update(_extra_fields(record))
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str, ensure_ascii=False)


class TextFormatter(logging.Formatter):
    """Human-readable format with structured fields appended as key=value pairs."""

    def __init__(self):
        super().__init__("%(asctime)s | %(levelname)-8s | %(name)s | %(message)s", datefmt="%Y-%m-%d %H:%M:%S")

    def format(self, record):
        message = super().format(record)
        extras = _extra_fields(record)
        if extras:
            message += " | " + " ".join(f"{key}={value}" for key, value in sorted(extras.items()))
        return message


def _build_formatter(log_format):
    if str(log_format).lower() == "json":
        return JSONFormatter()
    return TextFormatter()


def setup_logging(app):
    """
    Configure ``app.logger`` and the ``crm_app`` package logger.

    Safe to call repeatedly; previously installed handlers are replaced.
    """
    level_name = str(app.config.get("LOG_LEVEL", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)
    formatter = _build_formatter(app.config.get("LOG_FORMAT", "json"))

    handlers = []
    if app.config.get("ENABLE_CONSOLE_LOGGING", True):
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(formatter)
        handlers.append(console_handler)

    if app.config.get("ENABLE_FILE_LOGGING", False):
        log_dir = app.config.get("LOG_DIR", "logs")
        os.makedirs(log_dir, exist_ok=True)
        file_handler = RotatingFileHandler(
            os.path.join(log_dir, "importer.log"),
            maxBytes=int(app.config.get("LOG_FILE_MAX_BYTES", 10485760)),
            backupCount=int(app.config.get("LOG_FILE_BACKUP_COUNT", 10)),
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    for logger in (app.logger, logging.getLogger("crm_app")):
        for handler in list(logger.handlers):
            logger.removeHandler(handler)
            handler.close()
        for handler in handlers:
            logger.addHandler(handler)
        logger.setLevel(level)

    app.logger.debug(
        "Logging configured",
        extra={"importer_log_level": level_name, "importer_log_handlers": len(handlers)},
    )
