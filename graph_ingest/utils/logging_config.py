"""
Logging setup for the Flask application.

Console and rotating file handlers are attached to the Flask logger and the
``graph_ingest`` package logger. Structured fields passed through ``extra``
with an ``importer_`` prefix are appended to each formatted line.
"""

from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler

from flask import Flask

_HANDLER_MARKER = "_graph_ingest_handler"
_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


class StructuredFormatter(logging.Formatter):
    """Append ``importer_*`` extra fields as ``key=value`` pairs."""

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        extras = {
            key: value for key, value in record.__dict__.items() if key.startswith("importer_") and value is not None
        }
        if not extras:
            return message
        rendered = " ".join(f"{key}={extras[key]}" for key in sorted(extras))
        return f"{message} | {rendered}"


def _resolve_level(app: Flask) -> int:
    level_name = str(app.config.get("LOG_LEVEL", "INFO")).upper()
    level = logging.getLevelName(level_name)
    return level if isinstance(level, int) else logging.INFO


def _remove_managed_handlers(logger: logging.Logger) -> None:
    for handler in list(logger.handlers):
        if getattr(handler, _HANDLER_MARKER, False):
            logger.removeHandler(handler)
            handler.close()


def _build_handlers(app: Flask, level: int) -> list[logging.Handler]:
    formatter = StructuredFormatter(_FORMAT)
    handlers: list[logging.Handler] = []

    if app.config.get("ENABLE_CONSOLE_LOGGING", True):
        console = logging.StreamHandler()
        handlers.append(console)

    if app.config.get("ENABLE_FILE_LOGGING", False):
        log_dir = app.config.get("LOG_DIR", "logs")
        os.makedirs(log_dir, exist_ok=True)
        file_handler = RotatingFileHandler(
            os.path.join(log_dir, "graph_ingest.log"),
            maxBytes=int(app.config.get("LOG_MAX_BYTES", 10 * 1024 * 1024)),
            backupCount=int(app.config.get("LOG_BACKUP_COUNT", 5)),
            encoding="utf-8",
        )
        handlers.append(file_handler)

    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        setattr(handler, _HANDLER_MARKER, True)
    return handlers


def setup_logging(app: Flask) -> None:
    """(Re)configure application logging from ``app.config``."""
    level = _resolve_level(app)
    package_logger = logging.getLogger("graph_ingest")

    for logger in (app.logger, package_logger):
        _remove_managed_handlers(logger)
        logger.setLevel(level)
        for handler in _build_handlers(app, level):
            logger.addHandler(handler)
    package_logger.propagate = False

    app.logger.debug(
        "Logging configured",
        extra={"importer_log_level": logging.getLevelName(level)},
    )
