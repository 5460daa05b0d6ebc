"""Structured logging for the search service.

Console output stays human-readable; files under logs/ get one JSON record
per line. Records logged through a context adapter (see `get_logger`) carry
their bound fields, e.g. the search request id, as top-level JSON keys.
"""

import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

from pythonjsonlogger import jsonlogger

from ammo_search.config import settings

SERVICE_NAME = "ammo-search"

# Third-party loggers that are too chatty at DEBUG/INFO
NOISY_LOGGERS = {
    "sqlalchemy.engine": logging.WARNING,
    "sentence_transformers": logging.WARNING,
    "httpx": logging.WARNING,
    "uvicorn.access": logging.INFO,
}


class SearchJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter adding service, timestamp and source location."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)

        log_record['service'] = SERVICE_NAME
        log_record['timestamp'] = datetime.utcfromtimestamp(record.created).isoformat() + 'Z'
        log_record['level'] = record.levelname
        log_record['logger'] = record.name
        log_record['source'] = f"{record.filename}:{record.lineno}"

        request_id = getattr(record, 'request_id', None)
        if request_id:
            log_record['request_id'] = request_id


class ConsoleFormatter(logging.Formatter):
    """Plain formatter that shows the request id when a record has one."""

    def format(self, record):
        request_id = getattr(record, 'request_id', None)
        record.request_tag = f" [{request_id}]" if request_id else ""
        return super().format(record)


def setup_logging(log_dir: Optional[str | Path] = None, level: Optional[str] = None) -> logging.Logger:
    """Configure root logging.

    Args:
        log_dir: Directory for the JSON log files. Defaults to ./logs.
        level: Root level name. Defaults to settings.log_level.
    """
    logs_path = Path(log_dir) if log_dir else Path.cwd() / "logs"
    logs_path.mkdir(parents=True, exist_ok=True)

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, (level or settings.log_level).upper(), logging.INFO))
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(
        ConsoleFormatter("%(asctime)s - %(name)s - %(levelname)s%(request_tag)s - %(message)s")
    )
    root_logger.addHandler(console_handler)

    json_formatter = SearchJsonFormatter("%(timestamp)s %(level)s %(name)s %(message)s")

    app_handler = logging.FileHandler(logs_path / "search.log")
    app_handler.setFormatter(json_formatter)
    root_logger.addHandler(app_handler)

    error_handler = logging.FileHandler(logs_path / "error.log")
    error_handler.setLevel(logging.ERROR)
    error_handler.setFormatter(json_formatter)
    root_logger.addHandler(error_handler)

    if not settings.debug:
        for name, noisy_level in NOISY_LOGGERS.items():
            logging.getLogger(name).setLevel(noisy_level)

    return root_logger


class ContextLogger(logging.LoggerAdapter):
    """Adapter attaching bound fields (request_id, ...) to every record."""

    def process(self, msg, kwargs):
        kwargs['extra'] = {**self.extra, **kwargs.get('extra', {})}
        return msg, kwargs

    def bind(self, **context) -> "ContextLogger":
        return ContextLogger(self.logger, {**self.extra, **context})


def get_logger(name: str, **context) -> ContextLogger:
    """
    Get a logger with bound context fields.

    Args:
        name: Logger name (usually __name__)
        **context: Fields added to every record, e.g. request_id='a1b2c3d4e5f6'
    """
    return ContextLogger(logging.getLogger(name), context)
