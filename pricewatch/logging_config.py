"""Logging setup: readable console output plus JSON files for shipping.

Worker code binds watch context through get_logger(); those fields are
grouped under "context" in the JSON output and appended to console lines.
"""

import logging
import sys
from datetime import datetime, timezone
from pathlib import Path

from pythonjsonlogger import jsonlogger

from pricewatch.config import settings

# Extra record attributes treated as watch context
CONTEXT_FIELDS = ("watch_id", "owner_id", "route", "sweep", "job_type", "method", "provider")


def record_context(record: logging.LogRecord) -> dict:
    return {
        name: getattr(record, name)
        for name in CONTEXT_FIELDS
        if getattr(record, name, None) is not None
    }


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """One JSON object per record, with watch context nested under "context"."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)

        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        log_record['timestamp'] = created.strftime("%Y-%m-%dT%H:%M:%S.%fZ")
        log_record['level'] = record.levelname
        log_record['logger'] = record.name
        log_record['source'] = f"{record.module}.{record.funcName}:{record.lineno}"

        context = record_context(record)
        for name in context:
            log_record.pop(name, None)
        if context:
            log_record['context'] = context


class ContextFormatter(logging.Formatter):
    """Console formatter that appends bound context as key=value pairs."""

    def format(self, record):
        line = super().format(record)
        context = record_context(record)
        if context:
            pairs = " ".join(f"{k}={v}" for k, v in context.items())
            line = f"{line} [{pairs}]"
        return line


def _file_handler(path: Path, level: int, formatter: logging.Formatter) -> logging.Handler:
    handler = logging.FileHandler(path)
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def setup_logging(base_dir: str | Path | None = None, level: str | None = None):
    """Install console, JSON and error-only handlers on the root logger.

    Args:
        base_dir: Directory that gets the logs/ folder (defaults to cwd)
        level: Root level name, defaults to settings.log_level
    """
    logs_dir = (Path(base_dir) if base_dir else Path.cwd()) / "logs"
    logs_dir.mkdir(exist_ok=True)

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, (level or settings.log_level).upper()))
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(
        ContextFormatter("%(asctime)s %(levelname)-7s %(name)s: %(message)s")
    )
    root_logger.addHandler(console_handler)

    json_formatter = CustomJsonFormatter("%(timestamp)s %(level)s %(name)s %(message)s")
    root_logger.addHandler(_file_handler(logs_dir / "pricewatch.log", logging.DEBUG, json_formatter))
    root_logger.addHandler(_file_handler(logs_dir / "error.log", logging.ERROR, json_formatter))

    # APScheduler logs every job execution at INFO
    logging.getLogger("apscheduler").setLevel(logging.WARNING)

    return root_logger


class LoggerAdapter(logging.LoggerAdapter):
    """Adds bound context to every record; per-call extra wins on clashes."""

    def process(self, msg, kwargs):
        kwargs['extra'] = {**self.extra, **kwargs.get('extra', {})}
        return msg, kwargs


def get_logger(name: str, **context) -> LoggerAdapter:
    """
    Get a logger that tags its records with watch context.

    Args:
        name: Logger name (usually __name__)
        **context: Fields from CONTEXT_FIELDS, e.g. watch_id=42, sweep='check'
    """
    return LoggerAdapter(logging.getLogger(name), context)
