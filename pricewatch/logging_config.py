"""Logging setup shared by the API, worker and script entry points."""

import logging
import sys
from datetime import datetime
from pathlib import Path
from pythonjsonlogger import jsonlogger

from pricewatch.config import settings

# Context keys promoted into console lines when a LoggerAdapter sets them
CONTEXT_FIELDS = ("run_id", "job_id", "tier")


class PricewatchJsonFormatter(jsonlogger.JsonFormatter):
    """One JSON object per line, tagged with the emitting process."""

    def __init__(self, *args, component: str = "app", **kwargs):
        super().__init__(*args, **kwargs)
        self.component = component

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        log_record['timestamp'] = datetime.utcnow().isoformat() + 'Z'
        log_record['level'] = record.levelname
        log_record['logger'] = record.name
        log_record['component'] = self.component
        log_record['source'] = f"{record.filename}:{record.lineno}"


class ContextConsoleFormatter(logging.Formatter):
    """Plain-text lines with any run/job context appended in brackets."""

    def format(self, record):
        line = super().format(record)
        context = [
            f"{key}={getattr(record, key)}"
            for key in CONTEXT_FIELDS
            if getattr(record, key, None) is not None
        ]
        return f"{line} [{' '.join(context)}]" if context else line


def setup_logging(component: str = "app", log_dir: str | Path | None = None):
    """
    Configure the root logger for one process.

    Console output stays human-readable; ``<component>.log`` gets every record
    as JSON and ``<component>.error.log`` only errors, so the API and worker
    processes never interleave in one file.
    """
    logs_dir = Path(log_dir or settings.log_dir)
    logs_dir.mkdir(parents=True, exist_ok=True)
    level = getattr(logging, settings.log_level.upper())

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    if settings.log_json_console:
        console_handler.setFormatter(PricewatchJsonFormatter("%(message)s", component=component))
    else:
        console_handler.setFormatter(
            ContextConsoleFormatter(f"%(asctime)s - {component} - %(name)s - %(levelname)s - %(message)s")
        )
    root_logger.addHandler(console_handler)

    json_formatter = PricewatchJsonFormatter("%(timestamp)s %(level)s %(name)s %(message)s", component=component)
    for filename, handler_level in ((f"{component}.log", logging.DEBUG), (f"{component}.error.log", logging.ERROR)):
        file_handler = logging.FileHandler(logs_dir / filename)
        file_handler.setLevel(handler_level)
        file_handler.setFormatter(json_formatter)
        root_logger.addHandler(file_handler)

    # Chatty at DEBUG
    for name in ("httpx", "httpcore", "apscheduler.executors.default"):
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    return root_logger


class LoggerAdapter(logging.LoggerAdapter):
    """Merges the adapter's context into each record's extra fields."""

    def process(self, msg, kwargs):
        kwargs['extra'] = {**self.extra, **kwargs.get('extra', {})}
        return msg, kwargs


def get_logger(name: str, **context) -> LoggerAdapter:
    """
    Get a logger carrying context fields.

    Args:
        name: Logger name (usually __name__)
        **context: Fields attached to every record (e.g. run_id='ab12')
    """
    return LoggerAdapter(logging.getLogger(name), context)
