# delivery/logging.py
"""
Structured logging for the goal delivery orchestrator.

Every log call takes an event name plus keyword fields:

    from delivery.logging import get_logger
    logger = get_logger(__name__)
    logger.info("goal_requested", goal="build#goals.py:12", goal_set_id="61d3...")

With LOG_JSON=true (the default) each line is a JSON object with
timestamp, level, logger, message and the fields. Otherwise lines are
rendered as "timestamp [LEVEL] logger: message key=value ...".

Goal executions log through a bound logger (get_goal_logger) so every
line carries the goal and goal set it belongs to.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional


def _source(record: logging.LogRecord) -> Dict[str, Any]:
    return {"file": record.filename, "line": record.lineno, "function": record.funcName}


class StructuredLogFormatter(logging.Formatter):
    """JSON formatter: one object per line."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        log_data.update(getattr(record, "structured_data", {}))

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        if record.levelno >= logging.ERROR:
            log_data["source"] = _source(record)

        return json.dumps(log_data, default=str)


class KeyValueLogFormatter(logging.Formatter):
    """Plain text formatter appending structured fields as key=value pairs."""

    def __init__(self):
        super().__init__("%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        fields = getattr(record, "structured_data", {})
        if fields:
            line += " " + " ".join(f"{k}={_render(v)}" for k, v in fields.items())
        return line


def _render(value: Any) -> str:
    text = value if isinstance(value, str) else json.dumps(value, default=str)
    return json.dumps(text) if " " in text else text


class StructuredLogger:
    """
    Logger taking an event name and keyword fields.

    Fields passed to bind() are added to every call of the returned logger.
    """

    def __init__(self, name: str, context: Optional[Dict[str, Any]] = None):
        self._logger = logging.getLogger(name)
        self._context = dict(context or {})

    @property
    def name(self) -> str:
        return self._logger.name

    def bind(self, **fields) -> "StructuredLogger":
        return StructuredLogger(self.name, {**self._context, **fields})

    def log(self, level: int, message: str, exc_info: bool = False, **kwargs):
        if not self._logger.isEnabledFor(level):
            return
        extra = {"structured_data": {**self._context, **kwargs}}
        self._logger.log(level, message, exc_info=exc_info, extra=extra)

    def debug(self, message: str, **kwargs):
        self.log(logging.DEBUG, message, **kwargs)

    def info(self, message: str, **kwargs):
        self.log(logging.INFO, message, **kwargs)

    def warning(self, message: str, **kwargs):
        self.log(logging.WARNING, message, **kwargs)

    def error(self, message: str, exc_info: bool = False, **kwargs):
        self.log(logging.ERROR, message, exc_info=exc_info, **kwargs)

    def exception(self, message: str, **kwargs):
        """Log an error including the active traceback."""
        self.log(logging.ERROR, message, exc_info=True, **kwargs)


_configured = False


def configure_logging(
    level: str = "INFO",
    json_output: bool = True,
    log_file: Optional[str] = None,
):
    """
    Configure the root logger once.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_output: JSON lines (True) or key=value text (False)
        log_file: Optional file receiving JSON lines as well
    """
    global _configured
    if _configured:
        return
    _configured = True

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(StructuredLogFormatter() if json_output else KeyValueLogFormatter())
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(StructuredLogFormatter())
        root_logger.addHandler(file_handler)

    # Third-party noise
    for name in ("httpx", "httpcore", "uvicorn", "sqlalchemy"):
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> StructuredLogger:
    """Structured logger for a module; configures logging from settings on first use."""
    if not _configured:
        from .settings import settings
        configure_logging(level=settings.log_level, json_output=settings.log_json)
    return StructuredLogger(name)


def get_goal_logger(unique_name: str, goal_set_id: Optional[str] = None) -> StructuredLogger:
    """Logger for the execution of a single goal, bound to the goal identity."""
    logger = get_logger(f"delivery.goal.{unique_name.split('#')[0]}")
    return logger.bind(goal=unique_name, goal_set_id=goal_set_id)
