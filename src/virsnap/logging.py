import json
import logging
import sys
from typing import Any, Dict, Optional, TextIO
from datetime import datetime, timezone


class StructuredLogger:
    """
    A logger that outputs logs in a structured JSON format or as plain text.

    Instances are passed explicitly into the engines; keyword arguments given
    to the logging methods end up as fields of the JSON record.
    """

    def __init__(
        self,
        name: str,
        level: int = logging.INFO,
        fmt: str = "json",
        stream: Optional[TextIO] = None,
    ):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(level)
        self.logger.propagate = False

        # Clear existing handlers to avoid duplicate logs
        if self.logger.handlers:
            self.logger.handlers.clear()

        handler = logging.StreamHandler(stream or sys.stdout)
        if fmt == "json":
            handler.setFormatter(self.JsonFormatter())
        else:
            handler.setFormatter(self.TextFormatter())
        self.logger.addHandler(handler)

    class JsonFormatter(logging.Formatter):
        # Standard LogRecord attributes that should not be included as extra fields
        STANDARD_ATTRS = {
            "name",
            "msg",
            "args",
            "created",
            "filename",
            "funcName",
            "levelname",
            "levelno",
            "lineno",
            "module",
            "msecs",
            "message",
            "pathname",
            "process",
            "processName",
            "relativeCreated",
            "thread",
            "threadName",
            "exc_info",
            "exc_text",
            "stack_info",
            "taskName",
        }

        def format(self, record: logging.LogRecord) -> str:
            log_entry: Dict[str, Any] = {
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "level": record.levelname,
                "logger": record.name,
                "message": record.getMessage(),
            }

            if record.exc_info:
                log_entry["exception"] = self.formatException(record.exc_info)

            for key, value in record.__dict__.items():
                if key not in self.STANDARD_ATTRS:
                    log_entry[key] = value

            return json.dumps(log_entry, default=str)

    class TextFormatter(logging.Formatter):
        """Human-readable single line format for interactive runs."""

        def __init__(self) -> None:
            super().__init__("%(asctime)s - %(levelname)s - %(message)s")

    def set_level(self, level: int) -> None:
        self.logger.setLevel(level)

    def info(self, message: str, **kwargs: Any) -> None:
        self.logger.info(message, extra=kwargs)

    def error(self, message: str, exc_info: bool = False, **kwargs: Any) -> None:
        self.logger.error(message, exc_info=exc_info, extra=kwargs)

    def warning(self, message: str, **kwargs: Any) -> None:
        self.logger.warning(message, extra=kwargs)

    def debug(self, message: str, **kwargs: Any) -> None:
        self.logger.debug(message, extra=kwargs)

    def critical(self, message: str, exc_info: bool = False, **kwargs: Any) -> None:
        self.logger.critical(message, exc_info=exc_info, extra=kwargs)


def configure_logging(
    level: str = "INFO", fmt: str = "text", stream: Optional[TextIO] = None
) -> StructuredLogger:
    """Build the process-wide logger once from resolved configuration."""
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    return StructuredLogger("virsnap", level=numeric_level, fmt=fmt, stream=stream)


# Default logger for library use when no logger is injected
logger = StructuredLogger("virsnap", level=logging.WARNING)
