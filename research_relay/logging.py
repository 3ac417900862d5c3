"""structlog setup for the relay.

Production output is one JSON object per line: `timestamp`, `level`, `logger`,
`message`, the bound `research_id` when a workflow is running, and every
call-site key nested under `extra`. `configure_structlog(testing=True)` renders
the same events as single human-readable lines for local runs.
"""

import logging
import os
import sys
from datetime import datetime
from typing import Any

import structlog
from structlog.types import EventDict, WrappedLogger

PACKAGE_PREFIX = "research_relay"
RESEARCH_ID_KEY = "research_id"
UNKNOWN_RESEARCH_ID = "unknown"
DEFAULT_LOG_LEVEL = "INFO"

TOP_LEVEL_FIELDS = frozenset({"timestamp", "level", "logger", "message", RESEARCH_ID_KEY})


def get_research_id() -> str:
    """Research id bound to the current task, or "unknown"."""
    return str(structlog.contextvars.get_contextvars().get(RESEARCH_ID_KEY, UNKNOWN_RESEARCH_ID))


def _nest_extra(_: WrappedLogger, __: str, event_dict: EventDict) -> EventDict:
    event_dict["message"] = event_dict.pop("event", "")
    extra = {key: event_dict.pop(key) for key in list(event_dict) if key not in TOP_LEVEL_FIELDS}
    if extra:
        event_dict["extra"] = extra
    return event_dict


class HumanReadableFormatter:
    """Renders `HH:MM:SS [LEVEL] logger: message [k=v, ...] [id:...]`."""

    def __init__(self, max_value_length: int = 60, research_id_length: int = 30):
        self.max_value_length = max_value_length
        self.research_id_length = research_id_length

    def __call__(self, _: WrappedLogger, __: str, event_dict: EventDict) -> str:
        level = str(event_dict.get("level", "info")).upper()
        time_str = self.format_timestamp(event_dict.get("timestamp", ""))
        logger_name = self.format_logger_name(event_dict.get("logger", ""))
        return (
            f"{time_str} [{level}] {logger_name}: {event_dict.get('message', '')}"
            + self.format_extra_fields(event_dict.get("extra", {}))
            + self.format_research_id(event_dict.get(RESEARCH_ID_KEY, ""))
        )

    def format_timestamp(self, timestamp: str) -> str:
        try:
            return datetime.fromisoformat(timestamp.replace("Z", "+00:00")).strftime("%H:%M:%S")
        except ValueError:
            return ""

    def format_logger_name(self, logger_name: str) -> str:
        """`research_relay.api.server` becomes `api.server`; other loggers pass through."""
        if not logger_name.startswith(f"{PACKAGE_PREFIX}."):
            return logger_name
        return ".".join(logger_name.split(".")[1:][-2:])

    def format_value(self, value: Any) -> str:
        text = str(value)
        if len(text) > self.max_value_length:
            return f"{text[: self.max_value_length - 3]}..."
        return text

    def format_extra_fields(self, extra: dict[str, Any]) -> str:
        if not extra:
            return ""
        return " [" + ", ".join(f"{key}={self.format_value(value)}" for key, value in extra.items()) + "]"

    def format_research_id(self, research_id: str) -> str:
        if not research_id:
            return ""
        return f" [id:{research_id[: self.research_id_length]}]"


def configure_structlog(testing: bool = False) -> None:
    """Route structlog through stdlib logging at `LOGGING_LEVEL` (default INFO)."""
    level_name = os.environ.get("LOGGING_LEVEL", DEFAULT_LOG_LEVEL).upper()
    level = getattr(logging, level_name, logging.INFO)

    logging.basicConfig(format="%(message)s", level=level, stream=sys.stdout)
    logging.getLogger().setLevel(level)
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))

    structlog.configure(
        processors=[  # type: ignore[list-item]
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.contextvars.merge_contextvars,
            _nest_extra,
            structlog.processors.TimeStamper(fmt="iso"),
            HumanReadableFormatter() if testing else structlog.processors.JSONRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.make_filtering_bound_logger(level),
        cache_logger_on_first_use=True,
    )


def clear_context_fields() -> None:
    structlog.contextvars.clear_contextvars()


def bind_context_vars(**kwargs: Any) -> None:
    structlog.contextvars.bind_contextvars(**kwargs)


def get_logger(name: str = "") -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name or __name__)  # type: ignore
