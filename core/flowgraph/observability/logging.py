"""
Structured logging with run context propagation.

The executor sets ``run_id`` once per execution and ``node_id`` / ``branch_id``
per dispatch. Every ``logger.info()`` made while that context is active picks
the fields up without passing them around:

    WorkflowExecutor.execute() → set_trace_context(run_id=...)
        ↓ (ContextVar, copied into every asyncio task)
    parallel branch task → set_trace_context(branch_id=...)
        ↓
    NodeExtension.execute() → logger.info("...") → carries run/node/branch
"""

import json
import logging
import os
import re
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any

trace_context: ContextVar[dict[str, Any] | None] = ContextVar("trace_context", default=None)

ANSI_ESCAPE_PATTERN = re.compile(r"\x1b\[[0-9;]*m")

# Optional LogRecord attributes copied into JSON output when callers pass them via extra=
_EXTRA_FIELDS = ("event", "latency_ms", "tokens_used", "model", "attempt")


def strip_ansi_codes(text: str) -> str:
    """Remove ANSI escape codes from text for clean JSON logging."""
    return ANSI_ESCAPE_PATTERN.sub("", text)


class StructuredFormatter(logging.Formatter):
    """JSON formatter: one object per line, trace context merged in."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": strip_ansi_codes(record.getMessage()),
        }
        log_entry.update(trace_context.get() or {})

        for name in _EXTRA_FIELDS:
            value = getattr(record, name, None)
            if value is None:
                continue
            log_entry[name] = strip_ansi_codes(value) if isinstance(value, str) else value

        if record.exc_info:
            log_entry["exception"] = strip_ansi_codes(self.formatException(record.exc_info))

        return json.dumps(log_entry, default=str)


class HumanReadableFormatter(logging.Formatter):
    """Colorized single-line output with a short run/node prefix."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        context = trace_context.get() or {}

        prefix_parts = []
        if run_id := context.get("run_id"):
            prefix_parts.append(f"run:{run_id[-8:]}")
        if node_id := context.get("node_id"):
            prefix_parts.append(f"node:{node_id}")
        if branch_id := context.get("branch_id"):
            prefix_parts.append(f"branch:{branch_id}")
        context_prefix = f"[{' | '.join(prefix_parts)}] " if prefix_parts else ""

        color = self.COLORS.get(record.levelname, "")
        level = f"{record.levelname:<8}"

        event = ""
        record_event = getattr(record, "event", None)
        if record_event is not None:
            event = f" [{record_event}]"

        message = f"{color}[{level}]{self.RESET} {context_prefix}{record.getMessage()}{event}"
        if record.exc_info:
            message = f"{message}\n{self.formatException(record.exc_info)}"
        return message


def configure_logging(
    level: str = "INFO",
    format: str = "auto",  # "json", "human", or "auto"
) -> None:
    """
    Configure logging for a host application. Call once at startup.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ...)
        format: "json", "human", or "auto" (JSON when LOG_FORMAT=json or
            ENV=production, human-readable otherwise)
    """
    if format == "auto":
        log_format_env = os.getenv("LOG_FORMAT", "").lower()
        env = os.getenv("ENV", "development").lower()
        format = "json" if log_format_env == "json" or env == "production" else "human"

    formatter: logging.Formatter
    if format == "json":
        formatter = StructuredFormatter()
        os.environ["NO_COLOR"] = "1"
    else:
        formatter = HumanReadableFormatter()

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level.upper())

    if format == "json":
        # httpx logs every request at INFO; route it through the JSON handler
        for logger_name in ("httpx", "httpcore"):
            third_party = logging.getLogger(logger_name)
            third_party.handlers.clear()
            third_party.propagate = True


def set_trace_context(**kwargs: Any) -> None:
    """
    Merge fields into the trace context of the current task.

    asyncio copies the context into each task it creates, so fields set
    inside a parallel branch never leak into its siblings.
    """
    current = trace_context.get() or {}
    trace_context.set({**current, **kwargs})


def get_trace_context() -> dict:
    """Return a copy of the current trace context (empty dict if unset)."""
    return (trace_context.get() or {}).copy()


def clear_trace_context() -> None:
    trace_context.set(None)
