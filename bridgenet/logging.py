"""Bridgenet structured logging with JSON output and run context."""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import MutableMapping
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

# Process-wide context merged into every record (env id, run id)
_run_context: dict[str, Any] = {}

_EXTRA_KEYS = ("env_id", "run_id", "stage", "task", "pid", "source")


class JsonFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON.

        Args:
            record: Log record to format

        Returns:
            JSON-formatted log string
        """
        log_data = {
            "ts": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }

        if _run_context:
            log_data.update(_run_context)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for key in _EXTRA_KEYS:
            if hasattr(record, key):
                log_data[key] = getattr(record, key)

        return json.dumps(log_data)


class ConsoleFormatter(logging.Formatter):
    """Colored console formatter for human-readable output."""

    COLORS = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "")
        timestamp = datetime.now().strftime("%H:%M:%S")

        context_parts = []
        if "env_id" in _run_context:
            context_parts.append(str(_run_context["env_id"]))
        if hasattr(record, "stage"):
            context_parts.append(record.stage)
        if hasattr(record, "task"):
            context_parts.append(record.task)

        context = f"[{':'.join(context_parts)}]" if context_parts else ""
        message = record.getMessage()
        if record.exc_info:
            message = f"{message}\n{self.formatException(record.exc_info)}"

        return f"{color}{timestamp} {record.levelname:8s}{self.RESET} {context} {message}"


def set_run_context(env_id: str | None = None, run_id: str | None = None, **kwargs: Any) -> None:
    """Set context for all subsequent log messages.

    Args:
        env_id: Environment id to include in logs
        run_id: Batch run id to include in logs
        **kwargs: Additional context fields
    """
    global _run_context
    _run_context = {}

    if env_id is not None:
        _run_context["env_id"] = env_id
    if run_id is not None:
        _run_context["run_id"] = run_id
    _run_context.update(kwargs)


def clear_run_context() -> None:
    """Clear all run context."""
    global _run_context
    _run_context = {}


def get_logger(name: str) -> logging.Logger:
    """Get a logger under the ``bridgenet`` namespace.

    Args:
        name: Logger name (typically the module's short name)

    Returns:
        Logger instance
    """
    return logging.getLogger(f"bridgenet.{name}")


def setup_logging(
    level: str = "info",
    log_dir: str | Path | None = None,
    json_output: bool = True,
    console_output: bool = True,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
) -> None:
    """Set up logging configuration.

    Args:
        level: Log level (debug, info, warning, error)
        log_dir: Directory for the JSON log file
        json_output: Whether to write JSON logs to file
        console_output: Whether to write to the console
        max_bytes: Maximum size of log file before rotation
        backup_count: Number of backup files to keep
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    root_logger = logging.getLogger("bridgenet")
    root_logger.setLevel(log_level)
    root_logger.handlers = []

    if console_output:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(log_level)
        console_handler.setFormatter(ConsoleFormatter())
        root_logger.addHandler(console_handler)

    if log_dir and json_output:
        log_path = Path(log_dir)
        log_path.mkdir(parents=True, exist_ok=True)

        file_handler = RotatingFileHandler(
            log_path / "bridgenet.log",
            maxBytes=max_bytes,
            backupCount=backup_count,
        )
        file_handler.setLevel(log_level)
        file_handler.setFormatter(JsonFormatter())
        root_logger.addHandler(file_handler)

    root_logger.propagate = False


class LoggerAdapter(logging.LoggerAdapter[logging.Logger]):
    """Logger adapter that adds stage or task context to log messages."""

    def process(self, msg: str, kwargs: MutableMapping[str, Any]) -> tuple[str, MutableMapping[str, Any]]:
        extra = kwargs.get("extra", {})
        extra.update(self.extra)
        kwargs["extra"] = extra
        return msg, kwargs


def get_stage_logger(stage: str) -> LoggerAdapter:
    """Get a logger adapter for a launch stage.

    Args:
        stage: Stage name

    Returns:
        LoggerAdapter with stage context
    """
    return LoggerAdapter(get_logger("stage"), {"stage": stage})


def get_task_logger(task: str) -> LoggerAdapter:
    """Get a logger adapter for a batch task.

    Args:
        task: Task name

    Returns:
        LoggerAdapter with task context
    """
    return LoggerAdapter(get_logger("batch"), {"task": task})


# Initialize default logging on import
setup_logging(console_output=True, json_output=False)
