"""
observability/logger.py — Parley Structured Logger

Sets up structlog routed through stdlib logging:
  - the rotating log file is always JSON, one object per line
  - the console is JSON (prod) or coloured key/value lines (dev)
  - any event carrying a session_key also carries its channel

Session context is bound per asyncio task with bind_session(), so every line
logged while a turn runs names the conversation it belongs to.

Usage:
    from observability.logger import get_logger, setup_logging

    setup_logging(level="INFO", log_dir="./data/logs")    # once at startup
    log = get_logger(__name__)
    log.info("agent_loop.turn_start", session_key="telegram:42")
    # → {"event": "agent_loop.turn_start", "session_key": "telegram:42",
    #    "channel": "telegram", "level": "info", ...}
"""

from __future__ import annotations

import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Any, MutableMapping

import structlog

LOG_FILE_NAME = "parley.log"


def add_channel(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """Processor: derive `channel` from a "<channel>:<chat_id>" session_key."""
    key = event_dict.get("session_key")
    if isinstance(key, str) and ":" in key and "channel" not in event_dict:
        event_dict["channel"] = key.split(":", 1)[0]
    return event_dict


def setup_logging(
    level: str = "INFO",
    log_dir: str | Path = "./data/logs",
    json_format: bool = True,
    console_output: bool = True,
    max_bytes: int = 100 * 1024 * 1024,   # 100 MB
    backup_count: int = 5,
    file_name: str = LOG_FILE_NAME,
) -> Path:
    """
    Configure structlog and stdlib logging. Call once at application startup.

    Args:
        level:          DEBUG | INFO | WARNING | ERROR | CRITICAL
        log_dir:        Directory for the rotating log file (created if missing).
        json_format:    Console format. The file is JSON regardless.
        console_output: Whether to emit logs to stdout at all.
        max_bytes:      Max size of the log file before rotation.
        backup_count:   Number of rotated files to keep.
        file_name:      Log file name inside log_dir.

    Returns:
        Path of the active log file.
    """
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / file_name

    numeric_level = getattr(logging, level.upper(), logging.INFO)

    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        add_channel,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    def formatter_for(renderer: Any) -> logging.Formatter:
        return structlog.stdlib.ProcessorFormatter(
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                renderer,
            ],
            foreign_pre_chain=shared_processors,
        )

    file_handler = logging.handlers.RotatingFileHandler(
        filename=log_path,
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8",
    )
    file_handler.setLevel(numeric_level)
    file_handler.setFormatter(formatter_for(structlog.processors.JSONRenderer()))
    handlers: list[logging.Handler] = [file_handler]

    if console_output:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(numeric_level)
        if json_format:
            console_renderer: Any = structlog.processors.JSONRenderer()
        else:
            console_renderer = structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())
        console_handler.setFormatter(formatter_for(console_renderer))
        handlers.append(console_handler)

    logging.basicConfig(level=numeric_level, handlers=handlers, force=True)

    structlog.configure(
        processors=shared_processors
        + [
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    return log_path


def get_logger(name: str = "parley", **initial_values: Any) -> structlog.stdlib.BoundLogger:
    """
    Get a bound logger with optional initial context values.

    Example:
        log = get_logger(__name__, component="skill_bus")
        log.info("skill_bus.dispatch", skill="book_flight")
    """
    logger = structlog.get_logger(name)
    if initial_values:
        logger = logger.bind(**initial_values)
    return logger


def bind_session(session_key: str) -> None:
    """
    Bind the session key to every log call in this async context.

    Each asyncio task runs in its own context copy, so concurrent sessions
    never see each other's bindings. add_channel() fills in the channel.
    """
    structlog.contextvars.bind_contextvars(session_key=session_key)


def clear_session() -> None:
    """Clear session context vars at the end of a turn."""
    structlog.contextvars.clear_contextvars()
