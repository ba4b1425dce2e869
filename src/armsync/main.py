"""Main entry point for armsync.

Sets up structured logging and runs lifecycle operations with signal-driven
cancellation: SIGINT or SIGTERM sets the cancel event handed to the
operation, so an in-flight wait stops at its next refresh or sleep.
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import TypeVar

T = TypeVar("T")

# LogRecord attributes that are not structured `extra` fields
_RESERVED_RECORD_ATTRS = frozenset(
    {
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
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)

_handler: logging.Handler | None = None


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: int = logging.INFO) -> None:
    """Configure JSON logging on stderr.

    Stdout carries command results only. Calling it again rebinds the handler
    to the current sys.stderr and changes the level.
    """
    global _handler

    root_logger = logging.getLogger()
    if _handler is None:
        _handler = logging.StreamHandler(sys.stderr)
        _handler.setFormatter(JsonFormatter())
        root_logger.addHandler(_handler)
    else:
        _handler.setStream(sys.stderr)
    root_logger.setLevel(level)

    # Reduce noise from Azure SDK
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


async def run_until_signalled(operation: Callable[[asyncio.Event], Awaitable[T]]) -> T:
    """Await ``operation(cancel)``, setting ``cancel`` on SIGINT or SIGTERM."""
    logger = logging.getLogger(__name__)
    cancel = asyncio.Event()
    loop = asyncio.get_event_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal, cancelling", extra={"signal": sig.name})
        cancel.set()

    installed: list[signal.Signals] = []
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))
        except (NotImplementedError, RuntimeError):
            # Not supported outside the main thread or on Windows
            continue
        installed.append(sig)

    try:
        return await operation(cancel)
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)


def run() -> None:
    """Entry point for the armsync CLI."""
    from .cli import cli

    cli(prog_name="armsync")


if __name__ == "__main__":
    run()
