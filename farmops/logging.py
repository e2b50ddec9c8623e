from __future__ import annotations

import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import structlog


def _resolve_level(name: str | None) -> int:
    return getattr(logging, (name or "INFO").upper(), logging.INFO)


def _resolve_format(app_env: str | None) -> str:
    if "LOG_FORMAT" in os.environ:
        return os.environ["LOG_FORMAT"].lower()
    return "console" if app_env == "dev" else "json"


def setup_logging(*, app_env: str | None = None, level: str | None = None) -> None:
    """Route structlog and stdlib logging through one JSON (or console) renderer.

    Context bound with ``structlog.contextvars`` (request_id, user_id,
    operation_id, farm_id) is merged into every event, including events
    emitted through ``logging.getLogger``.
    """

    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.format_exc_info,
    ]
    structlog.configure(
        processors=[*shared_processors, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    renderer = (
        structlog.dev.ConsoleRenderer()
        if _resolve_format(app_env) == "console"
        else structlog.processors.JSONRenderer()
    )
    handler = logging.StreamHandler()
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared_processors,
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        )
    )
    logging.basicConfig(
        level=_resolve_level(level or os.getenv("LOG_LEVEL")),
        handlers=[handler],
        force=True,
    )
    # one UPDATE per processed item; engine echo would drown the batch events
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


@contextmanager
def bound_operation(operation_id: str, farm_id: int) -> Iterator[None]:
    """Attach operation_id/farm_id to every log event emitted inside the block."""

    with structlog.contextvars.bound_contextvars(operation_id=operation_id, farm_id=farm_id):
        yield


def get_logger(*args: Any, **kwargs: Any) -> structlog.stdlib.BoundLogger:  # convenience
    return structlog.get_logger(*args, **kwargs)
