"""structlog setup for the API server, the CLI and the dispatch job.

Task and run ids are carried in context variables: code that works on a
single task binds them with ``run_context`` and every event logged inside
the block, including from the store, usage and provider layers, carries
them without passing ids around.
"""

from __future__ import annotations

import logging
import sys
from contextlib import contextmanager
from typing import Any, Iterator, Optional

import structlog

from browsercron.config import get_settings

# Third-party loggers that are chatty at INFO (one line per HTTP request or job tick)
_NOISY_LOGGERS = ("httpx", "httpcore", "apscheduler", "aiosqlite")


def _renderer(env: str) -> structlog.types.Processor:
    if env == "production":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())


def setup_logging() -> None:
    """Configure structlog and the stdlib root logger from settings."""
    settings = get_settings()
    level = getattr(logging, settings.browsercron_log_level.upper(), logging.INFO)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            _renderer(settings.browsercron_env),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))


@contextmanager
def run_context(task_id: Optional[str] = None, run_id: Optional[str] = None, **extra: Any) -> Iterator[None]:
    """Bind task/run ids to every log event emitted inside the block.

    ``None`` values are skipped, so an outer binding is not overwritten by
    an id that is not known yet.
    """
    values = {"task_id": task_id, "run_id": run_id, **extra}
    with structlog.contextvars.bound_contextvars(**{k: v for k, v in values.items() if v is not None}):
        yield


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Return a named structured logger."""
    return structlog.get_logger(name)
