"""
structlog setup for the monitor, trading and reconciler loops.

Every loop logs through ``LoggerMixin.log``; per-job ids (user, token,
strategy, transaction) are attached with ``log_context`` and merged into
each line from contextvars. Output is a colored console on a terminal and
one JSON object per line otherwise.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.typing import Processor


def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure structlog and the stdlib root logger.

    Args:
        log_level: Level name from settings; unknown names fall back to INFO.
            httpx request lines are kept at WARNING or above since the
            TonApi and exchange clients poll every few seconds.
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    # SQLAlchemy and httpx log through stdlib
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=level,
    )
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    if sys.stderr.isatty():
        renderers: list[Processor] = [structlog.dev.ConsoleRenderer(colors=True)]
    else:
        renderers = [
            structlog.processors.dict_tracebacks,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=shared_processors + renderers,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.BoundLogger:
    """Module-level logger; ``name`` is bound as ``module``."""
    logger = structlog.get_logger()
    if name:
        logger = logger.bind(module=name)
    return logger


class LoggerMixin:
    """Gives services, exchanges and clients a ``log`` bound to their class name."""

    @property
    def log(self) -> structlog.BoundLogger:
        if not hasattr(self, "_logger"):
            self._logger = get_logger(self.__class__.__name__)
        return self._logger


def log_context(**kwargs: Any) -> structlog.contextvars.bound_contextvars:
    """Bind user/token/strategy ids to every log line emitted inside a job."""
    return structlog.contextvars.bound_contextvars(**kwargs)
