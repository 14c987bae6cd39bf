"""Structured logging and alert signals.

``capture_message`` and ``capture_exception`` are how the core raises an
alert: a payment failure, a slow webhook, a failed side effect. They only
log, so calling them after a transaction has committed cannot undo it.
"""

import logging
import sys
from dataclasses import dataclass
from typing import Any, Callable, Optional

import structlog

logger = structlog.get_logger(__name__)

# Suppress noisy library loggers
logging.getLogger("stripe").setLevel(logging.WARNING)
logging.getLogger("urllib3").setLevel(logging.WARNING)


def configure_logging(level: str = "INFO", json_logs: bool = False) -> None:
    log_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=log_level)

    renderer = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def capture_message(message: str, level: str = "info", tags: dict | None = None, extra: dict | None = None) -> None:
    log = getattr(logger, level, logger.info)
    log(message, **{**(tags or {}), **(extra or {})})


def capture_exception(exc: BaseException, tags: dict | None = None, extra: dict | None = None) -> None:
    logger.error(
        str(exc) or type(exc).__name__,
        error_type=type(exc).__name__,
        exc_info=exc,
        **{**(tags or {}), **(extra or {})},
    )


@dataclass(frozen=True)
class SideEffect:
    """Outcome of a best-effort step that must never replace the primary result."""

    name: str
    ok: bool
    error: Optional[str] = None


def attempt(name: str, fn: Callable[[], Any], tags: dict | None = None, extra: dict | None = None) -> SideEffect:
    """Run ``fn``; a failure is captured and logged, never raised."""
    try:
        fn()
    except Exception as e:  # noqa: BLE001
        capture_exception(e, tags={"stage": name, **(tags or {})}, extra=extra)
        return SideEffect(name=name, ok=False, error=str(e) or type(e).__name__)
    return SideEffect(name=name, ok=True)
