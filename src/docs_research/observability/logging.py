"""Structured logging with per-run context using structlog and contextvars."""

import logging
from contextvars import ContextVar

import structlog

# Context variables for the current pipeline run
current_run_id: ContextVar[str | None] = ContextVar("current_run_id", default=None)
current_stage: ContextVar[str | None] = ContextVar("current_stage", default=None)

_configured = False

_NOISY_LOGGERS = ("httpx", "httpcore", "aiosqlite", "asyncio")


def setup_structured_logging(level: str = "INFO") -> None:
    """Configure structlog with JSON output and per-run context.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
    """
    global _configured
    if _configured:
        return

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,  # Inject run context
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(format="%(message)s")
    root.setLevel(getattr(logging, level.upper()))
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    _configured = True


def bind_run_context(run_id: str, stage: str | None = None) -> None:
    """Bind run context for all subsequent logs in this async context."""
    current_run_id.set(run_id)
    structlog.contextvars.bind_contextvars(run_id=run_id)
    if stage is not None:
        bind_stage(stage)


def bind_stage(stage: str) -> None:
    """Record the pipeline stage currently executing."""
    current_stage.set(stage)
    structlog.contextvars.bind_contextvars(stage=stage)


def clear_run_context() -> None:
    """Clear run context after a run completes."""
    current_run_id.set(None)
    current_stage.set(None)
    structlog.contextvars.clear_contextvars()


def get_run_logger(name: str = "docs_research") -> structlog.stdlib.BoundLogger:
    """Get a structlog logger carrying the run context."""
    return structlog.get_logger(name)


def get_current_run_id() -> str | None:
    """Get the current run ID from context."""
    return current_run_id.get()
