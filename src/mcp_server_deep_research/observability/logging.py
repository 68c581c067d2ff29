"""Structured logging with per-run context using structlog and contextvars."""

import logging
import sys
from contextvars import ContextVar

import structlog

current_run_id: ContextVar[str | None] = ContextVar("current_run_id", default=None)
current_query: ContextVar[str | None] = ContextVar("current_query", default=None)

_configured = False


def setup_structured_logging(level: str = "INFO") -> None:
    """Configure structlog with JSON output on stderr and per-run context.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
    """
    global _configured
    if _configured:
        return

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
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

    # stdout is reserved for MCP stdio framing
    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, level.upper(), logging.INFO),
        stream=sys.stderr,
    )

    _configured = True


def bind_run_context(run_id: str, query: str) -> None:
    """Bind run context for all subsequent logs in this async context."""
    current_run_id.set(run_id)
    current_query.set(query)
    structlog.contextvars.bind_contextvars(run_id=run_id, query=query[:100])


def clear_run_context() -> None:
    """Clear run context after a run completes."""
    current_run_id.set(None)
    current_query.set(None)
    structlog.contextvars.clear_contextvars()


def get_run_logger(name: str = "mcp_server_deep_research") -> structlog.stdlib.BoundLogger:
    """Get a structlog logger that carries the bound run context."""
    return structlog.get_logger(name)


def get_current_run_id() -> str | None:
    return current_run_id.get()
