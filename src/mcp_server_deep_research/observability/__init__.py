"""Observability module for run tracking and structured logging."""

from .logging import bind_run_context, clear_run_context, get_current_run_id, get_run_logger, setup_structured_logging
from .models import RunRecord, RunStage, RunStatus
from .store import RunStore, get_run_store

__all__ = [
    "RunRecord",
    "RunStage",
    "RunStatus",
    "RunStore",
    "bind_run_context",
    "clear_run_context",
    "get_current_run_id",
    "get_run_logger",
    "get_run_store",
    "setup_structured_logging",
]
