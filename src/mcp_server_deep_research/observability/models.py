"""Data models for research run tracking."""

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class RunStatus(str, Enum):
    """Research run status."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class RunStage(str, Enum):
    """Coarse phases of a research run."""

    INITIALIZING = "initializing"
    RESEARCHING = "researching"
    REPORTING = "reporting"
    FINALIZING = "finalizing"


class RunRecord(BaseModel):
    """Record of one research run."""

    run_id: str
    query: str
    depth: int
    breadth: int
    status: RunStatus = RunStatus.PENDING
    stage: RunStage | None = None

    # Timestamps
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    started_at: datetime | None = None
    completed_at: datetime | None = None

    # Query progress
    completed_queries: int = 0
    total_queries: int = 0
    progress_message: str | None = None

    # Outcome
    learnings_count: int = 0
    sources_count: int = 0
    params: dict[str, Any] = Field(default_factory=dict)
    report: str | None = None
    error: str | None = None

    @property
    def duration_seconds(self) -> float | None:
        if not self.started_at:
            return None
        end = self.completed_at or datetime.now(UTC)
        return (end - self.started_at).total_seconds()

    @property
    def progress_percent(self) -> float:
        if self.total_queries <= 0:
            return 0.0
        return min(100.0, (self.completed_queries / self.total_queries) * 100)

    @property
    def is_terminal(self) -> bool:
        return self.status in (RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED)

    def summary(self) -> dict[str, Any]:
        """Compact view for listings."""
        return {
            "run_id": self.run_id,
            "query": self.query[:100],
            "status": self.status.value,
            "stage": self.stage.value if self.stage else None,
            "progress": f"{self.completed_queries}/{self.total_queries}",
            "created_at": self.created_at.isoformat(),
            "duration_sec": round(self.duration_seconds, 1) if self.duration_seconds is not None else None,
        }
