"""Research progress snapshots, moving-average throughput and ETA."""

from __future__ import annotations

import inspect
import logging
import threading
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from pydantic import BaseModel

from .exceptions import InvalidConfiguration

logger = logging.getLogger(__name__)

DEFAULT_WINDOW = 20
_MIN_ELAPSED = 0.001


class ProgressSnapshot(BaseModel):
    """Where a research run currently stands."""

    current_depth: int
    total_depth: int
    current_breadth: int
    total_breadth: int
    completed_queries: int = 0
    total_queries: int = 0
    current_query: str | None = None

    @property
    def remaining_queries(self) -> int:
        return max(0, self.total_queries - self.completed_queries)

    def same_position(self, other: ProgressSnapshot | None) -> bool:
        return (
            other is not None
            and other.completed_queries == self.completed_queries
            and other.current_depth == self.current_depth
            and other.current_breadth == self.current_breadth
            and other.current_query == self.current_query
        )


@dataclass(frozen=True)
class ProgressEstimate:
    rate: float
    eta_seconds: float | None


ProgressObserver = Callable[[ProgressSnapshot], "Awaitable[None] | None"]


class ProgressTracker:
    """Sliding window of ``(timestamp, completed)`` samples.

    Rate is measured between the oldest and newest retained samples. Redundant
    snapshot updates are dropped before they reach the window or observers.
    """

    def __init__(self, window: int = DEFAULT_WINDOW, clock: Callable[[], float] = time.monotonic):
        if window < 2:
            raise InvalidConfiguration(f"Progress window needs at least 2 samples, got {window}")
        self.window = window
        self._clock = clock
        self._samples: deque[tuple[float, int]] = deque(maxlen=window)
        self._last: ProgressSnapshot | None = None
        self._observers: list[ProgressObserver] = []
        self._lock = threading.Lock()

    @property
    def last(self) -> ProgressSnapshot | None:
        return self._last

    def subscribe(self, observer: ProgressObserver) -> None:
        self._observers.append(observer)

    def record(self, completed: int, timestamp: float | None = None) -> None:
        with self._lock:
            self._samples.append((self._clock() if timestamp is None else timestamp, completed))

    def estimate(self, total: int | None = None) -> ProgressEstimate:
        with self._lock:
            samples = list(self._samples)
            last = self._last
        if len(samples) < 2:
            return ProgressEstimate(rate=0.0, eta_seconds=None)

        (t0, c0), (t1, c1) = samples[0], samples[-1]
        rate = max(0, c1 - c0) / max(_MIN_ELAPSED, t1 - t0)
        if total is None:
            total = last.total_queries if last else 0
        remaining = max(0, total - c1)
        eta = remaining / rate if rate > 0 else None
        return ProgressEstimate(rate=rate, eta_seconds=eta)

    async def update(self, snapshot: ProgressSnapshot) -> bool:
        """Record a snapshot and notify observers; returns False for redundant updates."""
        with self._lock:
            if snapshot.same_position(self._last):
                return False
            self._last = snapshot
            self._samples.append((self._clock(), snapshot.completed_queries))

        for observer in list(self._observers):
            try:
                result = observer(snapshot)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.warning(f"Progress observer failed: {e}")
        return True


def overall_percent(snapshot: ProgressSnapshot) -> int:
    """Average of depth, breadth and query completion, as a whole percent."""
    depth = (snapshot.total_depth - snapshot.current_depth) / snapshot.total_depth if snapshot.total_depth > 0 else 0.0
    breadth = (snapshot.total_breadth - snapshot.current_breadth) / snapshot.total_breadth if snapshot.total_breadth > 0 else 0.0
    queries = snapshot.completed_queries / snapshot.total_queries if snapshot.total_queries > 0 else 0.0
    return round((depth + breadth + queries) / 3 * 100)


def format_eta(estimate: ProgressEstimate) -> str:
    if estimate.eta_seconds is None:
        return "ETA: -"
    seconds = round(estimate.eta_seconds)
    return f"ETA: {seconds // 60}m {seconds % 60}s"


def progress_bar(value: float, total: float, width: int = 30) -> str:
    fraction = min(1.0, max(0.0, value / total)) if total > 0 else 0.0
    filled = round(width * fraction)
    return "#" * filled + " " * (width - filled)


def format_progress(snapshot: ProgressSnapshot, estimate: ProgressEstimate | None = None) -> str:
    """Plain-text rendering of a snapshot for terminals and logs."""
    lines = [
        f"Depth:   [{progress_bar(snapshot.total_depth - snapshot.current_depth, snapshot.total_depth)}]",
        f"Breadth: [{progress_bar(snapshot.total_breadth - snapshot.current_breadth, snapshot.total_breadth)}]",
        f"Queries: [{progress_bar(snapshot.completed_queries, snapshot.total_queries)}] {snapshot.completed_queries}/{snapshot.total_queries}",
        f"Overall: {overall_percent(snapshot)}%  {format_eta(estimate or ProgressEstimate(0.0, None))}",
    ]
    if snapshot.current_query:
        lines.append(f"Current: {snapshot.current_query}")
    return "\n".join(lines)
