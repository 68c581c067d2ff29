"""SQLite-backed history of research runs."""

import asyncio
import json
from datetime import UTC, datetime, timedelta
from pathlib import Path

import aiosqlite

from .models import RunRecord, RunStage, RunStatus

MAX_REPORT_CHARS = 100_000
MAX_ERROR_CHARS = 2000


class RunStore:
    """Async SQLite store for research runs.

    Keeps run status and progress queryable while a run is in flight, and the
    final report afterwards.
    """

    def __init__(self, db_path: Path | None = None):
        """Initialize RunStore.

        Args:
            db_path: Path to SQLite database. Defaults to ~/.config/mcp-server-deep-research/runs.db
        """
        if db_path is None:
            from ..config import get_config_dir

            db_path = get_config_dir() / "runs.db"
        self.db_path = db_path
        self._initialized = False
        self._init_lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Create schema if not exists."""
        if self._initialized:
            return

        async with self._init_lock:
            if self._initialized:
                return

            async with aiosqlite.connect(self.db_path) as db:
                await db.execute("PRAGMA journal_mode = WAL")
                await db.execute("PRAGMA busy_timeout = 5000")

                await db.execute("""
                    CREATE TABLE IF NOT EXISTS runs (
                        run_id TEXT PRIMARY KEY,
                        query TEXT NOT NULL,
                        depth INTEGER NOT NULL,
                        breadth INTEGER NOT NULL,
                        status TEXT NOT NULL,
                        stage TEXT,
                        created_at TEXT NOT NULL,
                        started_at TEXT,
                        completed_at TEXT,
                        completed_queries INTEGER DEFAULT 0,
                        total_queries INTEGER DEFAULT 0,
                        progress_message TEXT,
                        learnings_count INTEGER DEFAULT 0,
                        sources_count INTEGER DEFAULT 0,
                        params TEXT NOT NULL,
                        report TEXT,
                        error TEXT
                    )
                """)
                await db.execute("CREATE INDEX IF NOT EXISTS idx_runs_status ON runs(status)")
                await db.execute("CREATE INDEX IF NOT EXISTS idx_runs_created_at ON runs(created_at)")
                await db.commit()

            self._initialized = True

    async def create_run(self, run: RunRecord) -> None:
        await self.initialize()

        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO runs (
                    run_id, query, depth, breadth, status, stage, created_at, started_at, completed_at,
                    completed_queries, total_queries, progress_message, learnings_count, sources_count,
                    params, report, error
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
                (
                    run.run_id,
                    run.query,
                    run.depth,
                    run.breadth,
                    run.status.value,
                    run.stage.value if run.stage else None,
                    run.created_at.isoformat(),
                    run.started_at.isoformat() if run.started_at else None,
                    run.completed_at.isoformat() if run.completed_at else None,
                    run.completed_queries,
                    run.total_queries,
                    run.progress_message,
                    run.learnings_count,
                    run.sources_count,
                    json.dumps(run.params),
                    run.report,
                    run.error,
                ),
            )
            await db.commit()

    async def update_progress(
        self,
        run_id: str,
        completed: int,
        total: int,
        message: str | None = None,
        stage: RunStage | None = None,
    ) -> None:
        await self.initialize()

        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                UPDATE runs
                SET completed_queries = ?, total_queries = ?,
                    progress_message = ?, stage = COALESCE(?, stage)
                WHERE run_id = ?
            """,
                (completed, total, message, stage.value if stage else None, run_id),
            )
            await db.commit()

    async def update_status(
        self,
        run_id: str,
        status: RunStatus,
        report: str | None = None,
        error: str | None = None,
        learnings_count: int | None = None,
        sources_count: int | None = None,
    ) -> None:
        """Update run status and optionally its outcome."""
        await self.initialize()

        started_at: str | None = None
        completed_at: str | None = None
        if status == RunStatus.RUNNING:
            started_at = datetime.now(UTC).isoformat()
        elif status in (RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED):
            completed_at = datetime.now(UTC).isoformat()

        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                UPDATE runs
                SET status = ?,
                    started_at = COALESCE(started_at, ?),
                    completed_at = COALESCE(completed_at, ?),
                    report = COALESCE(?, report),
                    error = COALESCE(?, error),
                    learnings_count = COALESCE(?, learnings_count),
                    sources_count = COALESCE(?, sources_count)
                WHERE run_id = ?
            """,
                (
                    status.value,
                    started_at,
                    completed_at,
                    report[:MAX_REPORT_CHARS] if report else None,
                    error[:MAX_ERROR_CHARS] if error else None,
                    learnings_count,
                    sources_count,
                    run_id,
                ),
            )
            await db.commit()

    async def get_run(self, run_id: str) -> RunRecord | None:
        await self.initialize()

        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute("SELECT * FROM runs WHERE run_id = ?", (run_id,)) as cursor:
                row = await cursor.fetchone()
                if row:
                    return self._row_to_run(row)
        return None

    async def get_run_history(self, limit: int = 20, status: RunStatus | None = None) -> list[RunRecord]:
        """Most recent runs first, optionally filtered by status."""
        await self.initialize()

        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row

            query = "SELECT * FROM runs"
            params: list = []
            if status:
                query += " WHERE status = ?"
                params.append(status.value)
            query += " ORDER BY created_at DESC LIMIT ?"
            params.append(limit)

            async with db.execute(query, params) as cursor:
                rows = await cursor.fetchall()
                return [self._row_to_run(row) for row in rows]

    async def get_stats(self) -> dict:
        await self.initialize()

        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute("SELECT status, COUNT(*) FROM runs GROUP BY status") as cursor:
                status_counts = {row[0]: row[1] for row in await cursor.fetchall()}

        return {
            "by_status": status_counts,
            "total_runs": sum(status_counts.values()),
            "running_count": status_counts.get(RunStatus.RUNNING.value, 0),
        }

    async def cleanup_old_runs(self, days: int = 7) -> int:
        """Delete finished runs older than N days. Returns count deleted."""
        await self.initialize()

        cutoff = (datetime.now(UTC) - timedelta(days=days)).isoformat()

        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                DELETE FROM runs
                WHERE created_at < ? AND status IN (?, ?, ?)
            """,
                (cutoff, RunStatus.COMPLETED.value, RunStatus.FAILED.value, RunStatus.CANCELLED.value),
            )
            await db.commit()
            return cursor.rowcount

    @staticmethod
    def _row_to_run(row: aiosqlite.Row) -> RunRecord:
        try:
            loaded = json.loads(row["params"])
        except json.JSONDecodeError:
            loaded = {}

        return RunRecord(
            run_id=row["run_id"],
            query=row["query"],
            depth=row["depth"],
            breadth=row["breadth"],
            status=RunStatus(row["status"]),
            stage=RunStage(row["stage"]) if row["stage"] else None,
            created_at=datetime.fromisoformat(row["created_at"]),
            started_at=datetime.fromisoformat(row["started_at"]) if row["started_at"] else None,
            completed_at=datetime.fromisoformat(row["completed_at"]) if row["completed_at"] else None,
            completed_queries=row["completed_queries"],
            total_queries=row["total_queries"],
            progress_message=row["progress_message"],
            learnings_count=row["learnings_count"],
            sources_count=row["sources_count"],
            params=loaded if isinstance(loaded, dict) else {},
            report=row["report"],
            error=row["error"],
        )


_run_store: RunStore | None = None


def get_run_store() -> RunStore:
    """Get the process-wide RunStore."""
    global _run_store
    if _run_store is None:
        _run_store = RunStore()
    return _run_store
