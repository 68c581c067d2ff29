"""Tests for observability module (RunStore, RunRecord, structured logging)."""

import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from mcp_server_deep_research.observability import (
    RunRecord,
    RunStage,
    RunStatus,
    bind_run_context,
    clear_run_context,
    get_current_run_id,
)
from mcp_server_deep_research.observability.store import MAX_REPORT_CHARS, RunStore


@pytest.fixture
def temp_db():
    """Create a temporary database file for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir) / "test_runs.db"


@pytest.fixture
async def run_store(temp_db):
    """Create and initialize a RunStore with temporary database."""
    store = RunStore(db_path=temp_db)
    await store.initialize()
    return store


def make_run(run_id: str, **kwargs) -> RunRecord:
    return RunRecord(run_id=run_id, query=kwargs.pop("query", "quantum error correction"), depth=2, breadth=4, **kwargs)


class TestRunRecord:
    """Tests for RunRecord model."""

    def test_default_values(self):
        record = make_run("run-123")
        assert record.status == RunStatus.PENDING
        assert record.stage is None
        assert record.completed_queries == 0
        assert record.total_queries == 0
        assert record.report is None
        assert record.error is None

    def test_duration_calculation(self):
        start = datetime.now(timezone.utc) - timedelta(seconds=30)
        end = datetime.now(timezone.utc)
        record = make_run("run-123", started_at=start, completed_at=end)
        assert record.duration_seconds is not None
        assert 29 <= record.duration_seconds <= 31

    def test_duration_none_when_not_started(self):
        assert make_run("run-123").duration_seconds is None

    def test_progress_percent(self):
        record = make_run("run-123", completed_queries=5, total_queries=20)
        assert record.progress_percent == 25.0

    def test_progress_percent_zero_total(self):
        assert make_run("run-123").progress_percent == 0.0

    def test_is_terminal(self):
        assert make_run("r1", status=RunStatus.COMPLETED).is_terminal is True
        assert make_run("r2", status=RunStatus.FAILED).is_terminal is True
        assert make_run("r3", status=RunStatus.CANCELLED).is_terminal is True
        assert make_run("r4", status=RunStatus.RUNNING).is_terminal is False
        assert make_run("r5", status=RunStatus.PENDING).is_terminal is False

    def test_summary(self):
        summary = make_run("run-123", query="x" * 300, completed_queries=3, total_queries=12).summary()
        assert summary["progress"] == "3/12"
        assert len(summary["query"]) == 100
        assert summary["duration_sec"] is None


class TestRunStore:
    """Tests for RunStore."""

    @pytest.mark.anyio
    async def test_create_and_get_run(self, run_store):
        await run_store.create_run(make_run("run-abc", params={"goal": "overview"}))

        retrieved = await run_store.get_run("run-abc")
        assert retrieved is not None
        assert retrieved.query == "quantum error correction"
        assert retrieved.depth == 2
        assert retrieved.breadth == 4
        assert retrieved.params["goal"] == "overview"

    @pytest.mark.anyio
    async def test_get_missing_run(self, run_store):
        assert await run_store.get_run("nope") is None

    @pytest.mark.anyio
    async def test_update_status_to_running(self, run_store):
        await run_store.create_run(make_run("run-456"))
        await run_store.update_status("run-456", RunStatus.RUNNING)

        retrieved = await run_store.get_run("run-456")
        assert retrieved.status == RunStatus.RUNNING
        assert retrieved.started_at is not None
        assert retrieved.completed_at is None

    @pytest.mark.anyio
    async def test_update_status_to_completed(self, run_store):
        await run_store.create_run(make_run("run-789"))
        await run_store.update_status("run-789", RunStatus.RUNNING)
        await run_store.update_status("run-789", RunStatus.COMPLETED, report="# Report", learnings_count=7, sources_count=3)

        retrieved = await run_store.get_run("run-789")
        assert retrieved.status == RunStatus.COMPLETED
        assert retrieved.completed_at is not None
        assert retrieved.report == "# Report"
        assert retrieved.learnings_count == 7
        assert retrieved.sources_count == 3

    @pytest.mark.anyio
    async def test_update_status_to_failed(self, run_store):
        await run_store.create_run(make_run("run-fail"))
        await run_store.update_status("run-fail", RunStatus.FAILED, error="Something went wrong")

        retrieved = await run_store.get_run("run-fail")
        assert retrieved.status == RunStatus.FAILED
        assert retrieved.error == "Something went wrong"

    @pytest.mark.anyio
    async def test_update_progress(self, run_store):
        await run_store.create_run(make_run("run-prog"))
        await run_store.update_progress("run-prog", 5, 20, "[5/20] sub-query", RunStage.RESEARCHING)
        # stage is kept when omitted
        await run_store.update_progress("run-prog", 6, 20, "[6/20] sub-query")

        retrieved = await run_store.get_run("run-prog")
        assert retrieved.completed_queries == 6
        assert retrieved.total_queries == 20
        assert retrieved.progress_message == "[6/20] sub-query"
        assert retrieved.stage == RunStage.RESEARCHING

    @pytest.mark.anyio
    async def test_get_run_history(self, run_store):
        for i in range(5):
            await run_store.create_run(make_run(f"done-{i}", status=RunStatus.COMPLETED))
        for i in range(2):
            await run_store.create_run(make_run(f"live-{i}", status=RunStatus.RUNNING))

        assert len(await run_store.get_run_history(limit=100)) == 7
        assert len(await run_store.get_run_history(limit=3)) == 3
        running = await run_store.get_run_history(status=RunStatus.RUNNING)
        assert {r.run_id for r in running} == {"live-0", "live-1"}

    @pytest.mark.anyio
    async def test_history_newest_first(self, run_store):
        now = datetime.now(timezone.utc)
        await run_store.create_run(make_run("older", created_at=now - timedelta(minutes=5)))
        await run_store.create_run(make_run("newer", created_at=now))

        history = await run_store.get_run_history()
        assert [r.run_id for r in history] == ["newer", "older"]

    @pytest.mark.anyio
    async def test_get_stats(self, run_store):
        for i, status in enumerate([RunStatus.COMPLETED, RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.RUNNING]):
            await run_store.create_run(make_run(f"stat-{i}", status=status))

        stats = await run_store.get_stats()
        assert stats["total_runs"] == 4
        assert stats["running_count"] == 1
        assert stats["by_status"]["completed"] == 2
        assert stats["by_status"]["failed"] == 1

    @pytest.mark.anyio
    async def test_cleanup_old_runs(self, run_store):
        old = datetime.now(timezone.utc) - timedelta(days=10)
        await run_store.create_run(make_run("old-run", status=RunStatus.COMPLETED, created_at=old))
        await run_store.create_run(make_run("recent-run", status=RunStatus.COMPLETED))
        await run_store.create_run(make_run("old-running", status=RunStatus.RUNNING, created_at=old))

        deleted = await run_store.cleanup_old_runs(days=7)
        assert deleted == 1

        run_ids = [r.run_id for r in await run_store.get_run_history(limit=100)]
        assert "old-run" not in run_ids
        assert "recent-run" in run_ids
        assert "old-running" in run_ids

    @pytest.mark.anyio
    async def test_report_truncation(self, run_store):
        await run_store.create_run(make_run("long-report"))
        await run_store.update_status("long-report", RunStatus.COMPLETED, report="x" * (MAX_REPORT_CHARS + 500))

        retrieved = await run_store.get_run("long-report")
        assert len(retrieved.report) == MAX_REPORT_CHARS


class TestRunContext:
    def test_bind_and_clear(self):
        bind_run_context("run-ctx", "a query")
        assert get_current_run_id() == "run-ctx"
        clear_run_context()
        assert get_current_run_id() is None
