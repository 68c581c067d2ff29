"""MCP server exposing recursive deep research as tools with native background task support."""

import asyncio
import json
import logging
import os
import sys
import time
import uuid
from pathlib import Path


def _configure_stdio_logging() -> None:
    """Configure logging for stdio MCP mode - all logs MUST go to stderr.

    In stdio mode, stdout is reserved exclusively for JSON-RPC messages.
    Any logging or print() to stdout corrupts the protocol stream.
    """
    os.environ.setdefault("BROWSER_USE_LOGGING_LEVEL", "warning")

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setFormatter(logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s"))

    root = logging.getLogger()
    root.handlers = [stderr_handler]
    root.setLevel(logging.WARNING)

    for logger_name in [
        "httpx",
        "httpcore",
        "asyncio",
        "browser_use",
        "openai",
        "anthropic",
        "google",
    ]:
        dep_logger = logging.getLogger(logger_name)
        dep_logger.setLevel(logging.WARNING)
        dep_logger.handlers = [stderr_handler]
        dep_logger.propagate = False


# Configure logging BEFORE importing browser_use and other noisy dependencies
_configure_stdio_logging()

# ruff: noqa: E402 - Intentional late imports after logging configuration
from fastmcp import FastMCP
from fastmcp.dependencies import CurrentContext, Progress
from fastmcp.server.context import Context
from fastmcp.server.tasks.config import TaskConfig

from . import __version__
from .cache import CacheRegistry, hash_key
from .config import settings
from .exceptions import LLMProviderError
from .observability import RunRecord, RunStage, RunStatus, bind_run_context, clear_run_context, get_run_logger, setup_structured_logging
from .observability.store import get_run_store
from .progress import ProgressSnapshot, overall_percent
from .providers import create_generator, get_embedder
from .research.machine import ROOT_RESEARCH_GOAL, ResearchMachine, total_queries_for
from .research.models import ResearchTask
from .research.prompts import get_system_prompt
from .research.report import synthesize_report
from .search import get_search_provider
from .utils import save_report, write_report_file

logger = logging.getLogger("mcp_server_deep_research")
logger.setLevel(getattr(logging, settings.server.logging_level.upper(), logging.INFO))

# Running research pipelines, for cancellation
_running_tasks: dict[str, asyncio.Task] = {}


def research_payload(report: str, learnings: list[str], visited_sources: list[str], run_id: str | None = None) -> str:
    """JSON result of a research run."""
    payload = {
        "report": report,
        "metadata": {
            "learnings": learnings,
            "visited_sources": visited_sources,
            "stats": {"total_learnings": len(learnings), "total_sources": len(visited_sources)},
        },
    }
    if run_id:
        payload["run_id"] = run_id
    return json.dumps(payload, indent=2)


def serve() -> FastMCP:
    """Create and configure MCP server with background task support."""
    setup_structured_logging(settings.server.logging_level)

    server = FastMCP("mcp_server_deep_research")
    caches = CacheRegistry(settings.cache)

    @server.tool(task=TaskConfig(mode="optional"))
    async def run_deep_research(
        query: str,
        depth: int | None = None,
        breadth: int | None = None,
        existing_learnings: list[str] | None = None,
        goal: str | None = None,
        save_to_file: str | None = None,
        ctx: Context = CurrentContext(),
        progress: Progress = Progress(),
    ) -> str:
        """
        Run recursive deep research on a query and synthesize a report.

        The query fans out into sub-queries, each researched and mined for
        learnings, recursing with half the breadth until the depth budget is
        spent. Runs as a background task if the client requests it; progress is
        streamed via the MCP task protocol.

        Args:
            query: The research question to investigate
            depth: Recursion depth (1-5, default from settings)
            breadth: Sub-queries per level (1-10, default from settings)
            existing_learnings: Learnings to build upon
            goal: Optional goal that steers sub-query generation
            save_to_file: Optional file path to save the report

        Returns:
            JSON with the markdown report, learnings, visited sources and stats
        """
        depth = settings.research.clamp_depth(depth)
        breadth = settings.research.clamp_breadth(breadth)
        learnings = list(existing_learnings or [])

        cache_key = hash_key({"query": query, "depth": depth, "breadth": breadth, "existing_learnings": learnings, "goal": goal})
        cached = caches.results.get(cache_key)
        if cached is not None:
            logger.info(f"[mcp-cache] HIT {cache_key[:8]}")
            await ctx.info("Returning cached research result")
            return cached

        # --- Run Tracking Setup ---
        run_id = str(uuid.uuid4())
        run_store = get_run_store()
        total = total_queries_for(depth, breadth)
        await run_store.create_run(
            RunRecord(
                run_id=run_id,
                query=query,
                depth=depth,
                breadth=breadth,
                total_queries=total,
                params={"existing_learnings": len(learnings), "goal": goal, "save_to_file": save_to_file},
            )
        )
        bind_run_context(run_id, query)
        run_logger = get_run_logger()
        run_logger.info("run_created", depth=depth, breadth=breadth)

        try:
            generator = create_generator(settings, cache=caches.provider, system_prompt=get_system_prompt())
        except LLMProviderError as e:
            logger.error(f"LLM initialization failed: {e}")
            await run_store.update_status(run_id, RunStatus.FAILED, error=str(e))
            clear_run_context()
            return f"Error: {e}"

        await run_store.update_status(run_id, RunStatus.RUNNING)
        await run_store.update_progress(run_id, 0, total, "Initializing...", RunStage.INITIALIZING)
        await progress.set_total(total + 1)
        await ctx.info(f"Researching: {query}")

        async def on_progress(snapshot: ProgressSnapshot) -> None:
            message = f"[{snapshot.completed_queries}/{snapshot.total_queries}] {snapshot.current_query or ''}".strip()
            await progress.set_message(message)
            await progress.increment()
            await run_store.update_progress(
                run_id, snapshot.completed_queries, snapshot.total_queries, message, RunStage.RESEARCHING
            )
            run_logger.info("run_progress", completed=snapshot.completed_queries, overall=overall_percent(snapshot))

        embedder = get_embedder(settings.embedding) if settings.splitter.semantic else None
        machine = ResearchMachine(
            generator,
            settings=settings,
            caches=caches,
            search=get_search_provider(settings.search),
            observer=on_progress,
            embedder=embedder,
        )
        task = ResearchTask(
            query=query,
            research_goal=goal or ROOT_RESEARCH_GOAL,
            depth=depth,
            breadth=breadth,
            learnings=learnings,
        )

        async def pipeline():
            result = await machine.run(task)
            await progress.set_message("Writing final report...")
            await run_store.update_progress(run_id, machine.completed_queries, total, "Writing final report", RunStage.REPORTING)
            report = await synthesize_report(
                generator,
                query,
                result.learnings,
                result.visited_sources,
                caches.reports,
                repair_attempts=settings.research.repair_attempts,
            )
            return result, report

        try:
            research_task = asyncio.create_task(pipeline())
            _running_tasks[run_id] = research_task
            try:
                result, report = await research_task
            finally:
                _running_tasks.pop(run_id, None)

            if save_to_file:
                write_report_file(save_to_file, report.markdown)
                await ctx.info(f"Saved to: {save_to_file}")
            elif settings.research.save_directory or settings.server.results_dir:
                saved_path = save_report(
                    report.markdown,
                    prefix=f"research_{query[:20]}",
                    metadata={"query": query, "depth": depth, "breadth": breadth, "run_id": run_id},
                    results_dir=Path(settings.research.save_directory).expanduser() if settings.research.save_directory else None,
                )
                await ctx.info(f"Saved to: {saved_path.name}")
            await progress.increment()

            payload = research_payload(report.markdown, result.learnings, result.visited_sources, run_id)
            caches.results.set(cache_key, payload)
            await run_store.update_status(
                run_id,
                RunStatus.COMPLETED,
                report=report.markdown,
                learnings_count=len(result.learnings),
                sources_count=len(result.visited_sources),
            )
            run_logger.info("run_completed", learnings=len(result.learnings), sources=len(result.visited_sources))
            clear_run_context()
            return payload

        except asyncio.CancelledError:
            await run_store.update_status(run_id, RunStatus.CANCELLED, error="Cancelled by user")
            run_logger.info("run_cancelled")
            clear_run_context()
            raise

        except Exception as e:
            logger.error(f"Deep research failed: {e}")
            await run_store.update_status(run_id, RunStatus.FAILED, error=str(e))
            run_logger.error("run_failed", error=str(e))
            clear_run_context()
            return research_payload(f"Error during deep research: {e}", [], [], run_id)

    @server.resource("resource://capabilities", mime_type="application/json")
    def capabilities() -> str:
        """Feature flags and provider configuration."""
        return json.dumps(
            {
                "name": "deep-research",
                "version": __version__,
                "provider": settings.llm.provider,
                "model": settings.llm.model_name,
                "search_enabled": get_search_provider(settings.search) is not None,
                "semantic_splitting": settings.splitter.semantic,
                "embedding_provider": settings.embedding.provider,
                "concurrency_limit": settings.research.concurrency_limit,
                "provider_cache_enabled": settings.cache.provider_cache_enabled,
                "provider_cache_ttl_seconds": settings.cache.provider_ttl,
            }
        )

    # --- Observability Tools ---

    @server.tool()
    async def health_check() -> str:
        """
        Health check endpoint with process stats and running research information.

        Returns:
            JSON object with server health status, running runs, and statistics
        """
        import psutil

        run_store = get_run_store()
        running = await run_store.get_run_history(limit=50, status=RunStatus.RUNNING)
        stats = await run_store.get_stats()
        memory_info = psutil.Process().memory_info()

        return json.dumps(
            {
                "status": "healthy",
                "uptime_seconds": round(time.time() - _server_start_time, 1),
                "memory_mb": round(memory_info.rss / 1024 / 1024, 1),
                "running_runs": len(running),
                "runs": [
                    {
                        "run_id": r.run_id[:8],
                        "stage": r.stage.value if r.stage else None,
                        "progress": f"{r.completed_queries}/{r.total_queries}",
                        "message": r.progress_message,
                    }
                    for r in running
                ],
                "caches": {c.name: len(c.cache) for c in caches.all()},
                "stats": stats,
            },
            indent=2,
        )

    @server.tool()
    async def run_list(limit: int = 20, status_filter: str | None = None) -> str:
        """
        List recent research runs with optional filtering.

        Args:
            limit: Maximum number of runs to return (default 20)
            status_filter: Optional status filter (pending, running, completed, failed, cancelled)

        Returns:
            JSON list of recent runs
        """
        status = None
        if status_filter:
            try:
                status = RunStatus(status_filter)
            except ValueError:
                return f"Error: Invalid status '{status_filter}'. Use: pending, running, completed, failed, cancelled"

        runs = await get_run_store().get_run_history(limit=limit, status=status)
        return json.dumps({"runs": [r.summary() for r in runs], "count": len(runs)}, indent=2)

    @server.tool()
    async def run_get(run_id: str) -> str:
        """
        Get full details of a research run.

        Args:
            run_id: Run ID (full or prefix)

        Returns:
            JSON object with run details, progress and report/error
        """
        run_store = get_run_store()
        run = await run_store.get_run(run_id)
        if not run:
            for candidate in await run_store.get_run_history(limit=100):
                if candidate.run_id.startswith(run_id):
                    run = candidate
                    break

        if not run:
            return f"Error: Run '{run_id}' not found"

        return json.dumps(
            {
                "run_id": run.run_id,
                "query": run.query,
                "depth": run.depth,
                "breadth": run.breadth,
                "status": run.status.value,
                "stage": run.stage.value if run.stage else None,
                "progress": {
                    "completed": run.completed_queries,
                    "total": run.total_queries,
                    "message": run.progress_message,
                    "percent": run.progress_percent,
                },
                "timestamps": {
                    "created": run.created_at.isoformat(),
                    "started": run.started_at.isoformat() if run.started_at else None,
                    "completed": run.completed_at.isoformat() if run.completed_at else None,
                    "duration_sec": round(run.duration_seconds, 1) if run.duration_seconds else None,
                },
                "stats": {"learnings": run.learnings_count, "sources": run.sources_count},
                "params": run.params,
                "report": run.report[:2000] if run.report else None,
                "error": run.error,
            },
            indent=2,
        )

    @server.tool()
    async def run_cancel(run_id: str) -> str:
        """
        Cancel a running research run.

        Args:
            run_id: Run ID (full or prefix match)

        Returns:
            JSON with success status and message
        """
        matched_id = next((full_id for full_id in _running_tasks if full_id.startswith(run_id)), None)
        if not matched_id:
            return json.dumps({"success": False, "error": f"Run '{run_id}' not found or not running"})

        _running_tasks[matched_id].cancel()
        await get_run_store().update_status(matched_id, RunStatus.CANCELLED, error="Cancelled by user")
        return json.dumps({"success": True, "run_id": matched_id[:8], "message": "Run cancelled"})

    return server


_server_start_time = time.time()


server_instance = serve()


def main() -> None:
    """Entry point for MCP server."""
    transport = settings.server.transport

    logger.info(f"Starting MCP deep-research server (provider: {settings.llm.provider}, transport: {transport})")
    if transport == "stdio":
        server_instance.run()
    elif transport in ("streamable-http", "sse"):
        logger.info(f"HTTP server at http://{settings.server.host}:{settings.server.port}/mcp")
        server_instance.run(transport=transport, host=settings.server.host, port=settings.server.port)
    else:
        raise ValueError(f"Unknown transport: {transport}")


if __name__ == "__main__":
    main()
