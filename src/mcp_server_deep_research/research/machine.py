"""Recursive research controller with progress tracking.

One ``ResearchTask`` is explored as follows:

1. terminal check: no depth left, or too many sources already visited
2. fan-out: generate ``breadth`` sub-queries (cached by request fingerprint)
3. dispatch: every sub-query runs through this depth's ``BatchExecutor``
4. worker: analysis -> extraction -> optional search -> recurse one level down
5. aggregation: ordered union of the workers' learnings, sources and citations

A failing worker degrades to an empty partial result; only configuration
errors escape ``run``.
"""

import logging
import math
from collections.abc import Sequence
from typing import TYPE_CHECKING, Any
from urllib.parse import urlparse

from ..batch import BatchExecutor, values_or
from ..cache import CacheRegistry
from ..config import AppSettings, get_settings
from ..extraction import LEARNINGS_JSON_SCHEMA, ExtractionProtocol, Parsed, parse_structured
from ..progress import ProgressObserver, ProgressSnapshot, ProgressTracker
from ..providers import generate_batch
from ..resilience import RetryPolicy, call_with_retry
from ..splitter import SemanticTextSplitter, research_splitter, semantic_chunking
from .models import ResearchReport, ResearchResult, ResearchTask, SubQuery
from .prompts import get_analysis_prompt, get_learning_prompt, get_sub_query_prompt
from .report import synthesize_report
from .schemas import CHUNK_LEARNINGS_JSON_SCHEMA, SUB_QUERIES_JSON_SCHEMA, ChunkLearnings, SubQueriesResponse

if TYPE_CHECKING:
    from ..providers import Embedder, TextGenerator
    from ..search import SearchHit, SearchProvider

logger = logging.getLogger(__name__)

DEFAULT_NUM_QUERIES = 3
DEFAULT_RESEARCH_GOAL = "Initial query"
ROOT_RESEARCH_GOAL = "Deep dive research"

# Fields left at these values are omitted from the sub-query fingerprint
SUB_QUERY_DEFAULTS: dict[str, Any] = {
    "num_queries": DEFAULT_NUM_QUERIES,
    "research_goal": DEFAULT_RESEARCH_GOAL,
    "depth": 1,
    "breadth": 1,
}


def total_queries_for(depth: int, breadth: int) -> int:
    """Upper bound on sub-queries a tree of this shape dispatches."""
    total = 0
    level_width = 1
    for _ in range(max(0, depth)):
        level_width *= breadth
        total += level_width
        breadth = math.ceil(breadth / 2)
    return total


class ResearchMachine:
    """Explores a research tree with bounded concurrency and native progress reporting."""

    def __init__(
        self,
        generator: "TextGenerator",
        *,
        settings: AppSettings | None = None,
        caches: CacheRegistry | None = None,
        search: "SearchProvider | None" = None,
        observer: ProgressObserver | None = None,
        embedder: "Embedder | None" = None,
        tools: Sequence[dict[str, Any]] | None = None,
    ):
        self.settings = settings or get_settings()
        self.generator = generator
        self.caches = caches or CacheRegistry(self.settings.cache)
        self.search = search
        self.tools = list(tools or [])

        research = self.settings.research
        self.extraction = ExtractionProtocol(generator, repair_attempts=research.repair_attempts, max_learnings=research.max_learnings)
        self.retry_policy = RetryPolicy(
            timeout=research.request_timeout,
            max_retries=research.max_retries,
            base_delay=research.retry_base_delay,
            max_delay=research.retry_max_delay,
        )

        splitter_settings = self.settings.splitter
        if splitter_settings.semantic:
            self.splitter = SemanticTextSplitter(
                chunk_size=splitter_settings.chunk_size,
                chunk_overlap=splitter_settings.chunk_overlap,
                embedder=embedder,
                similarity_threshold=splitter_settings.similarity_threshold,
                separators=splitter_settings.separators,
                encoding_name=splitter_settings.tiktoken_encoding,
            )
        else:
            self.splitter = research_splitter(splitter_settings)

        self.tracker = ProgressTracker()
        if observer is not None:
            self.tracker.subscribe(observer)

        self._root: ResearchTask | None = None
        self._total_queries = 0
        self._completed = 0
        self._executors: dict[int, BatchExecutor] = {}
        self._chunk_executors: dict[int, BatchExecutor] = {}

    @property
    def completed_queries(self) -> int:
        return self._completed

    @property
    def executors(self) -> dict[int, BatchExecutor]:
        """Per-depth executors of the last run, keyed by depth."""
        return self._executors

    @property
    def chunk_executors(self) -> dict[int, BatchExecutor]:
        """Per-depth executors shared by the chunk-learning calls of that depth's workers."""
        return self._chunk_executors

    async def run(self, task: ResearchTask) -> ResearchResult:
        """Explore ``task`` and everything below it."""
        self._root = task
        self._total_queries = total_queries_for(task.depth, task.breadth)
        self._completed = 0
        self._executors = {}
        self._chunk_executors = {}
        logger.info(f"Research started: '{task.query}' (depth={task.depth}, breadth={task.breadth})")

        result = await self._explore(task)

        logger.info(
            f"Research finished: {len(result.learnings)} learnings, {len(result.visited_sources)} sources, "
            f"{self._completed}/{self._total_queries} queries"
        )
        return result

    def _executor_for(self, depth: int) -> BatchExecutor:
        # One budget per recursion level: a worker never waits on a slot from its own pool.
        if depth not in self._executors:
            self._executors[depth] = BatchExecutor(self.settings.research.concurrency_limit, name=f"depth-{depth}")
        return self._executors[depth]

    def _chunk_executor_for(self, depth: int) -> BatchExecutor:
        if depth not in self._chunk_executors:
            self._chunk_executors[depth] = BatchExecutor(self.settings.research.concurrency_limit, name=f"chunks-{depth}")
        return self._chunk_executors[depth]

    async def _explore(self, task: ResearchTask) -> ResearchResult:
        limit = self.settings.research.visited_source_limit
        if task.depth <= 0:
            logger.debug("Reached research depth limit")
            return ResearchResult()
        if len(task.visited_sources) > limit:
            logger.info(f"Reached visited source limit ({len(task.visited_sources)} > {limit})")
            return ResearchResult()

        sub_queries = await self.generate_sub_queries(
            task.query,
            num_queries=task.breadth,
            learnings=task.learnings,
            research_goal=task.research_goal,
            initial_query=task.initial_query,
            depth=task.depth,
            breadth=task.breadth,
        )
        if not sub_queries:
            logger.warning(f"No sub-queries generated for '{task.query}'")
            return ResearchResult()

        executor = self._executor_for(task.depth)
        results = await executor.run(sub_queries, lambda sq: self._process(task, sq))
        return ResearchResult.merge(values_or(results, lambda failure: ResearchResult()))

    async def _process(self, task: ResearchTask, sub_query: SubQuery) -> ResearchResult:
        """Worker for one sub-query. Never raises."""
        try:
            return await self._research_sub_query(task, sub_query)
        except Exception as e:
            logger.error(f"Error processing query '{sub_query.query}': {e}")
            return ResearchResult()
        finally:
            await self._advance(task, sub_query)

    async def _research_sub_query(self, task: ResearchTask, sub_query: SubQuery) -> ResearchResult:
        if sub_query.query in task.visited_sources:
            logger.info(f"Already visited '{sub_query.query}', skipping")
            return ResearchResult()

        logger.info(f"Processing sub-query: {sub_query.query}")
        prompt = get_analysis_prompt(sub_query.query, sub_query.research_goal, task.learnings)
        raw = await self.generator.generate(prompt, schema=LEARNINGS_JSON_SCHEMA, tools=self.tools)
        outcome = await self.extraction.extract(raw)
        extracted = outcome.value

        new_learnings = list(extracted.learnings)
        new_sources = list(extracted.source_urls)
        if self.search is not None:
            hits = await self.search_hits(sub_query.query)
            new_sources.extend(h.url for h in hits)
            new_learnings.extend(await self.learn_from_hits(sub_query.query, hits, task.depth))

        own = ResearchResult(
            learnings=list(dict.fromkeys(new_learnings)),
            visited_sources=list(dict.fromkeys(new_sources)),
            citations=list(extracted.citations),
        )
        if task.depth - 1 <= 0:
            return own

        child = task.child(
            sub_query.query,
            learnings=task.learnings + own.learnings,
            visited_sources=task.visited_sources + own.visited_sources,
        )
        logger.info(f"Researching deeper: depth={child.depth}, breadth={child.breadth}")
        deeper = await self._explore(child)
        return ResearchResult.merge([own, deeper])

    async def _advance(self, task: ResearchTask, sub_query: SubQuery) -> None:
        self._completed += 1
        root = self._root or task
        snapshot = ProgressSnapshot(
            current_depth=task.depth,
            total_depth=root.depth,
            current_breadth=task.breadth,
            total_breadth=root.breadth,
            completed_queries=self._completed,
            total_queries=max(self._total_queries, self._completed),
            current_query=sub_query.query,
        )
        await self.tracker.update(snapshot)

    async def generate_sub_queries(
        self,
        query: str,
        num_queries: int = DEFAULT_NUM_QUERIES,
        learnings: list[str] | None = None,
        research_goal: str = DEFAULT_RESEARCH_GOAL,
        initial_query: str | None = None,
        depth: int = 1,
        breadth: int = 1,
    ) -> list[SubQuery]:
        """Ask for ``num_queries`` follow-up search queries; ``[]`` on any failure."""
        learnings = learnings or []
        initial_query = initial_query or query
        cache = self.caches.sub_queries
        fingerprint = cache.fingerprint(
            {
                "query": query,
                "num_queries": num_queries,
                "research_goal": research_goal,
                "initial_query": initial_query,
                "depth": depth,
                "breadth": breadth,
                "learnings": learnings,
            },
            defaults={**SUB_QUERY_DEFAULTS, "initial_query": query},
            list_fields=["learnings"],
        )
        cached = cache.get(fingerprint)
        if cached is not None:
            logger.info(f"Sub-query cache hit for '{query}'")
            return list(cached)

        prompt = get_sub_query_prompt(query, num_queries, learnings, research_goal, initial_query, depth, breadth)
        try:
            raw = await self.generator.generate(prompt, schema=SUB_QUERIES_JSON_SCHEMA, tools=self.tools)
        except Exception as e:
            logger.error(f"Sub-query generation failed for '{query}': {e}")
            return []

        outcome = await self.extraction.extract_structured(raw, SubQueriesResponse, default=None, schema=SUB_QUERIES_JSON_SCHEMA)
        if not isinstance(outcome, Parsed):
            return []

        sub_queries = [SubQuery(query=item.query, research_goal=item.research_goal or research_goal) for item in outcome.value.queries][:num_queries]
        cache.set(fingerprint, sub_queries)
        logger.info(f"Generated {len(sub_queries)} sub-queries for '{query}'")
        return sub_queries

    async def search_hits(self, query: str) -> "list[SearchHit]":
        """Search with retry; a search that still fails yields no hits."""
        try:
            return await call_with_retry(lambda: self.search.search(query), self.retry_policy, description=f"search '{query}'")
        except Exception as e:
            logger.warning(f"Search failed for '{query}', continuing without sources: {e}")
            return []

    async def learn_from_hits(self, query: str, hits: "list[SearchHit]", depth: int = 1) -> list[str]:
        """Chunk fetched search content and extract up to ``num_learnings`` learnings from it.

        The chunk calls of every worker at ``depth`` share one executor, so they stay under
        the configured ceiling together.
        """
        contents = [h.content for h in hits if h.content]
        if not contents:
            return []

        chunks = await semantic_chunking("\n\n".join(contents), self.splitter)
        if not chunks:
            return []

        first_url = hits[0].url
        title = urlparse(first_url).hostname or first_url
        prompts = [get_learning_prompt(query, title, first_url, chunk.text) for chunk in chunks]
        responses = await generate_batch(
            self.generator,
            prompts,
            self.settings.research.concurrency_limit,
            schema=CHUNK_LEARNINGS_JSON_SCHEMA,
            tools=self.tools,
            executor=self._chunk_executor_for(depth),
        )

        learnings: list[str] = []
        for text in responses:
            if text is None:
                continue
            parsed = parse_structured(text, ChunkLearnings)
            if isinstance(parsed, Parsed):
                learnings.extend(s.strip() for s in parsed.value.learnings if s.strip())
        logger.debug(f"Ran '{query}': {len(chunks)} chunks, {len(learnings)} learnings from {len(hits)} hits")
        return learnings[: self.settings.research.num_learnings]


async def deep_research(
    generator: "TextGenerator",
    query: str,
    depth: int | None = None,
    breadth: int | None = None,
    *,
    learnings: list[str] | None = None,
    visited_sources: list[str] | None = None,
    research_goal: str = ROOT_RESEARCH_GOAL,
    settings: AppSettings | None = None,
    caches: CacheRegistry | None = None,
    search: "SearchProvider | None" = None,
    observer: ProgressObserver | None = None,
) -> ResearchResult:
    """Run one research tree for ``query`` with clamped depth and breadth."""
    settings = settings or get_settings()
    machine = ResearchMachine(generator, settings=settings, caches=caches, search=search, observer=observer)
    task = ResearchTask(
        query=query,
        research_goal=research_goal,
        depth=settings.research.clamp_depth(depth),
        breadth=settings.research.clamp_breadth(breadth),
        learnings=list(learnings or []),
        visited_sources=list(visited_sources or []),
    )
    return await machine.run(task)


async def research(
    generator: "TextGenerator",
    query: str,
    depth: int | None = None,
    breadth: int | None = None,
    *,
    existing_learnings: list[str] | None = None,
    settings: AppSettings | None = None,
    caches: CacheRegistry | None = None,
    search: "SearchProvider | None" = None,
    observer: ProgressObserver | None = None,
) -> tuple[ResearchResult, ResearchReport]:
    """Run the research tree, then synthesize the final report from its findings."""
    caches = caches or CacheRegistry((settings or get_settings()).cache)
    result = await deep_research(
        generator,
        query,
        depth,
        breadth,
        learnings=existing_learnings,
        settings=settings,
        caches=caches,
        search=search,
        observer=observer,
    )
    logger.info("Deep research completed, generating final report")
    report = await synthesize_report(generator, query, result.learnings, result.visited_sources, caches.reports)
    return result, report
