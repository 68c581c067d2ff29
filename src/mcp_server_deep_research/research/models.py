"""Data models for recursive research runs."""

import math
from dataclasses import dataclass, field

from ..extraction import Citation


@dataclass(frozen=True)
class SubQuery:
    """A generated search query and the goal it serves."""

    query: str
    research_goal: str


@dataclass
class ResearchTask:
    """One node of the research tree."""

    query: str
    research_goal: str
    depth: int
    breadth: int
    learnings: list[str] = field(default_factory=list)
    visited_sources: list[str] = field(default_factory=list)
    initial_query: str | None = None

    def __post_init__(self) -> None:
        if self.initial_query is None:
            self.initial_query = self.query

    def child(self, query: str, learnings: list[str], visited_sources: list[str]) -> "ResearchTask":
        """Next level down: one less depth, half the breadth (rounded up)."""
        return ResearchTask(
            query=query,
            research_goal=self.research_goal,
            depth=self.depth - 1,
            breadth=math.ceil(self.breadth / 2),
            learnings=list(learnings),
            visited_sources=list(visited_sources),
            initial_query=self.initial_query,
        )


@dataclass
class ResearchResult:
    """What one research subtree found."""

    learnings: list[str] = field(default_factory=list)
    visited_sources: list[str] = field(default_factory=list)
    citations: list[Citation] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not (self.learnings or self.visited_sources or self.citations)

    @classmethod
    def merge(cls, results: list["ResearchResult"]) -> "ResearchResult":
        """Ordered, deduplicated union into fresh collections."""
        learnings = [text for r in results for text in r.learnings if text]
        sources = [s for r in results for s in r.visited_sources if s]
        citations = [c for r in results for c in r.citations]
        return cls(
            learnings=list(dict.fromkeys(learnings)),
            visited_sources=list(dict.fromkeys(sources)),
            citations=list(dict.fromkeys(citations)),
        )

    def to_dict(self) -> dict:
        return {
            "learnings": self.learnings,
            "visited_sources": self.visited_sources,
            "citations": [{"reference": c.reference, "context": c.context} for c in self.citations],
        }


@dataclass
class ResearchReport:
    """A synthesized report and the pieces it was assembled from."""

    title: str
    abstract: str
    outline: str
    body: str
    learnings: list[str]
    references: list[str]
    markdown: str
