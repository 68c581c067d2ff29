"""Pytest configuration and fixtures for mcp-server-deep-research tests."""

import json
import re
from typing import Any

import pytest

from mcp_server_deep_research.extraction import LEARNINGS_JSON_SCHEMA
from mcp_server_deep_research.research.schemas import CHUNK_LEARNINGS_JSON_SCHEMA, FEEDBACK_JSON_SCHEMA, SUB_QUERIES_JSON_SCHEMA

_TOPIC_RE = re.compile(r'^Research topic: "(.*)"$', re.MULTILINE)
_COUNT_RE = re.compile(r"JSON array of (\d+) objects")
_QUERY_RE = re.compile(r"^Query: (.*)$", re.MULTILINE)


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "e2e: End-to-end tests requiring real API keys")
    config.addinivalue_line("markers", "integration: Tests that talk to real search or embedding services")
    config.addinivalue_line("markers", "slow: Tests that take longer to run")


def slug(text: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")


class ScriptedGenerator:
    """TextGenerator double that answers according to the requested response schema.

    Sub-query prompts get ``<topic> / q<i>`` queries, analysis prompts one learning
    and one source per query, report prompts fixed sections. ``overrides`` maps a
    schema kind to a callable ``(prompt) -> str`` (or an exception to raise).
    """

    def __init__(self, overrides: dict[str, Any] | None = None):
        self.overrides = overrides or {}
        self.calls: list[tuple[str, str]] = []

    @staticmethod
    def kind(schema: dict[str, Any] | None) -> str:
        if schema is None:
            return "text"
        if schema is SUB_QUERIES_JSON_SCHEMA:
            return "sub_queries"
        if schema is LEARNINGS_JSON_SCHEMA:
            return "analysis"
        if schema is CHUNK_LEARNINGS_JSON_SCHEMA:
            return "chunk"
        if schema is FEEDBACK_JSON_SCHEMA:
            return "feedback"
        return {
            "OutlineResponse": "outline",
            "SectionsResponse": "sections",
            "SummaryResponse": "summary",
            "TitleResponse": "title",
        }.get(schema.get("title", ""), "unknown")

    def count(self, kind: str) -> int:
        return sum(1 for k, _ in self.calls if k == kind)

    async def generate(self, prompt: str, *, schema: dict[str, Any] | None = None, tools=None) -> str:
        kind = self.kind(schema)
        self.calls.append((kind, prompt))

        override = self.overrides.get(kind)
        if isinstance(override, BaseException):
            raise override
        if override is not None:
            return override(prompt)

        match kind:
            case "sub_queries":
                topic = _TOPIC_RE.search(prompt).group(1)
                n = int(_COUNT_RE.search(prompt).group(1))
                return json.dumps([{"query": f"{topic} / q{i}", "researchGoal": f"goal {i}"} for i in range(n)])
            case "analysis":
                query = _QUERY_RE.search(prompt).group(1)
                return json.dumps({"items": [{"learning": f"Finding about {query}", "url": f"https://example.com/{slug(query)}"}]})
            case "chunk":
                return json.dumps({"learnings": ["Chunk learning"], "followUpQuestions": []})
            case "feedback":
                return json.dumps({"followUpQuestions": ["Which region?", "Which period?", "Which sources?"], "analysis": "Broad query"})
            case "outline":
                return json.dumps({"outline": ["Background", "Findings"]})
            case "sections":
                return json.dumps({"sections": ["## Background\nText", "## Findings\nMore text"], "citations": ["[[1]] Example"]})
            case "summary":
                return json.dumps({"summary": "A short abstract."})
            case "title":
                return json.dumps({"title": "Scripted Report"})
        return "plain text"


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def generator() -> ScriptedGenerator:
    return ScriptedGenerator()
