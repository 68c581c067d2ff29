"""Tests for structured extraction and repair of generative output."""

import json

import pytest
from conftest import ScriptedGenerator

from mcp_server_deep_research.extraction import (
    ExtractionProtocol,
    LearningsResponse,
    Malformed,
    Parsed,
    UnrecoverableFormat,
    extract_citations,
    iter_json_blocks,
    parse_structured,
    sanitize_report_content,
    scan_citations,
    strip_code_fences,
)
from mcp_server_deep_research.research.schemas import FeedbackResponse, SubQueriesResponse

ANALYSIS = json.dumps(
    {
        "items": [
            {"learning": "Perovskite cells hit 33.9% efficiency in 2023 [[1]]", "url": "https://example.com/pv"},
            {"learning": "INTERNAL PROCESS: thinking", "url": "https://example.com/pv"},
            {"learning": "Step 2: search more"},
            {"learnings": ["Tandem cells dominate records", "OUTLINE: sections to write", "Step 4: verify sources"], "url": " "},
        ]
    }
)


class TestParseStructured:
    def test_direct_parse(self):
        result = parse_structured('{"learnings": ["a"]}', LearningsResponse)
        assert isinstance(result, Parsed)
        assert result.value.learnings == ["a"]

    def test_code_fence(self):
        result = parse_structured('```json\n{"learnings": ["a"]}\n```', LearningsResponse)
        assert isinstance(result, Parsed)

    def test_lexical_extraction_skips_non_matching_blocks(self):
        text = 'Here you go: {"note": "ignore me"} and then {"learnings": ["found"]} done.'
        result = parse_structured(text, LearningsResponse)
        assert isinstance(result, Parsed)
        assert result.value.learnings == ["found"]

    def test_brackets_inside_strings(self):
        text = 'prefix {"learnings": ["uses } and { inside"]} suffix'
        result = parse_structured(text, LearningsResponse)
        assert result.value.learnings == ["uses } and { inside"]

    def test_malformed(self):
        result = parse_structured("no json at all", LearningsResponse)
        assert isinstance(result, Malformed)
        assert not result.ok

    def test_empty(self):
        assert isinstance(parse_structured("   ", LearningsResponse), Malformed)

    def test_sub_query_shapes(self):
        as_objects = parse_structured('[{"query": "a", "researchGoal": "g"}]', SubQueriesResponse)
        as_strings = parse_structured('["a", "b"]', SubQueriesResponse)
        wrapped = parse_structured('{"queries": ["a"]}', SubQueriesResponse)

        assert as_objects.value.queries[0].research_goal == "g"
        assert [q.query for q in as_strings.value.queries] == ["a", "b"]
        assert wrapped.value.queries[0].query == "a"

    def test_sub_query_rejects_blank(self):
        assert isinstance(parse_structured('[""]', SubQueriesResponse), Malformed)

    def test_feedback_requires_questions_key(self):
        assert isinstance(parse_structured('{"analysis": "x"}', FeedbackResponse), Malformed)
        parsed = parse_structured('{"followUpQuestions": [" a? ", ""], "analysis": "x", "confidenceScore": 0.4}', FeedbackResponse)
        assert parsed.value.follow_up_questions == ["a?"]
        assert parsed.value.confidence_score == 0.4


class TestExtractionProtocol:
    @pytest.mark.anyio
    async def test_extract_learnings_sources_and_citations(self, generator: ScriptedGenerator):
        outcome = await ExtractionProtocol(generator).extract(ANALYSIS)

        assert isinstance(outcome, Parsed)
        assert outcome.value.learnings == ["Perovskite cells hit 33.9% efficiency in 2023", "Tandem cells dominate records"]
        assert outcome.value.source_urls == ["https://example.com/pv"]
        assert [c.reference for c in outcome.value.citations] == ["[[1]]"]
        assert generator.calls == []

    @pytest.mark.anyio
    async def test_learnings_capped(self, generator: ScriptedGenerator):
        raw = json.dumps({"learnings": [f"fact {i}" for i in range(20)]})
        outcome = await ExtractionProtocol(generator, max_learnings=4).extract(raw)
        assert len(outcome.value.learnings) == 4

    @pytest.mark.anyio
    async def test_single_repair_pass(self):
        generator = ScriptedGenerator({"analysis": lambda prompt: '{"learnings": ["repaired"]}'})
        outcome = await ExtractionProtocol(generator, repair_attempts=1).extract("Findings: lots of prose")

        assert isinstance(outcome, Parsed)
        assert outcome.repaired
        assert outcome.value.learnings == ["repaired"]
        assert "Previous:\nFindings: lots of prose" in generator.calls[0][1]

    @pytest.mark.anyio
    async def test_unrecoverable_keeps_citations(self):
        generator = ScriptedGenerator({"analysis": lambda prompt: "still prose"})
        outcome = await ExtractionProtocol(generator, repair_attempts=1).extract("See [[2]] for details. More prose")

        assert isinstance(outcome, UnrecoverableFormat)
        assert outcome.value.learnings == []
        assert outcome.value.citations[0].context == "for details"
        assert generator.count("analysis") == 1

    @pytest.mark.anyio
    async def test_no_repair_without_generator(self):
        outcome = await ExtractionProtocol(None).extract_structured("nope", LearningsResponse, default="fallback")
        assert isinstance(outcome, UnrecoverableFormat)
        assert outcome.value == "fallback"

    @pytest.mark.anyio
    async def test_repair_request_failure(self):
        generator = ScriptedGenerator({"analysis": RuntimeError("down")})
        outcome = await ExtractionProtocol(generator).extract("nope")
        assert isinstance(outcome, UnrecoverableFormat)


class TestTextHelpers:
    def test_strip_code_fences(self):
        assert strip_code_fences("```\n[1]\n```") == "[1]"
        assert strip_code_fences("  plain ") == "plain"

    def test_iter_json_blocks(self):
        assert list(iter_json_blocks('x [1, 2] y {"k": 1} {broken')) == [[1, 2], {"k": 1}]
        assert list(iter_json_blocks("no structure")) == []

    def test_extract_citations(self):
        urls, refs = extract_citations("See https://a.io/x and [[1]], again https://a.io/x [[1]] [[2]]")
        assert urls == ["https://a.io/x"]
        assert refs == ["[[1]]", "[[2]]"]
        assert extract_citations("Source: https://a.io/y.")[0] == ["https://a.io/y"]

    def test_scan_citations_empty(self):
        assert scan_citations("") == []

    def test_sanitize_report_content(self):
        text = "Thinking process: hmm\n\nReal content\nStep 3: internal\n[Internal Note: drop] kept"
        assert sanitize_report_content(text) == "Real content\n kept"
