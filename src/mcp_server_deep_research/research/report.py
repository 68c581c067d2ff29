"""Final report synthesis from research learnings.

The outline, body sections, summary and title are separate schema-constrained
calls. Each falls back to a fixed placeholder when generation or parsing fails,
so a report is always produced.
"""

import logging
from typing import TYPE_CHECKING, Any, TypeVar

from pydantic import BaseModel

from ..extraction import ExtractionProtocol, Parsed, extract_citations, sanitize_report_content
from .models import ResearchReport
from .prompts import (
    INTRODUCTION_TEMPLATE,
    LIMITATIONS_TEXT,
    METHODOLOGY_TEXT,
    get_outline_prompt,
    get_sections_prompt,
    get_summary_prompt,
    get_title_prompt,
)
from .schemas import OutlineResponse, SectionsResponse, SummaryResponse, TitleResponse

if TYPE_CHECKING:
    from ..cache import SafeCache
    from ..providers import TextGenerator

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

OUTLINE_FALLBACK = "Outline could not be generated."
REPORT_FALLBACK = "Report could not be generated."
SUMMARY_FALLBACK = "Summary could not be generated."
TITLE_FALLBACK = "Untitled Research Report"


async def _generate_structured(
    extraction: ExtractionProtocol,
    prompt: str,
    model: type[M],
    step: str,
) -> M | None:
    schema = model.model_json_schema()
    try:
        raw = await extraction.generator.generate(prompt, schema=schema)
    except Exception as e:
        logger.error(f"Report step '{step}' failed: {e}")
        return None
    outcome = await extraction.extract_structured(raw, model, default=None, schema=schema)
    return outcome.value if isinstance(outcome, Parsed) else None


async def generate_outline(extraction: ExtractionProtocol, prompt: str, learnings: list[str]) -> str:
    parsed = await _generate_structured(extraction, get_outline_prompt(prompt, learnings), OutlineResponse, "outline")
    outline = [line.strip() for line in parsed.outline if line.strip()] if parsed else []
    return "\n".join(outline) if outline else OUTLINE_FALLBACK


async def write_report_from_outline(extraction: ExtractionProtocol, outline: str, learnings: list[str]) -> str:
    clean_outline = sanitize_report_content(outline)
    clean_learnings = [sanitize_report_content(learning) for learning in learnings]
    parsed = await _generate_structured(extraction, get_sections_prompt(clean_outline, clean_learnings), SectionsResponse, "sections")
    if parsed is None:
        return REPORT_FALLBACK

    body = "\n\n".join(s for s in parsed.sections if s.strip()) or REPORT_FALLBACK
    if parsed.citations:
        body += "\n\nReferences:\n" + "\n".join(f"- {c}" for c in parsed.citations)
    return body


async def generate_summary(extraction: ExtractionProtocol, learnings: list[str]) -> str:
    parsed = await _generate_structured(extraction, get_summary_prompt(learnings), SummaryResponse, "summary")
    return parsed.summary if parsed and parsed.summary.strip() else SUMMARY_FALLBACK


async def generate_title(extraction: ExtractionProtocol, prompt: str, learnings: list[str]) -> str:
    parsed = await _generate_structured(extraction, get_title_prompt(prompt, learnings), TitleResponse, "title")
    return parsed.title.strip() if parsed and parsed.title.strip() else TITLE_FALLBACK


def collect_references(body: str, visited_sources: list[str]) -> list[str]:
    """Visited sources followed by any other URL the body cites."""
    cited_urls, _ = extract_citations(body)
    return list(dict.fromkeys([*visited_sources, *cited_urls]))


def assemble_report(
    prompt: str,
    title: str,
    summary: str,
    outline: str,
    body: str,
    learnings: list[str],
    visited_sources: list[str],
) -> str:
    """Render the report sections as markdown."""
    key_learnings = "\n".join(f"- {learning}" for learning in learnings)
    references = "\n".join(f"- {url}" for url in collect_references(body, visited_sources))
    return f"""# {title}

## Abstract
{summary}

## Table of Contents
{outline}

## Introduction
{INTRODUCTION_TEMPLATE.format(prompt=prompt)}

## Body
{body}

## Methodology
{METHODOLOGY_TEXT}

## Limitations
{LIMITATIONS_TEXT}

## Key Learnings
{key_learnings}

## References
{references}
"""


def report_fingerprint_descriptor(prompt: str, learnings: list[str], visited_sources: list[str]) -> dict[str, Any]:
    return {"prompt": prompt, "learnings": learnings, "visited_sources": visited_sources}


async def synthesize_report(
    generator: "TextGenerator",
    prompt: str,
    learnings: list[str],
    visited_sources: list[str],
    cache: "SafeCache[Any] | None" = None,
    repair_attempts: int = 1,
) -> ResearchReport:
    """Build the full report; cached by prompt plus digests of learnings and sources."""
    fingerprint = None
    if cache is not None:
        fingerprint = cache.fingerprint(
            report_fingerprint_descriptor(prompt, learnings, visited_sources),
            list_fields=["learnings", "visited_sources"],
        )
        cached = cache.get(fingerprint)
        if cached is not None:
            logger.info("Returning cached report")
            return cached

    extraction = ExtractionProtocol(generator, repair_attempts=repair_attempts)

    logger.info("Generating outline...")
    outline = await generate_outline(extraction, prompt, learnings)
    logger.info("Writing report from outline...")
    body = await write_report_from_outline(extraction, outline, learnings)
    logger.info("Generating summary...")
    summary = await generate_summary(extraction, learnings)
    logger.info("Generating title...")
    title = await generate_title(extraction, prompt, learnings)

    report = ResearchReport(
        title=title,
        abstract=summary,
        outline=outline,
        body=body,
        learnings=list(learnings),
        references=collect_references(body, visited_sources),
        markdown=assemble_report(prompt, title, summary, outline, body, learnings, visited_sources),
    )
    if cache is not None:
        cache.set(fingerprint, report)
    return report


async def write_final_report(
    generator: "TextGenerator",
    prompt: str,
    learnings: list[str],
    visited_sources: list[str],
    cache: "SafeCache[Any] | None" = None,
) -> str:
    """Markdown of the synthesized report for ``prompt``."""
    report = await synthesize_report(generator, prompt, learnings, visited_sources, cache)
    return report.markdown
