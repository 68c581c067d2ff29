"""Clarifying follow-up questions for a research query."""

import logging
from typing import TYPE_CHECKING, Any

from ..extraction import ExtractionProtocol, Parsed
from .prompts import get_feedback_prompt
from .schemas import FEEDBACK_JSON_SCHEMA, FeedbackResponse

if TYPE_CHECKING:
    from ..cache import SafeCache
    from ..providers import TextGenerator

logger = logging.getLogger(__name__)

DEFAULT_NUM_QUESTIONS = 3
DEFAULT_FEEDBACK_GOAL = "Understand the user's query"

FEEDBACK_DEFAULTS: dict[str, Any] = {
    "num_questions": DEFAULT_NUM_QUESTIONS,
    "research_goal": DEFAULT_FEEDBACK_GOAL,
    "depth": 1,
    "breadth": 1,
}

PARSE_FAILURE_ANALYSIS = "Failed to parse feedback response after repair."
API_FAILURE_ANALYSIS = "Error generating feedback. Please check API key and logs."
INVALID_QUERY_ANALYSIS = "Query is too short to refine; use at least three words."


def is_researchable(query: str) -> bool:
    """A query worth refining has more than 10 characters and at least three words."""
    return len(query) > 10 and len(query.split()) >= 3


async def generate_feedback(
    generator: "TextGenerator",
    query: str,
    num_questions: int = DEFAULT_NUM_QUESTIONS,
    research_goal: str = DEFAULT_FEEDBACK_GOAL,
    depth: int = 1,
    breadth: int = 1,
    existing_learnings: list[str] | None = None,
    cache: "SafeCache[Any] | None" = None,
    repair_attempts: int = 1,
) -> FeedbackResponse:
    """Ask for follow-up questions; failures yield an empty question list with an explanatory analysis."""
    if not is_researchable(query):
        logger.info(f"Skipping feedback for short query: '{query}'")
        return FeedbackResponse(followUpQuestions=[], analysis=INVALID_QUERY_ANALYSIS)

    learnings = existing_learnings or []
    fingerprint = None
    if cache is not None:
        fingerprint = cache.fingerprint(
            {
                "query": query,
                "num_questions": num_questions,
                "research_goal": research_goal,
                "depth": depth,
                "breadth": breadth,
                "existing_learnings": learnings,
            },
            defaults=FEEDBACK_DEFAULTS,
            list_fields=["existing_learnings"],
        )
        cached = cache.get(fingerprint)
        if cached is not None:
            logger.info("Feedback cache hit")
            return cached

    prompt = get_feedback_prompt(query, num_questions, research_goal, depth, breadth, learnings)
    logger.info(f"Generating feedback for query: '{query}'")
    try:
        raw = await generator.generate(prompt, schema=FEEDBACK_JSON_SCHEMA)
    except Exception as e:
        logger.error(f"Feedback generation failed: {e}")
        return FeedbackResponse(followUpQuestions=[], analysis=API_FAILURE_ANALYSIS)

    extraction = ExtractionProtocol(generator, repair_attempts=repair_attempts)
    outcome = await extraction.extract_structured(raw, FeedbackResponse, default=None, schema=FEEDBACK_JSON_SCHEMA)
    if not isinstance(outcome, Parsed):
        return FeedbackResponse(followUpQuestions=[], analysis=PARSE_FAILURE_ANALYSIS)

    feedback = outcome.value
    feedback.follow_up_questions = feedback.follow_up_questions[:num_questions]
    if cache is not None:
        cache.set(fingerprint, feedback)
    return feedback


def combine_query(query: str, questions: list[str], answers: list[str]) -> str:
    """Fold follow-up answers into the research query."""
    pairs = [f"Q: {q}\nA: {a}" for q, a in zip(questions, answers) if a.strip()]
    if not pairs:
        return query
    return f"Initial Query: {query}\nFollow-up Questions and Answers:\n" + "\n".join(pairs)
