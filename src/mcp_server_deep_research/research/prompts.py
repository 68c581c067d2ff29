"""LLM prompts for deep research."""

from datetime import datetime

SYSTEM_PROMPT = (
    "You are a professional research analyst. "
    "Your task is to investigate a topic thoroughly and report verifiable findings.\n\n"
    "Guidelines:\n"
    "- Prefer authoritative sources: peer-reviewed work, then preprints, reports and media\n"
    "- Document contradictions and weigh the evidence behind each side\n"
    "- Label speculative content as such\n"
    "- Cite sources with bracketed numeric references like [[1]]\n"
    "- Be objective and analytical"
)


def get_system_prompt(now: datetime | None = None) -> str:
    """System prompt with the current date, so the model can judge recency."""
    now = now or datetime.now()
    return f"{SYSTEM_PROMPT}\n\nToday is {now.strftime('%A, %B %d, %Y')}."


def _learnings_block(learnings: list[str]) -> str:
    return "\n".join(f"- {learning}" for learning in learnings) if learnings else "(none yet)"


def get_sub_query_prompt(
    query: str,
    num_queries: int,
    learnings: list[str],
    research_goal: str,
    initial_query: str,
    depth: int,
    breadth: int,
) -> str:
    """Generate the prompt that fans a query out into search queries."""
    return f"""Research topic: "{query}"
Original question: "{initial_query}"
Research goal: {research_goal}
Remaining depth: {depth}, breadth: {breadth}

Learnings so far:
{_learnings_block(learnings)}

Generate {num_queries} specific search queries that extend what is already known.
Cover different angles: informational, comparative, technical and exploratory.
Each query should be short and focus on one aspect.

Return ONLY a JSON array of {num_queries} objects: [{{"query": "...", "researchGoal": "..."}}]"""


def get_analysis_prompt(query: str, research_goal: str, learnings: list[str]) -> str:
    """Generate the prompt that researches one sub-query."""
    return f"""Research goal: {research_goal}
Query: {query}

Known learnings:
{_learnings_block(learnings)}

Research this query and report new, concrete findings. Each finding should be one
information-dense sentence including entities, numbers and dates where available.

Return ONLY JSON: {{"items": [{{"learning": "...", "url": "source URL"}}]}}"""


def get_learning_prompt(query: str, title: str, url: str, content: str) -> str:
    """Generate the prompt that extracts learnings from one chunk of fetched content."""
    return f"""Query: {query}
Source: {title} ({url})

Content:
{content}

Extract the key learnings from this content that help answer the query.
Each learning starts with a capital letter and is a single sentence.

Return ONLY JSON: {{"learnings": ["..."], "followUpQuestions": ["..."]}}"""


def get_feedback_prompt(
    query: str,
    num_questions: int,
    research_goal: str,
    depth: int,
    breadth: int,
    learnings: list[str],
) -> str:
    """Generate the prompt that asks for clarifying follow-up questions."""
    return f"""User query: "{query}"
Research goal: {research_goal}
Planned depth: {depth}, breadth: {breadth}

Existing learnings:
{_learnings_block(learnings)}

Ask up to {num_questions} follow-up questions that would clarify the scope, context
or precision of this research request, and briefly analyze the query.

Return ONLY JSON: {{"followUpQuestions": ["..."], "analysis": "...", "confidenceScore": 0.0}}"""


def get_outline_prompt(prompt: str, learnings: list[str]) -> str:
    return f"""Based on the prompt and the following learnings, generate a detailed report outline.
Prompt: {prompt}
Learnings:
{_learnings_block(learnings)}

Return ONLY JSON: {{"outline": ["section heading", ...]}}"""


def get_sections_prompt(outline: str, learnings: list[str]) -> str:
    return f"""Using the following outline and learnings, write the report body.
Outline:
{outline}
Learnings:
{_learnings_block(learnings)}

Return ONLY JSON: {{"sections": ["markdown section", ...], "citations": ["reference", ...]}}"""


def get_summary_prompt(learnings: list[str]) -> str:
    return f"""Summarize the following learnings as a short abstract.
Learnings:
{_learnings_block(learnings)}

Return ONLY JSON: {{"summary": "..."}}"""


def get_title_prompt(prompt: str, learnings: list[str]) -> str:
    return f"""Write a title for a research report based on the prompt and learnings.
Prompt: {prompt}
Learnings:
{_learnings_block(learnings)}

Return ONLY JSON: {{"title": "..."}}"""


INTRODUCTION_TEMPLATE = (
    'This report investigates the query: "{prompt}" using recursive research. '
    "The following sections synthesize findings, with citations inline where provided."
)

METHODOLOGY_TEXT = (
    "The query was expanded into sub-queries over several recursion levels. Findings were "
    "extracted from each response as structured learnings, deduplicated and compiled through "
    "schema-guided synthesis."
)

LIMITATIONS_TEXT = (
    "Automated extraction may miss nuance or context from sources. "
    "Some links may be unavailable or rate-limited at retrieval time."
)
