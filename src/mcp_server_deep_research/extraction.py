"""Extraction and repair of structured values from free-form generative output.

The protocol is an explicit state machine over tagged results:

1. direct parse of the raw text (code fences stripped) against a pydantic schema
2. lexical extraction of the first well-formed ``{...}`` / ``[...]`` block
3. one repair request asking the generator to reformat its own output, then 1-2 again
4. ``UnrecoverableFormat`` carrying a safe default

Nothing in this module raises past ``extract``/``extract_structured``.
Citation markers (``[[n]]``) are scanned from the raw text independently of
whether parsing succeeded.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Generic, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

if TYPE_CHECKING:
    from .providers import TextGenerator

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)
T = TypeVar("T")

MAX_LEARNINGS = 10
_MAX_LEXICAL_CANDIDATES = 64

_FENCE_RE = re.compile(r"```(?:json|JSON)?\s*(.*?)```", re.DOTALL)
_CITATION_RE = re.compile(r"\[\[\d+\]\]")
_URL_RE = re.compile(r"(https?://[^\s)\]]+)")
_BRACKETED_RE = re.compile(r"\[+[^\[\]]*\]+")
_STEP_RE = re.compile(r"^Step \d+:")


# --- Tagged results ---


@dataclass(frozen=True)
class Parsed(Generic[T]):
    value: T
    raw: str
    repaired: bool = False

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Malformed:
    raw: str
    reason: str

    @property
    def ok(self) -> bool:
        return False


@dataclass(frozen=True)
class UnrecoverableFormat(Generic[T]):
    """Output that never parsed, even after repair. ``value`` is the safe default."""

    value: T
    raw: str
    reason: str

    @property
    def ok(self) -> bool:
        return False


ParseResult = Union[Parsed[M], Malformed]
ExtractionOutcome = Union[Parsed[T], UnrecoverableFormat[T]]


# --- Schemas ---


class LearningItem(BaseModel):
    model_config = ConfigDict(extra="ignore")

    learning: str | None = None
    learnings: list[str] = Field(default_factory=list)
    url: str | None = None


class LearningsResponse(BaseModel):
    """Analysis response: ``{"items": [...]}`` or a bare ``{"learnings": [...]}``."""

    model_config = ConfigDict(extra="ignore")

    items: list[LearningItem] = Field(default_factory=list)
    learnings: list[str] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _require_payload(cls, data: Any) -> Any:
        if not isinstance(data, dict) or not ({"items", "learnings"} & data.keys()):
            raise ValueError("expected an object with 'items' or 'learnings'")
        return data


LEARNINGS_JSON_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "items": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "learning": {"type": "string"},
                    "learnings": {"type": "array", "items": {"type": "string"}},
                    "url": {"type": "string"},
                },
            },
        }
    },
    "required": ["items"],
}


@dataclass(frozen=True)
class Citation:
    reference: str
    context: str = ""


@dataclass
class ExtractionResult:
    """Structured findings derived from one generative response."""

    learnings: list[str] = field(default_factory=list)
    source_urls: list[str] = field(default_factory=list)
    citations: list[Citation] = field(default_factory=list)


# --- Lexical helpers ---


def strip_code_fences(text: str) -> str:
    match = _FENCE_RE.search(text)
    return match.group(1).strip() if match else text.strip()


def _balanced_end(text: str, start: int) -> int | None:
    """Index one past the bracket closing the one at ``start``, string/escape aware."""
    stack: list[str] = []
    in_string = False
    escaped = False
    pairs = {"{": "}", "[": "]"}
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in pairs:
            stack.append(pairs[ch])
        elif ch in "}]":
            if not stack or stack.pop() != ch:
                return None
            if not stack:
                return i + 1
    return None


def iter_json_blocks(text: str) -> Iterator[Any]:
    """Yield well-formed bracketed JSON values in order of their opening bracket."""
    candidates = 0
    for start, ch in enumerate(text):
        if ch not in "{[":
            continue
        candidates += 1
        if candidates > _MAX_LEXICAL_CANDIDATES:
            return
        end = _balanced_end(text, start)
        if end is None:
            continue
        try:
            yield json.loads(text[start:end])
        except json.JSONDecodeError:
            continue


def parse_structured(text: str, model: type[M]) -> ParseResult[M]:
    """Direct parse, then lexical extraction, validated against ``model``."""
    if not text or not text.strip():
        return Malformed(raw=text or "", reason="empty response")

    reasons: list[str] = []
    try:
        return Parsed(value=model.model_validate(json.loads(strip_code_fences(text))), raw=text)
    except (ValidationError, ValueError) as e:
        reasons.append(f"direct: {e.__class__.__name__}")

    # First bracketed structure that also satisfies the schema
    for value in iter_json_blocks(text):
        try:
            return Parsed(value=model.model_validate(value), raw=text)
        except ValidationError:
            continue
    reasons.append("lexical: no matching structure")

    return Malformed(raw=text, reason="; ".join(reasons))


def repair_prompt(previous: str, schema: dict[str, Any]) -> str:
    return (
        "Your previous output did not match the schema. Repair it to valid JSON that matches strictly. "
        "Return ONLY JSON.\n"
        f"Schema: {json.dumps(schema, separators=(',', ':'))}\n"
        f"Previous:\n{previous}"
    )


class ExtractionProtocol:
    """Turns generative output into validated values with a bounded number of repair passes."""

    def __init__(self, generator: TextGenerator | None, repair_attempts: int = 1, max_learnings: int = MAX_LEARNINGS):
        self.generator = generator
        self.repair_attempts = max(0, repair_attempts)
        self.max_learnings = max_learnings

    async def extract_structured(
        self,
        text: str,
        model: type[M],
        default: T,
        schema: dict[str, Any] | None = None,
    ) -> ExtractionOutcome[M] | UnrecoverableFormat[T]:
        result = parse_structured(text, model)
        if isinstance(result, Parsed):
            return result

        json_schema = schema or model.model_json_schema()
        current = text
        for attempt in range(self.repair_attempts):
            if self.generator is None:
                break
            logger.info(f"Malformed {model.__name__} output ({result.reason}); repair pass {attempt + 1}")
            try:
                current = await self.generator.generate(repair_prompt(current, json_schema), schema=json_schema)
            except Exception as e:
                logger.warning(f"Repair request failed: {e}")
                break
            result = parse_structured(current, model)
            if isinstance(result, Parsed):
                return Parsed(value=result.value, raw=current, repaired=True)

        logger.warning(f"Unrecoverable {model.__name__} output: {result.reason}")
        return UnrecoverableFormat(value=default, raw=text, reason=result.reason)

    async def extract(self, raw: str) -> ExtractionOutcome[ExtractionResult]:
        """Extract learnings, source URLs and citations from an analysis response."""
        citations = scan_citations(raw)
        outcome = await self.extract_structured(raw, LearningsResponse, default=None, schema=LEARNINGS_JSON_SCHEMA)
        if isinstance(outcome, Parsed):
            result = learnings_from_response(outcome.value, self.max_learnings)
            result.citations = citations
            return Parsed(value=result, raw=outcome.raw, repaired=outcome.repaired)
        return UnrecoverableFormat(value=ExtractionResult(citations=citations), raw=raw, reason=outcome.reason)


def _keep_learning(text: str) -> bool:
    return "INTERNAL PROCESS:" not in text and not text.startswith("OUTLINE:") and not _STEP_RE.match(text)


def learnings_from_response(response: LearningsResponse, max_learnings: int = MAX_LEARNINGS) -> ExtractionResult:
    learnings: list[str] = []
    urls: list[str] = []
    for item in response.items:
        if item.learning and _keep_learning(item.learning):
            learnings.append(item.learning.strip())
        learnings.extend(s for s in item.learnings if _keep_learning(s))
        if item.url and item.url.strip():
            urls.append(item.url.strip())
    learnings.extend(s for s in response.learnings if _keep_learning(s))

    cleaned = [c for c in (_BRACKETED_RE.sub("", s).strip() for s in learnings) if c]
    return ExtractionResult(learnings=cleaned[:max_learnings], source_urls=list(dict.fromkeys(urls)))


def scan_citations(text: str) -> list[Citation]:
    """Bracket-enclosed numeric references with the text that follows them up to the next period."""
    if not text:
        return []
    citations = []
    for match in _CITATION_RE.finditer(text):
        tail = text[match.end() :]
        citations.append(Citation(reference=match.group(0), context=tail.split(".", 1)[0].strip()))
    return citations


# --- Report text helpers ---


def extract_citations(text: str) -> tuple[list[str], list[str]]:
    """Unique URLs and unique ``[[n]]`` references found in ``text``."""
    if not text:
        return [], []
    urls = list(dict.fromkeys(url.rstrip(".,;:") for url in _URL_RE.findall(text)))
    refs = list(dict.fromkeys(_CITATION_RE.findall(text)))
    return urls, refs


def sanitize_report_content(content: str) -> str:
    """Strip model scratch-work (thinking/outline preambles, step markers, internal notes)."""
    content = re.sub(r"Thinking process:.*?\n\n", "", content, flags=re.DOTALL)
    content = re.sub(r"Outline:.*?\n\n", "", content, flags=re.DOTALL)
    content = re.sub(r"Step \d+:.*?\n", "", content)
    return re.sub(r"\[Internal Note:.*?\]", "", content)
