"""Response schemas for the structured generation calls made during research."""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

MAX_FOLLOW_UP_QUESTIONS = 5


class SubQueryItem(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    query: str
    research_goal: str | None = Field(default=None, alias="researchGoal")

    @field_validator("query")
    @classmethod
    def _non_empty(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("query must not be empty")
        return v


class SubQueriesResponse(BaseModel):
    """Accepts ``[...]`` of strings or objects, or ``{"queries": [...]}``."""

    model_config = ConfigDict(extra="ignore")

    queries: list[SubQueryItem]

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, data: Any) -> Any:
        if isinstance(data, list):
            data = {"queries": data}
        if not isinstance(data, dict) or not isinstance(data.get("queries"), list):
            raise ValueError("expected a list of queries")
        items = [{"query": item} if isinstance(item, str) else item for item in data["queries"]]
        return {**data, "queries": items}


SUB_QUERIES_JSON_SCHEMA: dict[str, Any] = {
    "type": "array",
    "items": {
        "type": "object",
        "properties": {"query": {"type": "string"}, "researchGoal": {"type": "string"}},
        "required": ["query"],
    },
    "minItems": 1,
}


class ChunkLearnings(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    learnings: list[str]
    follow_up_questions: list[str] = Field(default_factory=list, alias="followUpQuestions")


CHUNK_LEARNINGS_JSON_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "learnings": {"type": "array", "items": {"type": "string"}},
        "followUpQuestions": {"type": "array", "items": {"type": "string"}},
    },
    "required": ["learnings"],
}


class OutlineResponse(BaseModel):
    outline: list[str]


class SectionsResponse(BaseModel):
    sections: list[str]
    citations: list[str] = Field(default_factory=list)


class SummaryResponse(BaseModel):
    summary: str


class TitleResponse(BaseModel):
    title: str


class FeedbackResponse(BaseModel):
    """Follow-up questions that sharpen a research query."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    follow_up_questions: list[str] = Field(default_factory=list, alias="followUpQuestions")
    analysis: str = ""
    confidence_score: float | None = Field(default=None, alias="confidenceScore", ge=0, le=1)

    @field_validator("follow_up_questions")
    @classmethod
    def _keep_questions(cls, v: list[str]) -> list[str]:
        return [q.strip() for q in v if q and q.strip()][:MAX_FOLLOW_UP_QUESTIONS]

    @model_validator(mode="before")
    @classmethod
    def _require_questions(cls, data: Any) -> Any:
        if not isinstance(data, dict) or not ({"followUpQuestions", "follow_up_questions"} & data.keys()):
            raise ValueError("expected an object with 'followUpQuestions'")
        return data


FEEDBACK_JSON_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "followUpQuestions": {"type": "array", "items": {"type": "string"}},
        "analysis": {"type": "string"},
        "confidenceScore": {"type": "number"},
    },
    "required": ["followUpQuestions", "analysis"],
}
