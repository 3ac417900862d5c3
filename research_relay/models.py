"""Pydantic models for the research relay workflow."""

import secrets
import string
import time
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

FAILED_CONTENT = "Failed to generate content."
ANONYMOUS_USER = "anonymous"

_ID_ALPHABET = string.digits + string.ascii_lowercase


def new_research_id() -> str:
    """Generate a `research-<epoch-ms>-<7 base36 chars>` identifier."""
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(7))
    return f"research-{int(time.time() * 1000)}-{suffix}"


def utcnow() -> datetime:
    return datetime.now(UTC)


def _as_utc(value: datetime | None) -> datetime | None:
    # naive timestamps from callers are taken as UTC so completions stay comparable
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


class WireModel(BaseModel):
    """Base for models exchanged over HTTP: camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class QueryType(str, Enum):
    """Category of a planned sub-query."""

    WHO = "who"
    WHAT = "what"
    WHY = "why"
    WHEN = "when"
    WHERE = "where"
    HOW = "how"


class JobStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class SubQuery(WireModel):
    """One concrete search question derived from the user's topic."""

    query: str = Field(
        min_length=1,
        description="Self-contained search string",
        examples=["solid state battery energy density improvements 2024"],
    )
    type: QueryType = Field(
        description="Question category",
        examples=["what"],
    )
    context: str = Field(
        default="",
        description="Why this sub-query was chosen",
        examples=["Establish the current state of the technology"],
    )

    @field_validator("query", "context", mode="before")
    @classmethod
    def _strip(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value

    @field_validator("type", mode="before")
    @classmethod
    def _lowercase_type(cls, value: Any) -> Any:
        return value.strip().lower() if isinstance(value, str) else value


class OrganicResult(BaseModel):
    title: str = ""
    link: str = ""
    snippet: str = ""


class SearchResponse(BaseModel):
    """Organic results for one sub-query. Empty is a valid response."""

    organic: list[OrganicResult] = Field(default_factory=list)

    def format_snippets(self) -> str:
        return "\n\n".join(f"Title: {r.title}\nLink: {r.link}\nSnippet: {r.snippet}" for r in self.organic)


class GeneratedSection(WireModel):
    """Generated write-up for one sub-query, or the failure sentinel."""

    query: SubQuery
    content: str = Field(
        description=f"Generated prose, or the literal '{FAILED_CONTENT}'",
    )

    @property
    def failed(self) -> bool:
        return self.content == FAILED_CONTENT


class ConsolidatedResult(WireModel):
    """Final research output, one section per planned sub-query in plan order."""

    research_id: str
    query: str
    completed_at: datetime
    search_queries: list[SubQuery]
    blogs: list[GeneratedSection]

    _utc_completed_at = field_validator("completed_at")(_as_utc)

    @model_validator(mode="after")
    def _check_alignment(self) -> "ConsolidatedResult":
        if len(self.blogs) != len(self.search_queries):
            raise ValueError(f"{len(self.blogs)} sections for {len(self.search_queries)} sub-queries")
        for index, (section, sub_query) in enumerate(zip(self.blogs, self.search_queries)):
            if section.query != sub_query:
                raise ValueError(f"section {index} does not answer sub-query {index}")
        return self


class ResearchTask(WireModel):
    """Payload handed to the workflow runner at enqueue time."""

    research_id: str = Field(min_length=1)
    query: str = Field(min_length=1)
    user_id: str = ANONYMOUS_USER


class ResearchJob(WireModel):
    """Stored record for one research job, keyed by research_id."""

    research_id: str = Field(min_length=1)
    query: str | None = None
    user_id: str = ANONYMOUS_USER
    status: JobStatus
    results: ConsolidatedResult | None = None
    error: str | None = None
    completed_at: datetime | None = None
    cached_at: datetime | None = None

    _utc_timestamps = field_validator("completed_at", "cached_at")(_as_utc)

    @model_validator(mode="after")
    def _check_results(self) -> "ResearchJob":
        if self.status == JobStatus.COMPLETED and self.results is None:
            raise ValueError("completed job requires results")
        if self.status != JobStatus.COMPLETED and self.results is not None:
            raise ValueError(f"{self.status.value} job must not carry results")
        return self


class WebhookPayload(WireModel):
    """Body POSTed to the completion webhook."""

    research_id: str = Field(min_length=1)
    user_id: str = ANONYMOUS_USER
    status: JobStatus
    results: ConsolidatedResult | None = None
    completed_at: datetime
    secret: str = ""

    _utc_completed_at = field_validator("completed_at")(_as_utc)
