"""PydanticAI agents for planning sub-queries and writing sections."""

from functools import lru_cache
from typing import Any

import httpx
from pydantic_ai import Agent
from pydantic_ai.models.openai import OpenAIChatModel
from pydantic_ai.providers.openai import OpenAIProvider
from pydantic_ai.settings import ModelSettings

from research_relay.config import Settings, get_settings
from research_relay.sanitize import sanitize

LLM_TIMEOUT_S = 60.0

PLANNER_INSTRUCTIONS = """You are a research planner. Break the user's topic into
concrete, self-contained web search queries.
Each query must:
- Stand on its own and be specific enough to return useful results
- Never be a vague single word or a bare keyword
- Cover one angle of the topic: who, what, why, when, where or how
Respond with JSON only, no commentary."""

WRITER_INSTRUCTIONS = """You are a research writer. Turn the provided search results
into a clear, well-structured write-up that answers the question.
Style:
- Practical and direct, no filler
- Ground every claim in the provided sources
- Cite sources in-text and end with an APA-style reference list
- Say plainly when the sources do not answer part of the question"""


def chat_headers(settings: Settings) -> dict[str, str]:
    """Attribution headers sent with every chat-completion request."""
    return {
        "HTTP-Referer": settings.site_url,
        "X-Title": sanitize(settings.app_title),
    }


def build_chat_model(model_name: str, settings: Settings) -> OpenAIChatModel:
    """Chat model for an OpenAI-compatible endpoint, with sanitized credentials in headers."""
    http_client = httpx.AsyncClient(headers=chat_headers(settings), timeout=LLM_TIMEOUT_S)
    provider = OpenAIProvider(
        base_url=settings.openrouter_base_url,
        api_key=sanitize(settings.openrouter_api_key),
        http_client=http_client,
    )
    return OpenAIChatModel(model_name, provider=provider)


def create_planner_agent(model: Any) -> Agent[None, str]:
    """Uncached factory - use with TestModel/FunctionModel for tests."""
    return Agent(
        model,
        instructions=PLANNER_INSTRUCTIONS,
        output_type=str,
        model_settings=ModelSettings(temperature=0.7, max_tokens=1000),
        instrument=True,
        name="planner_agent",
    )


@lru_cache(maxsize=1)
def get_planner_agent() -> Agent[None, str]:
    """Cached getter for production."""
    settings = get_settings()
    return create_planner_agent(build_chat_model(settings.planner_model, settings))


def create_writer_agent(model: Any) -> Agent[None, str]:
    """Uncached factory - use with TestModel/FunctionModel for tests."""
    return Agent(
        model,
        instructions=WRITER_INSTRUCTIONS,
        output_type=str,
        model_settings=ModelSettings(temperature=0.7, max_tokens=2000),
        instrument=True,
        name="writer_agent",
    )


@lru_cache(maxsize=1)
def get_writer_agent() -> Agent[None, str]:
    """Cached getter for production."""
    settings = get_settings()
    return create_writer_agent(build_chat_model(settings.writer_model, settings))


def clear_agent_cache() -> None:
    get_planner_agent.cache_clear()
    get_writer_agent.cache_clear()
