"""Web-search request building and response validation (Serper-compatible API)."""

from typing import Any

from pydantic import ValidationError

from research_relay.config import Settings
from research_relay.logging import get_logger
from research_relay.models import SearchResponse
from research_relay.sanitize import sanitize
from research_relay.steps import StepRequest

log = get_logger("research_relay.search")


def build_search_request(query: str, settings: Settings) -> StepRequest:
    """Describe one search call asking for the top `search_result_count` organic results."""
    return StepRequest(
        url=settings.search_url,
        method="POST",
        body={"q": query, "num": settings.search_result_count},
        headers={
            "X-API-KEY": sanitize(settings.serper_api_key),
            "Content-Type": "application/json",
        },
    )


def parse_search_response(body: Any) -> SearchResponse:
    """Validate a raw search body; anything unusable becomes an empty response."""
    if body is None:
        return SearchResponse()
    try:
        return SearchResponse.model_validate(body)
    except ValidationError as e:
        log.warning("search.invalid_response", error_count=e.error_count())
        return SearchResponse()
