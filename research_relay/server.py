"""FastAPI application for the research relay service."""

import hmac
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime
from urllib.parse import urlsplit

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, ValidationError

from research_relay import __version__
from research_relay.config import WEBHOOK_PATH, Settings, get_settings
from research_relay.dispatch import BackgroundDispatcher, Dispatcher
from research_relay.logging import get_logger
from research_relay.models import (
    ANONYMOUS_USER,
    JobStatus,
    ResearchJob,
    ResearchTask,
    WebhookPayload,
    WireModel,
    new_research_id,
    utcnow,
)
from research_relay.sanitize import sanitize
from research_relay.store import ResultStore, create_store, record_result

log = get_logger("research_relay.server")


# --- Request/Response schemas ---


class EnqueueRequest(WireModel):
    """Incoming research request. Blank queries are rejected by the handler with 400."""

    query: str | None = Field(
        default=None,
        max_length=1000,
        description="Research topic (1-1000 characters)",
        examples=["Future of Solid State Batteries"],
    )
    user_id: str | None = Field(default=None, description="Caller identity; defaults to 'anonymous'")


class EnqueueResponse(WireModel):
    research_id: str = Field(examples=["research-1760870400000-k3x9q2a"])
    status: JobStatus = Field(default=JobStatus.PROCESSING)


class PendingResponse(WireModel):
    """Poll response for ids with no stored record yet."""

    error: str = "Research not found or still processing"
    research_id: str
    status: JobStatus = JobStatus.PROCESSING


class WebhookAck(WireModel):
    ok: bool = True
    research_id: str


class ErrorResponse(BaseModel):
    """Structured error response."""

    error: str = Field(
        description="Human-readable error or error type",
        examples=["Query is required"],
    )
    detail: str | None = Field(default=None, description="Additional detail, when safe to share")


class HealthResponse(BaseModel):
    status: str = Field(examples=["ok"])
    timestamp: datetime
    version: str = Field(default="", examples=["0.1.0"])


def _error(status_code: int, error: str, detail: str | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=error, detail=detail).model_dump(exclude_none=True),
    )


# --- Exception handlers ---


async def _handle_validation_error(request: Request, exc: ValidationError) -> JSONResponse:
    log.warning("request.validation_error", path=request.url.path, detail=str(exc))
    return _error(422, "ValidationError", str(exc))


async def _handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    log.exception("request.unexpected_error", path=request.url.path, error=str(exc))
    return _error(500, "InternalServerError", "An unexpected error occurred.")


# --- Access checks ---


def _is_same_origin(request: Request) -> bool:
    if request.headers.get("sec-fetch-site") == "same-origin":
        return True
    origin = request.headers.get("origin")
    if not origin:
        return False
    return urlsplit(origin).netloc == request.headers.get("host")


def _api_key_accepted(request: Request, settings: Settings) -> bool:
    """True when no key is configured, the caller is same-origin, or x-api-key matches."""
    expected = sanitize(settings.api_key)
    if not expected or _is_same_origin(request):
        return True
    provided = request.headers.get("x-api-key", "")
    return hmac.compare_digest(provided.encode(), expected.encode())


def _secret_matches(provided: str, settings: Settings) -> bool:
    # an unset server secret accepts nothing
    expected = settings.webhook_secret
    if not expected:
        return False
    return hmac.compare_digest(provided.encode(), expected.encode())


# --- App factory ---


def get_app(
    settings: Settings | None = None,
    store: ResultStore | None = None,
    dispatcher: Dispatcher | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Collaborators default to the environment's settings, the store selected by
    `REDIS_URL`, and an in-process background dispatcher.
    """
    _settings = settings if settings is not None else get_settings()
    _store = store if store is not None else create_store(_settings)
    _dispatcher = dispatcher if dispatcher is not None else BackgroundDispatcher(store=_store, settings=_settings)

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        yield
        await _dispatcher.aclose()
        await _store.aclose()

    application = FastAPI(
        title="Research Relay",
        description="""
Turns one research topic into a multi-section, cited report.

## Flow

1. **Enqueue** - `POST /api/research/run` returns a research id immediately
2. **Workflow** - plans up to 10 sub-queries, searches each in parallel, writes one section per search
3. **Delivery** - the result is stored under the research id and POSTed to the completion webhook
4. **Poll** - `GET /api/research/status/{researchId}` until the status is `completed`

Expect 5-10 minutes per job.
        """,
        version=__version__,
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=_settings.cors_origin_list,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "x-api-key"],
    )
    application.add_exception_handler(ValidationError, _handle_validation_error)  # type: ignore[arg-type]
    application.add_exception_handler(Exception, _handle_unexpected_error)

    application.state.settings = _settings
    application.state.store = _store
    application.state.dispatcher = _dispatcher

    @application.post(
        "/api/research/run",
        response_model=EnqueueResponse,
        status_code=status.HTTP_200_OK,
        summary="Enqueue Research",
        tags=["Research"],
        responses={400: {"model": ErrorResponse}, 401: {"model": ErrorResponse}},
    )
    async def run(request: Request, body: EnqueueRequest) -> EnqueueResponse | JSONResponse:
        if not _api_key_accepted(request, _settings):
            log.warning("request.unauthorized", path=request.url.path)
            return _error(401, "Unauthorized")
        if not body.query or not body.query.strip():
            return _error(400, "Query is required")

        task = ResearchTask(
            research_id=new_research_id(),
            query=body.query,
            user_id=body.user_id or ANONYMOUS_USER,
        )
        await _dispatcher.dispatch(task)
        log.info("research.enqueued", research_id=task.research_id, user_id=task.user_id)
        return EnqueueResponse(research_id=task.research_id)

    @application.get(
        "/api/research/status/{research_id}",
        response_model=ResearchJob,
        response_model_exclude_none=True,
        summary="Poll Research Status",
        tags=["Research"],
        responses={404: {"model": PendingResponse}},
    )
    async def research_status(research_id: str) -> ResearchJob | JSONResponse:
        job = await _store.get(research_id)
        if job is None:
            return JSONResponse(
                status_code=404,
                content=PendingResponse(research_id=research_id).model_dump(mode="json", by_alias=True),
            )
        return job

    @application.post(
        WEBHOOK_PATH,
        response_model=WebhookAck,
        summary="Receive Completed Research",
        tags=["Research"],
        responses={401: {"model": ErrorResponse}},
    )
    async def webhook(payload: WebhookPayload) -> WebhookAck | JSONResponse:
        if not _secret_matches(payload.secret, _settings):
            log.warning("webhook.unauthorized", research_id=payload.research_id)
            return _error(401, "Unauthorized")

        job = ResearchJob(
            research_id=payload.research_id,
            query=payload.results.query if payload.results else None,
            user_id=payload.user_id,
            status=payload.status,
            results=payload.results,
            completed_at=payload.completed_at,
            cached_at=utcnow(),
        )
        await record_result(_store, job)
        log.info("webhook.received", research_id=payload.research_id, status=payload.status.value)
        return WebhookAck(research_id=payload.research_id)

    @application.get(
        "/api/research/health",
        response_model=HealthResponse,
        summary="Health Check",
        tags=["Health"],
    )
    async def health() -> HealthResponse:
        return HealthResponse(status="ok", timestamp=utcnow(), version=__version__)

    return application


app = get_app()
