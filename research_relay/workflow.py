"""Research workflow: plan, search fan-out, write fan-out, consolidate, notify."""

import asyncio
import json
import re
from time import perf_counter
from typing import Any

from pydantic import TypeAdapter, ValidationError
from pydantic_ai import Agent

from research_relay.agents import get_planner_agent, get_writer_agent
from research_relay.config import Settings, get_settings
from research_relay.exceptions import ConsolidationError, PlanningError, PlanParseError, StepFailedError
from research_relay.logging import bind_context_vars, get_logger
from research_relay.models import (
    FAILED_CONTENT,
    ConsolidatedResult,
    GeneratedSection,
    JobStatus,
    QueryType,
    ResearchJob,
    ResearchTask,
    SearchResponse,
    SubQuery,
    WebhookPayload,
    utcnow,
)
from research_relay.search import build_search_request, parse_search_response
from research_relay.steps import StepExecutor, StepPolicy, StepRequest
from research_relay.store import ResultStore, record_result

log = get_logger("research_relay.workflow")

MAX_SUB_QUERIES = 10

PLAN_STEP = "plan-queries"
CONSOLIDATE_STEP = "consolidate-results"
NOTIFY_STEP = "notify-webhook"

PLAN_POLICY = StepPolicy(retries=3, backoff="exponential", timeout_s=60.0)
SEARCH_POLICY = StepPolicy(retries=2, backoff="exponential", timeout_s=30.0)
WRITE_POLICY = StepPolicy(retries=2, backoff="exponential", timeout_s=60.0)
CONSOLIDATE_POLICY = StepPolicy(retries=2, backoff="fixed", timeout_s=30.0)
NOTIFY_POLICY = StepPolicy(retries=3, backoff="fixed", timeout_s=60.0)

_PLAN_ADAPTER = TypeAdapter(list[SubQuery])
_LEADING_FENCE = re.compile(r"^```[a-zA-Z]*\s*")
_TRAILING_FENCE = re.compile(r"\s*```$")


def search_step_name(index: int) -> str:
    return f"search-{index}"


def write_step_name(index: int) -> str:
    return f"write-blog-{index}"


# --- Planning ---


def planner_prompt(query: str) -> str:
    return (
        f'Research topic: "{query}"\n\n'
        f"Generate up to {MAX_SUB_QUERIES} search queries that together cover this topic.\n"
        "Return a JSON array where each item has:\n"
        '- "query": a complete, specific search query\n'
        '- "type": one of "who", "what", "why", "when", "where", "how"\n'
        '- "context": one sentence on why this query matters for the topic'
    )


def strip_code_fence(text: str) -> str:
    return _TRAILING_FENCE.sub("", _LEADING_FENCE.sub("", text.strip())).strip()


def parse_plan(text: str, max_queries: int = MAX_SUB_QUERIES) -> list[SubQuery]:
    """Parse planner output into at most `max_queries` sub-queries.

    Accepts a JSON array, optionally inside a code fence, or an object with a
    `queries` array. Entries past the cap are dropped before validation.

    Raises:
        PlanParseError: When the text is not JSON, has the wrong shape, is
            empty, or any entry fails validation.
    """
    try:
        data: Any = json.loads(strip_code_fence(text))
    except json.JSONDecodeError as e:
        raise PlanParseError(f"invalid JSON: {e.msg}") from e

    if isinstance(data, dict):
        data = data.get("queries")
    if not isinstance(data, list):
        raise PlanParseError("expected a JSON array of sub-queries")
    if not data:
        raise PlanParseError("plan is empty")

    try:
        return _PLAN_ADAPTER.validate_python(data[:max_queries])
    except ValidationError as e:
        raise PlanParseError(f"{e.error_count()} invalid field(s) in plan") from e


def fallback_plan(query: str) -> list[SubQuery]:
    return [SubQuery(query=query, type=QueryType.WHAT, context="Direct search for the original topic")]


async def plan_queries(
    query: str,
    *,
    executor: StepExecutor,
    planner_agent: Agent[None, str],
    max_queries: int = MAX_SUB_QUERIES,
) -> list[SubQuery]:
    """Decompose the topic into at most `max_queries` sub-queries.

    Raises:
        PlanningError: When the planner call exhausts its retries.
    """

    async def _plan() -> str:
        result = await planner_agent.run(planner_prompt(query))
        return result.output

    try:
        raw = await executor.run(PLAN_STEP, _plan, PLAN_POLICY)
    except StepFailedError as e:
        raise PlanningError(topic=query, reason=e.reason) from e

    try:
        plan = parse_plan(raw, max_queries)
    except PlanParseError as e:
        log.warning("workflow.planning.fallback", reason=e.reason)
        plan = fallback_plan(query)
    return plan


# --- Search fan-out ---


async def search_all(plan: list[SubQuery], *, executor: StepExecutor, settings: Settings) -> list[SearchResponse]:
    """One search step per sub-query, concurrently. Output is index-aligned with `plan`."""

    async def _search_one(index: int, sub_query: SubQuery) -> SearchResponse:
        name = search_step_name(index)
        try:
            response = await executor.call(name, build_search_request(sub_query.query, settings), SEARCH_POLICY)
        except StepFailedError as e:
            log.warning("workflow.search.degraded", step=name, error=e.reason)
            return SearchResponse()
        return parse_search_response(response.body)

    async with asyncio.TaskGroup() as tg:
        tasks = [tg.create_task(_search_one(i, sq)) for i, sq in enumerate(plan)]
    return [task.result() for task in tasks]


# --- Content fan-out ---


def writer_prompt(sub_query: SubQuery, search: SearchResponse) -> str:
    return (
        f"Context: {sub_query.context}\n"
        f"Question: {sub_query.query}\n\n"
        "Search results:\n"
        f"{search.format_snippets()}\n\n"
        "Write a detailed, well-cited section answering the question using these results."
    )


async def write_all(
    plan: list[SubQuery],
    searches: list[SearchResponse],
    *,
    executor: StepExecutor,
    writer_agent: Agent[None, str],
) -> list[GeneratedSection]:
    """One writer step per (sub-query, search) pair, concurrently.

    Empty output or an exhausted step becomes the FAILED_CONTENT sentinel;
    the returned list always has one section per sub-query.
    """

    async def _write_one(index: int, sub_query: SubQuery, search: SearchResponse) -> GeneratedSection:
        name = write_step_name(index)

        async def _write() -> str:
            result = await writer_agent.run(writer_prompt(sub_query, search))
            return result.output

        try:
            text = await executor.run(name, _write, WRITE_POLICY)
        except StepFailedError as e:
            log.warning("workflow.write.degraded", step=name, error=e.reason)
            text = ""
        if not text or not text.strip():
            return GeneratedSection(query=sub_query, content=FAILED_CONTENT)
        return GeneratedSection(query=sub_query, content=text)

    async with asyncio.TaskGroup() as tg:
        tasks = [tg.create_task(_write_one(i, sq, s)) for i, (sq, s) in enumerate(zip(plan, searches, strict=True))]
    return [task.result() for task in tasks]


# --- Consolidation & delivery ---


async def consolidate(
    task: ResearchTask,
    plan: list[SubQuery],
    sections: list[GeneratedSection],
    *,
    executor: StepExecutor,
    store: ResultStore,
) -> ConsolidatedResult:
    """Build the result and write the completed job record in a single store write.

    Raises:
        ConsolidationError: When sections and sub-queries are not index-aligned.
    """
    if len(sections) != len(plan):
        raise ConsolidationError(f"{len(sections)} sections for {len(plan)} sub-queries")

    async def _consolidate() -> ConsolidatedResult:
        completed_at = utcnow()
        try:
            result = ConsolidatedResult(
                research_id=task.research_id,
                query=task.query,
                completed_at=completed_at,
                search_queries=plan,
                blogs=sections,
            )
        except ValidationError as e:
            raise ConsolidationError(str(e)) from e
        job = ResearchJob(
            research_id=task.research_id,
            query=task.query,
            user_id=task.user_id,
            status=JobStatus.COMPLETED,
            results=result,
            completed_at=completed_at,
            cached_at=completed_at,
        )
        await record_result(store, job)
        return result

    return await executor.run(CONSOLIDATE_STEP, _consolidate, CONSOLIDATE_POLICY)


async def notify(
    task: ResearchTask,
    result: ConsolidatedResult,
    *,
    executor: StepExecutor,
    settings: Settings,
) -> bool:
    """POST the result to the completion webhook. Returns False when skipped or undeliverable."""
    url = settings.callback_url
    if not url:
        log.info("workflow.notify.skipped", reason="no callback url")
        return False

    payload = WebhookPayload(
        research_id=task.research_id,
        user_id=task.user_id,
        status=JobStatus.COMPLETED,
        results=result,
        completed_at=result.completed_at,
        secret=settings.webhook_secret,
    )
    request = StepRequest(url=url, method="POST", body=payload.model_dump(mode="json", by_alias=True))
    try:
        await executor.call(NOTIFY_STEP, request, NOTIFY_POLICY)
    except StepFailedError as e:
        # the result is already stored; pollers still see it
        log.error("workflow.notify.failed", error=e.reason)
        return False
    return True


# Pollers see these instead of internal error text
_FAILURE_MESSAGES: dict[str, str] = {
    "PlanningError": "Unable to create research plan. Please try a different query.",
    "ConsolidationError": "Unable to assemble research results. Please try again.",
}


async def _record_failure(task: ResearchTask, error: Exception, store: ResultStore) -> None:
    failed_at = utcnow()
    job = ResearchJob(
        research_id=task.research_id,
        query=task.query,
        user_id=task.user_id,
        status=JobStatus.FAILED,
        error=_FAILURE_MESSAGES.get(type(error).__name__, "Research could not be completed. Please try again."),
        completed_at=failed_at,
        cached_at=failed_at,
    )
    try:
        await record_result(store, job)
    except Exception as e:
        log.exception("workflow.failure_record.failed", error=str(e))


# --- Runner ---


async def run_research_workflow(
    task: ResearchTask,
    *,
    executor: StepExecutor,
    store: ResultStore,
    settings: Settings | None = None,
    planner_agent: Agent[None, str] | None = None,
    writer_agent: Agent[None, str] | None = None,
) -> ConsolidatedResult:
    """Execute the research workflow for one enqueued task.

    Args:
        task: Research id, query and user id from the enqueue request.
        executor: Step executor that owns retries and replay.
        store: Result store receiving the terminal job record.
        settings: Override default settings (for testing).
        planner_agent: Override default planner agent (for testing).
        writer_agent: Override default writer agent (for testing).

    Returns:
        The consolidated result, also written to `store`.

    Raises:
        PlanningError: When the planner call exhausts its retries.
        ConsolidationError: When the result cannot be assembled.
        StepFailedError: When the consolidation write exhausts its retries.
    """
    _settings = settings or get_settings()
    _planner_agent = planner_agent or get_planner_agent()
    _writer_agent = writer_agent or get_writer_agent()

    bind_context_vars(research_id=task.research_id)
    workflow_start = perf_counter()
    log.info("workflow.started", query=task.query, user_id=task.user_id)

    try:
        phase_start = perf_counter()
        plan = await plan_queries(
            task.query,
            executor=executor,
            planner_agent=_planner_agent,
            max_queries=min(_settings.max_sub_queries, MAX_SUB_QUERIES),
        )
        log.info("workflow.planning.completed", duration_ms=_elapsed_ms(phase_start), sub_queries=len(plan))

        phase_start = perf_counter()
        searches = await search_all(plan, executor=executor, settings=_settings)
        empty = sum(1 for s in searches if not s.organic)
        log.info("workflow.search.completed", duration_ms=_elapsed_ms(phase_start), empty_results=empty)

        phase_start = perf_counter()
        sections = await write_all(plan, searches, executor=executor, writer_agent=_writer_agent)
        degraded = sum(1 for s in sections if s.failed)
        log.info("workflow.write.completed", duration_ms=_elapsed_ms(phase_start), degraded=degraded)

        result = await consolidate(task, plan, sections, executor=executor, store=store)
    except Exception as e:
        log.error("workflow.failed", error=str(e), error_type=type(e).__name__)
        await _record_failure(task, e, store)
        raise

    await notify(task, result, executor=executor, settings=_settings)
    log.info("workflow.completed", total_ms=_elapsed_ms(workflow_start), sections=len(result.blogs))
    return result


def _elapsed_ms(start: float) -> int:
    return int((perf_counter() - start) * 1000)
