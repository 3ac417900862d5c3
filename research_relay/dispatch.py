"""Hand enqueued research tasks to the workflow runner without blocking the request."""

import asyncio
from collections.abc import Callable
from typing import Any, Protocol

import httpx
from pydantic_ai import Agent

from research_relay.config import Settings
from research_relay.logging import clear_context_fields, get_logger
from research_relay.models import ResearchTask
from research_relay.steps import LocalStepExecutor, StepJournal
from research_relay.store import ResultStore
from research_relay.workflow import run_research_workflow

log = get_logger("research_relay.dispatch")


class Dispatcher(Protocol):
    async def dispatch(self, task: ResearchTask) -> None: ...

    async def aclose(self) -> None: ...


class BackgroundDispatcher:
    """Runs each workflow as an asyncio task in the serving process.

    All tasks share one step journal. A workflow's entries are dropped when
    its task ends; every enqueue gets a fresh research id.
    """

    def __init__(
        self,
        *,
        store: ResultStore,
        settings: Settings,
        journal: StepJournal | None = None,
        http_client_factory: Callable[[], httpx.AsyncClient] = httpx.AsyncClient,
        planner_agent: Agent[None, str] | None = None,
        writer_agent: Agent[None, str] | None = None,
    ) -> None:
        self.journal = journal if journal is not None else StepJournal()
        self._store = store
        self._settings = settings
        self._http_client_factory = http_client_factory
        self._agents: dict[str, Any] = {"planner_agent": planner_agent, "writer_agent": writer_agent}
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def dispatch(self, task: ResearchTask) -> None:
        runner = asyncio.create_task(self._run(task), name=task.research_id)
        self._tasks.add(runner)
        runner.add_done_callback(self._tasks.discard)
        log.info("dispatch.scheduled", research_id=task.research_id, pending=len(self._tasks))

    async def _run(self, task: ResearchTask) -> None:
        clear_context_fields()
        async with self._http_client_factory() as http_client:
            executor = LocalStepExecutor(task.research_id, http_client=http_client, journal=self.journal)
            try:
                await run_research_workflow(
                    task,
                    executor=executor,
                    store=self._store,
                    settings=self._settings,
                    **self._agents,
                )
            except Exception as e:
                # already recorded as failed by the runner; nothing awaits this task
                log.error("dispatch.workflow_failed", research_id=task.research_id, error=str(e))
            finally:
                self.journal.forget(task.research_id)

    async def drain(self) -> None:
        """Wait for every in-flight workflow to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def aclose(self) -> None:
        for runner in list(self._tasks):
            runner.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)
