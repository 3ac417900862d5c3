"""Named, retryable workflow steps.

The research workflow never talks to the network directly. Every outbound
call goes through a `StepExecutor`, which addresses it by a stable step name
(`plan-queries`, `search-3`, `write-blog-3`, ...) and owns retries, timeouts
and replay. A hosted durable-workflow substrate can implement the same two
methods; `LocalStepExecutor` is the in-process implementation.
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any, Literal, Protocol, TypeVar

import httpx
from pydantic import BaseModel, ConfigDict, Field

from research_relay.exceptions import StepFailedError, UpstreamStatusError
from research_relay.logging import get_logger

log = get_logger("research_relay.steps")

T = TypeVar("T")


class StepPolicy(BaseModel):
    """Retry and timeout policy for one step."""

    model_config = ConfigDict(frozen=True)

    retries: int = Field(default=2, ge=0, description="Extra attempts after the first")
    delay_s: float = Field(default=1.0, ge=0)
    backoff: Literal["fixed", "exponential"] = "exponential"
    timeout_s: float = Field(default=30.0, gt=0)

    def delay_for(self, attempt: int) -> float:
        """Delay after the given failed attempt (1-based)."""
        if self.backoff == "fixed":
            return self.delay_s
        return self.delay_s * 2 ** (attempt - 1)


DEFAULT_POLICY = StepPolicy()


class StepRequest(BaseModel):
    """An outbound HTTP call described as data, so it can be journaled and replayed."""

    url: str
    method: Literal["GET", "POST"] = "POST"
    body: Any = None
    headers: dict[str, str] = Field(default_factory=dict)


class StepResponse(BaseModel):
    status: int
    body: Any = None


class StepExecutor(Protocol):
    async def run(
        self, name: str, action: Callable[[], Awaitable[T]], policy: StepPolicy = DEFAULT_POLICY
    ) -> T: ...

    async def call(self, name: str, request: StepRequest, policy: StepPolicy = DEFAULT_POLICY) -> StepResponse: ...


class StepJournal:
    """Completed step results, keyed by workflow id and step name."""

    def __init__(self) -> None:
        self._entries: dict[str, dict[str, Any]] = {}

    def lookup(self, workflow_id: str, step: str) -> tuple[bool, Any]:
        steps = self._entries.get(workflow_id, {})
        if step in steps:
            return True, steps[step]
        return False, None

    def record(self, workflow_id: str, step: str, result: Any) -> None:
        self._entries.setdefault(workflow_id, {})[step] = result

    def completed_steps(self, workflow_id: str) -> list[str]:
        return list(self._entries.get(workflow_id, {}))

    def forget(self, workflow_id: str) -> None:
        self._entries.pop(workflow_id, None)


class LocalStepExecutor:
    """Runs steps in the current event loop with retry, timeout and replay.

    A step already present in the journal for this workflow is not executed
    again; its recorded result is returned. Re-running a workflow under the
    same id therefore resumes after the last completed step.
    """

    def __init__(
        self,
        workflow_id: str,
        *,
        http_client: httpx.AsyncClient,
        journal: StepJournal | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.workflow_id = workflow_id
        self.journal = journal if journal is not None else StepJournal()
        self._http = http_client
        self._sleep = sleep

    async def run(
        self, name: str, action: Callable[[], Awaitable[T]], policy: StepPolicy = DEFAULT_POLICY
    ) -> T:
        found, cached = self.journal.lookup(self.workflow_id, name)
        if found:
            log.info("step.replayed", step=name)
            return cached

        attempt = 0
        while True:
            attempt += 1
            try:
                result = await asyncio.wait_for(action(), timeout=policy.timeout_s)
            except Exception as e:
                reason = str(e) or type(e).__name__
                if attempt > policy.retries:
                    log.error("step.exhausted", step=name, attempts=attempt, error=reason)
                    raise StepFailedError(step=name, attempts=attempt, reason=reason) from e
                delay = policy.delay_for(attempt)
                log.warning("step.retrying", step=name, attempt=attempt, delay_s=delay, error=reason)
                await self._sleep(delay)
                continue

            self.journal.record(self.workflow_id, name, result)
            log.debug("step.completed", step=name, attempts=attempt)
            return result

    async def call(self, name: str, request: StepRequest, policy: StepPolicy = DEFAULT_POLICY) -> StepResponse:
        """Issue an HTTP request as a step; non-2xx responses count as failed attempts."""

        async def _send() -> StepResponse:
            response = await self._http.request(
                request.method,
                request.url,
                json=request.body,
                headers=request.headers,
                timeout=policy.timeout_s,
            )
            if not response.is_success:
                raise UpstreamStatusError(status=response.status_code, url=request.url)
            return StepResponse(status=response.status_code, body=_decode_body(response))

        return await self.run(name, _send, policy)


def _decode_body(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text
