"""Result store for research jobs, keyed by research id."""

from collections.abc import Callable
from typing import Protocol

from redis.asyncio import Redis
from redis.exceptions import WatchError

from research_relay.config import Settings
from research_relay.logging import get_logger
from research_relay.models import JobStatus, ResearchJob

log = get_logger("research_relay.store")

# Returns why `new` must not replace `existing`, or None to write it
WriteCheck = Callable[[ResearchJob | None, ResearchJob], str | None]


class ResultStore(Protocol):
    async def get(self, research_id: str) -> ResearchJob | None: ...

    async def set(self, research_id: str, job: ResearchJob) -> None: ...

    async def set_unless(self, research_id: str, job: ResearchJob, check: WriteCheck) -> str | None:
        """Atomically write `job` unless `check` objects to the stored record; returns the objection."""
        ...

    async def aclose(self) -> None: ...


class MemoryResultStore:
    """Process-local store. Records are kept serialized so callers never share instances."""

    def __init__(self) -> None:
        self._records: dict[str, str] = {}

    async def get(self, research_id: str) -> ResearchJob | None:
        raw = self._records.get(research_id)
        return ResearchJob.model_validate_json(raw) if raw is not None else None

    async def set(self, research_id: str, job: ResearchJob) -> None:
        self._records[research_id] = job.model_dump_json(by_alias=True)

    async def set_unless(self, research_id: str, job: ResearchJob, check: WriteCheck) -> str | None:
        # no await between read and write, so this is atomic on the event loop
        raw = self._records.get(research_id)
        existing = ResearchJob.model_validate_json(raw) if raw is not None else None
        reason = check(existing, job)
        if reason is None:
            self._records[research_id] = job.model_dump_json(by_alias=True)
        return reason

    async def aclose(self) -> None:
        return None

    def __len__(self) -> int:
        return len(self._records)


class RedisResultStore:
    """Networked store shared by every worker process."""

    def __init__(self, client: Redis, *, ttl_seconds: int = 0, prefix: str = "research:") -> None:
        self._client = client
        self._ttl = ttl_seconds or None
        self._prefix = prefix

    @classmethod
    def from_url(cls, url: str, *, ttl_seconds: int = 0) -> "RedisResultStore":
        return cls(Redis.from_url(url, decode_responses=True), ttl_seconds=ttl_seconds)

    def _key(self, research_id: str) -> str:
        return f"{self._prefix}{research_id}"

    async def get(self, research_id: str) -> ResearchJob | None:
        raw = await self._client.get(self._key(research_id))
        return ResearchJob.model_validate_json(raw) if raw is not None else None

    async def set(self, research_id: str, job: ResearchJob) -> None:
        await self._client.set(self._key(research_id), job.model_dump_json(by_alias=True), ex=self._ttl)

    async def set_unless(self, research_id: str, job: ResearchJob, check: WriteCheck) -> str | None:
        """Optimistic WATCH/MULTI write; retried when another worker touches the key first."""
        key = self._key(research_id)
        async with self._client.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    raw = await pipe.get(key)
                    existing = ResearchJob.model_validate_json(raw) if raw is not None else None
                    reason = check(existing, job)
                    if reason is not None:
                        await pipe.unwatch()
                        return reason
                    pipe.multi()
                    pipe.set(key, job.model_dump_json(by_alias=True), ex=self._ttl)
                    await pipe.execute()
                    return None
                except WatchError:
                    log.debug("store.write_contended", research_id=research_id)

    async def aclose(self) -> None:
        await self._client.aclose()


def create_store(settings: Settings) -> ResultStore:
    if settings.redis_url:
        log.info("store.redis", ttl_seconds=settings.result_ttl_seconds)
        return RedisResultStore.from_url(settings.redis_url, ttl_seconds=settings.result_ttl_seconds)
    log.info("store.memory")
    return MemoryResultStore()


def _is_older(new: ResearchJob, existing: ResearchJob) -> bool:
    return bool(existing.completed_at and new.completed_at and new.completed_at < existing.completed_at)


def write_conflict(existing: ResearchJob | None, new: ResearchJob) -> str | None:
    """Status precedence for job records.

    `completed` and `failed` are terminal: nothing moves a record back to
    `processing`, and only `failed -> completed` changes a terminal status.
    Within the same status the later `completed_at` wins.
    """
    if existing is None or existing.status == JobStatus.PROCESSING:
        return None
    if new.status == JobStatus.PROCESSING:
        return f"already {existing.status.value}"
    if existing.status == JobStatus.COMPLETED and new.status != JobStatus.COMPLETED:
        return "already completed"
    if existing.status == new.status and _is_older(new, existing):
        return "stale record"
    return None


async def record_result(store: ResultStore, job: ResearchJob) -> bool:
    """Write a job record unless a stored record takes precedence.

    Both the in-pipeline consolidation and the webhook receiver land here, and
    either may be replayed; rewriting the same record is a no-op in effect.
    Returns False when the write is skipped.
    """
    reason = await store.set_unless(job.research_id, job, write_conflict)
    if reason is not None:
        log.info("store.write_skipped", research_id=job.research_id, status=job.status.value, reason=reason)
        return False
    log.info("store.written", research_id=job.research_id, status=job.status.value)
    return True
