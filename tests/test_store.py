"""Tests for result stores and job record precedence."""

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from fakes import make_settings
from redis.exceptions import WatchError

from research_relay.models import ConsolidatedResult, GeneratedSection, JobStatus, ResearchJob, SubQuery
from research_relay.store import (
    MemoryResultStore,
    RedisResultStore,
    create_store,
    record_result,
    write_conflict,
)

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def _completed(research_id: str = "research-1-abc", *, at: datetime = T0, content: str = "Findings") -> ResearchJob:
    sub_query = SubQuery(query="battery costs", type="what")
    result = ConsolidatedResult(
        research_id=research_id,
        query="batteries",
        completed_at=at,
        search_queries=[sub_query],
        blogs=[GeneratedSection(query=sub_query, content=content)],
    )
    return ResearchJob(
        research_id=research_id,
        query="batteries",
        status=JobStatus.COMPLETED,
        results=result,
        completed_at=at,
        cached_at=at,
    )


def _failed(research_id: str = "research-1-abc", *, at: datetime = T0) -> ResearchJob:
    return ResearchJob(research_id=research_id, status=JobStatus.FAILED, error="Research failed", completed_at=at)


class TestMemoryResultStore:
    @pytest.mark.asyncio
    async def test__missing_key__returns_none(self) -> None:
        assert await MemoryResultStore().get("research-unknown") is None

    @pytest.mark.asyncio
    async def test__set_then_get__returns_equal_job(self) -> None:
        store = MemoryResultStore()
        job = _completed()
        await store.set(job.research_id, job)
        assert await store.get(job.research_id) == job

    @pytest.mark.asyncio
    async def test__returned_jobs__are_independent_copies(self) -> None:
        store = MemoryResultStore()
        await store.set("r", _completed("r"))
        first = await store.get("r")
        assert first is not None
        first.query = "mutated"
        second = await store.get("r")
        assert second is not None
        assert second.query == "batteries"


class TestRedisResultStore:
    @pytest.mark.asyncio
    async def test__set__writes_prefixed_key_with_ttl(self) -> None:
        client = AsyncMock()
        store = RedisResultStore(client, ttl_seconds=3600)
        job = _completed()

        await store.set(job.research_id, job)

        key, value = client.set.await_args.args
        assert key == "research:research-1-abc"
        assert client.set.await_args.kwargs == {"ex": 3600}
        assert ResearchJob.model_validate_json(value) == job

    @pytest.mark.asyncio
    async def test__zero_ttl__writes_without_expiry(self) -> None:
        client = AsyncMock()
        await RedisResultStore(client).set("r", _failed("r"))
        assert client.set.await_args.kwargs == {"ex": None}

    @pytest.mark.asyncio
    async def test__get__decodes_stored_json(self) -> None:
        job = _completed()
        client = AsyncMock()
        client.get.return_value = job.model_dump_json(by_alias=True)

        assert await RedisResultStore(client).get(job.research_id) == job
        client.get.assert_awaited_once_with("research:research-1-abc")

    @pytest.mark.asyncio
    async def test__get__missing_key__returns_none(self) -> None:
        client = AsyncMock()
        client.get.return_value = None
        assert await RedisResultStore(client).get("r") is None

    @pytest.mark.asyncio
    async def test__aclose__closes_client(self) -> None:
        client = AsyncMock()
        await RedisResultStore(client).aclose()
        client.aclose.assert_awaited_once()


class TestCreateStore:
    def test__no_redis_url__uses_memory(self) -> None:
        assert isinstance(create_store(make_settings()), MemoryResultStore)

    def test__redis_url__uses_redis(self) -> None:
        store = create_store(make_settings(redis_url="redis://localhost:6379/0", result_ttl_seconds=60))
        assert isinstance(store, RedisResultStore)


class TestRecordResult:
    @pytest.mark.asyncio
    async def test__empty_store__writes(self) -> None:
        store = MemoryResultStore()
        assert await record_result(store, _completed()) is True
        assert len(store) == 1

    @pytest.mark.asyncio
    async def test__same_record_twice__is_idempotent(self) -> None:
        store = MemoryResultStore()
        job = _completed()

        assert await record_result(store, job) is True
        assert await record_result(store, job) is True

        assert len(store) == 1
        assert await store.get(job.research_id) == job

    @pytest.mark.asyncio
    async def test__newer_completion__replaces_older(self) -> None:
        store = MemoryResultStore()
        await record_result(store, _completed(at=T0, content="first"))
        await record_result(store, _completed(at=T0 + timedelta(seconds=5), content="second"))

        stored = await store.get("research-1-abc")
        assert stored is not None and stored.results is not None
        assert stored.results.blogs[0].content == "second"

    @pytest.mark.asyncio
    async def test__stale_completion__is_skipped(self) -> None:
        store = MemoryResultStore()
        await record_result(store, _completed(at=T0, content="current"))

        written = await record_result(store, _completed(at=T0 - timedelta(minutes=1), content="stale"))

        assert written is False
        stored = await store.get("research-1-abc")
        assert stored is not None and stored.results is not None
        assert stored.results.blogs[0].content == "current"

    @pytest.mark.asyncio
    async def test__failure__never_overwrites_completed(self) -> None:
        store = MemoryResultStore()
        await record_result(store, _completed())

        written = await record_result(store, _failed(at=T0 + timedelta(minutes=1)))

        assert written is False
        stored = await store.get("research-1-abc")
        assert stored is not None
        assert stored.status == JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test__completion__overwrites_failure(self) -> None:
        store = MemoryResultStore()
        await record_result(store, _failed())
        await record_result(store, _completed(at=T0 + timedelta(seconds=1)))

        stored = await store.get("research-1-abc")
        assert stored is not None
        assert stored.status == JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test__processing__never_overwrites_failed(self) -> None:
        store = MemoryResultStore()
        await record_result(store, _failed())

        processing = ResearchJob(research_id="research-1-abc", status=JobStatus.PROCESSING, completed_at=T0)
        written = await record_result(store, processing)

        assert written is False
        stored = await store.get("research-1-abc")
        assert stored is not None
        assert stored.status == JobStatus.FAILED

    @pytest.mark.asyncio
    async def test__stale_failure__is_skipped(self) -> None:
        store = MemoryResultStore()
        await record_result(store, _failed(at=T0))
        assert await record_result(store, _failed(at=T0 - timedelta(seconds=1))) is False


class TestWriteConflict:
    @pytest.mark.parametrize(
        "existing,new,expected",
        [
            (None, _failed(), None),
            (_failed(), _completed(), None),
            (_completed(), _completed(at=T0 + timedelta(seconds=1)), None),
            (_completed(), _completed(), None),
            (_completed(), _failed(at=T0 + timedelta(hours=1)), "already completed"),
            (_failed(), ResearchJob(research_id="research-1-abc", status=JobStatus.PROCESSING), "already failed"),
            (_completed(), _completed(at=T0 - timedelta(seconds=1)), "stale record"),
        ],
    )
    def test__precedence(self, existing: ResearchJob | None, new: ResearchJob, expected: str | None) -> None:
        assert write_conflict(existing, new) == expected


class FakePipeline:
    """Stand-in for a redis transaction pipeline; optionally loses the first WATCH race."""

    def __init__(self, stored: str | None, *, contended: bool = False) -> None:
        self.stored = stored
        self.contended = contended
        self.calls: list[str] = []
        self.queued: list[tuple[str, str, int | None]] = []

    async def __aenter__(self) -> "FakePipeline":
        return self

    async def __aexit__(self, *exc: object) -> None:
        return None

    async def watch(self, key: str) -> None:
        self.calls.append(f"watch {key}")

    async def unwatch(self) -> None:
        self.calls.append("unwatch")

    async def get(self, key: str) -> str | None:
        return self.stored

    def multi(self) -> None:
        self.calls.append("multi")

    def set(self, key: str, value: str, ex: int | None = None) -> None:
        self.queued.append((key, value, ex))

    async def execute(self) -> list[bool]:
        self.calls.append("execute")
        if self.contended:
            self.contended = False
            self.queued.clear()
            raise WatchError("key changed")
        self.stored = self.queued[-1][1]
        return [True]


def _redis_with(pipe: FakePipeline) -> MagicMock:
    client = MagicMock()
    client.pipeline.return_value = pipe
    return client


class TestRedisConditionalWrite:
    @pytest.mark.asyncio
    async def test__empty_key__writes_in_transaction(self) -> None:
        pipe = FakePipeline(None)
        store = RedisResultStore(_redis_with(pipe), ttl_seconds=60)

        assert await record_result(store, _completed()) is True

        assert pipe.calls == ["watch research:research-1-abc", "multi", "execute"]
        assert pipe.queued[0][2] == 60
        assert ResearchJob.model_validate_json(pipe.stored) == _completed()

    @pytest.mark.asyncio
    async def test__lost_race__rereads_and_retries(self) -> None:
        pipe = FakePipeline(None, contended=True)
        store = RedisResultStore(_redis_with(pipe))

        assert await record_result(store, _completed()) is True

        assert pipe.calls.count("execute") == 2
        assert pipe.calls.count("watch research:research-1-abc") == 2

    @pytest.mark.asyncio
    async def test__stale_completion__is_refused_without_writing(self) -> None:
        current = _completed(at=T0, content="current").model_dump_json(by_alias=True)
        pipe = FakePipeline(current)
        store = RedisResultStore(_redis_with(pipe))

        written = await record_result(store, _completed(at=T0 - timedelta(minutes=5), content="stale"))

        assert written is False
        assert pipe.calls == ["watch research:research-1-abc", "unwatch"]
        assert pipe.stored == current
