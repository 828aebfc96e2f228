from __future__ import annotations

import asyncio
from datetime import datetime, timedelta

import pytest

from discogs_atlas.core.config import Settings
from discogs_atlas.schemas.jobs import Job, JobStatus, PipelineCheckpoint, PipelineStep
from discogs_atlas.services.store import (
    InMemoryJobStore,
    JobStore,
    StoreUnavailableError,
    build_job_store,
    purge_expired_periodically,
)
from fakes import FakeClock


class FailingBackend:
    def __init__(self) -> None:
        self.calls = 0

    async def _fail(self, *args, **kwargs):
        self.calls += 1
        raise StoreUnavailableError("database unavailable")

    get = set = get_checkpoint = set_checkpoint = touch_lease = list_resumable = purge_expired = _fail

    async def close(self) -> None:
        return None


class DictBackend:
    def __init__(self) -> None:
        self.jobs: dict[str, Job] = {}
        self.checkpoints: dict[str, PipelineCheckpoint] = {}

    async def get(self, job_id: str) -> Job | None:
        job = self.jobs.get(job_id)
        return job.model_copy(deep=True) if job else None

    async def set(self, job_id: str, job: Job) -> None:
        self.jobs[job_id] = job.model_copy(deep=True)

    async def get_checkpoint(self, job_id: str) -> PipelineCheckpoint | None:
        return self.checkpoints.get(job_id)

    async def set_checkpoint(self, job_id: str, checkpoint: PipelineCheckpoint) -> None:
        self.checkpoints[job_id] = checkpoint.model_copy(deep=True)

    async def touch_lease(self, job_id: str, owner: str | None, lease_expires_at: datetime) -> None:
        checkpoint = self.checkpoints[job_id]
        checkpoint.lease_owner = owner
        checkpoint.lease_expires_at = lease_expires_at

    async def list_resumable(self, now: datetime, limit: int) -> list[PipelineCheckpoint]:
        return list(self.checkpoints.values())[:limit]

    async def purge_expired(self) -> int:
        return 0

    async def close(self) -> None:
        return None


def test_memory_store_returns_copies() -> None:
    store = InMemoryJobStore()
    job = Job(subject_id="digger")

    async def run() -> None:
        await store.set(job.id, job)
        job.status = JobStatus.FAILED

        loaded = await store.get(job.id)
        assert loaded is not None
        assert loaded.status == JobStatus.PENDING

        loaded.progress.percent = 50.0
        reloaded = await store.get(job.id)
        assert reloaded is not None
        assert reloaded.progress.percent == 0.0

    asyncio.run(run())


def test_memory_store_expires_records_after_retention() -> None:
    clock = FakeClock()
    store = InMemoryJobStore(retention_hours=24, clock=clock)
    job = Job(subject_id="digger")

    async def run() -> None:
        await store.set(job.id, job)
        await store.set_checkpoint(job.id, PipelineCheckpoint(job_id=job.id))

        clock.advance(23 * 3600)
        assert await store.get(job.id) is not None

        clock.advance(3600)
        assert await store.purge_expired() == 1
        assert await store.purge_expired() == 0
        assert await store.get(job.id) is None
        assert await store.get_checkpoint(job.id) is None

    asyncio.run(run())


def test_memory_store_write_extends_retention() -> None:
    clock = FakeClock()
    store = InMemoryJobStore(retention_hours=24, clock=clock)
    job = Job(subject_id="digger")

    async def run() -> None:
        await store.set(job.id, job)
        clock.advance(20 * 3600)
        await store.set(job.id, job)
        clock.advance(20 * 3600)
        assert await store.get(job.id) is not None

    asyncio.run(run())


def test_list_resumable_skips_done_parked_and_leased_runs() -> None:
    clock = FakeClock()
    store = InMemoryJobStore(clock=clock)
    now = clock.now

    checkpoints = {
        "fresh": PipelineCheckpoint(job_id="fresh", updated_at=now - timedelta(minutes=5)),
        "done": PipelineCheckpoint(job_id="done", step=PipelineStep.DONE),
        "parked": PipelineCheckpoint(
            job_id="parked",
            step=PipelineStep.ANALYZE,
            resume_at=now + timedelta(seconds=30),
        ),
        "leased": PipelineCheckpoint(
            job_id="leased",
            step=PipelineStep.COLLECT,
            lease_owner="worker-b",
            lease_expires_at=now + timedelta(minutes=1),
        ),
        "abandoned": PipelineCheckpoint(
            job_id="abandoned",
            step=PipelineStep.ANALYZE,
            lease_owner="worker-b",
            lease_expires_at=now - timedelta(minutes=1),
            updated_at=now - timedelta(minutes=10),
        ),
    }

    async def run() -> list[PipelineCheckpoint]:
        for job_id, checkpoint in checkpoints.items():
            await store.set_checkpoint(job_id, checkpoint)
        return await store.list_resumable(now, limit=10)

    resumable = asyncio.run(run())
    assert [checkpoint.job_id for checkpoint in resumable] == ["abandoned", "fresh"]

    limited = asyncio.run(store.list_resumable(now, limit=1))
    assert [checkpoint.job_id for checkpoint in limited] == ["abandoned"]


def test_job_store_falls_back_to_memory_after_backend_failure(caplog) -> None:
    backend = FailingBackend()
    store = JobStore(backend=backend)  # type: ignore[arg-type]
    job = Job(subject_id="digger")

    async def run() -> Job | None:
        await store.set(job.id, job)
        await store.set_checkpoint(job.id, PipelineCheckpoint(job_id=job.id))
        assert await store.get_checkpoint(job.id) is not None
        return await store.get(job.id)

    with caplog.at_level("WARNING"):
        loaded = asyncio.run(run())

    assert loaded is not None
    assert loaded.id == job.id
    assert store.degraded is True
    assert backend.calls == 1
    assert sum("continuing in memory only" in record.message for record in caplog.records) == 1


def test_job_store_reads_from_healthy_backend() -> None:
    backend = DictBackend()
    store = JobStore(backend=backend)  # type: ignore[arg-type]
    job = Job(subject_id="digger")

    async def run() -> None:
        await store.set(job.id, job)
        assert job.id in backend.jobs

        backend.jobs[job.id].status = JobStatus.PROCESSING
        loaded = await store.get(job.id)
        assert loaded is not None
        assert loaded.status == JobStatus.PROCESSING

    asyncio.run(run())
    assert store.degraded is False


def test_build_job_store_without_database_is_memory_only() -> None:
    store = build_job_store(Settings(database_url=None, job_retention_hours=6))

    assert store.backend is None
    assert store.degraded is True
    assert store.memory.retention == timedelta(hours=6)


def test_memory_store_drops_expired_records_on_read() -> None:
    clock = FakeClock()
    store = InMemoryJobStore(retention_hours=24, clock=clock)
    jobs = [Job(subject_id=f"digger-{index}") for index in range(3)]

    async def run() -> None:
        for job in jobs:
            await store.set(job.id, job)
            await store.set_checkpoint(job.id, PipelineCheckpoint(job_id=job.id))
        clock.advance(25 * 3600)
        for job in jobs:
            assert await store.get(job.id) is None
            assert await store.get_checkpoint(job.id) is None

    asyncio.run(run())
    assert store._jobs == {}
    assert store._checkpoints == {}


class StopPurging(Exception):
    pass


def test_periodic_purge_reclaims_records_nobody_reads() -> None:
    clock = FakeClock()
    store = JobStore(memory=InMemoryJobStore(retention_hours=24, clock=clock))
    intervals: list[float] = []

    async def sleep(seconds: float) -> None:
        intervals.append(seconds)
        if len(intervals) > 2:
            raise StopPurging
        clock.advance(13 * 3600)

    async def run() -> None:
        for index in range(3):
            job = Job(subject_id=f"digger-{index}")
            await store.set(job.id, job)
            await store.set_checkpoint(job.id, PipelineCheckpoint(job_id=job.id))
        with pytest.raises(StopPurging):
            await purge_expired_periodically(store, 600.0, sleep=sleep)

    asyncio.run(run())
    assert intervals == [600.0, 600.0, 600.0]
    assert store.memory._jobs == {}
    assert store.memory._checkpoints == {}


def test_touch_lease_keeps_running_checkpoint_out_of_resumable_list() -> None:
    clock = FakeClock()
    store = JobStore(memory=InMemoryJobStore(clock=clock))
    checkpoint = PipelineCheckpoint(
        job_id="running",
        step=PipelineStep.COLLECT,
        lease_owner="api-1",
        lease_expires_at=clock.now + timedelta(seconds=300),
    )

    async def run() -> None:
        await store.set_checkpoint("running", checkpoint)
        clock.advance(250)
        await store.touch_lease("running", "api-1", clock.now + timedelta(seconds=300))
        clock.advance(250)
        assert await store.list_resumable(clock.now, limit=10) == []

        stored = await store.get_checkpoint("running")
        assert stored is not None
        assert stored.step == PipelineStep.COLLECT
        assert stored.lease_expires_at == clock.now + timedelta(seconds=50)

        clock.advance(51)
        assert [item.job_id for item in await store.list_resumable(clock.now, limit=10)] == ["running"]

    asyncio.run(run())
