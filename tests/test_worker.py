from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

from discogs_atlas import worker
from discogs_atlas.jobs.pipeline import PipelineConfig
from discogs_atlas.schemas.jobs import Job, JobStatus, PipelineCheckpoint, PipelineStep
from discogs_atlas.services.store import JobStore
from fakes import FakeDiscogs, release_entry


def test_resume_due_runs_finishes_abandoned_run() -> None:
    fake = FakeDiscogs("digger", [release_entry(1, (10, "Warp"))], countries={1: "UK"})
    store = JobStore()
    now = datetime.now(timezone.utc)

    async def run() -> tuple[int, Job | None]:
        job = Job(subject_id="digger")
        await store.set(job.id, job)
        await store.set_checkpoint(
            job.id,
            PipelineCheckpoint(
                job_id=job.id,
                lease_owner="api-gone-123",
                lease_expires_at=now - timedelta(minutes=1),
            ),
        )
        resumed = await worker.resume_due_runs(
            store,
            fake.client(),
            config=PipelineConfig(),
            owner="worker-test",
            limit=5,
        )
        return resumed, await store.get(job.id)

    resumed, job = asyncio.run(run())

    assert resumed == 1
    assert job is not None
    assert job.status == JobStatus.COMPLETED
    assert job.result is not None
    assert job.result.country_counts == {"GB": 1}


def test_resume_due_runs_leaves_live_and_finished_runs_alone(monkeypatch) -> None:
    fake = FakeDiscogs("digger", [])
    store = JobStore()
    now = datetime.now(timezone.utc)
    resumed_ids: list[str] = []

    async def fake_run_pipeline(store, client, job_id, **kwargs):
        resumed_ids.append(job_id)
        return None

    monkeypatch.setattr(worker, "run_pipeline", fake_run_pipeline)

    async def run() -> int:
        await store.set_checkpoint(
            "live",
            PipelineCheckpoint(job_id="live", lease_owner="api-1", lease_expires_at=now + timedelta(minutes=5)),
        )
        await store.set_checkpoint("done", PipelineCheckpoint(job_id="done", step=PipelineStep.DONE))
        await store.set_checkpoint("due", PipelineCheckpoint(job_id="due", step=PipelineStep.ANALYZE))
        return await worker.resume_due_runs(store, fake.client(), config=PipelineConfig(), owner="w", limit=5)

    assert asyncio.run(run()) == 1
    assert resumed_ids == ["due"]
