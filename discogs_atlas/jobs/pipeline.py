"""Resumable collection analysis pipeline.

A run is a sequence of named steps (start, collect, sample, analyze, finalize).
Each call to :func:`advance_pipeline` executes exactly one step: it reads the
persisted checkpoint, performs that step's work, and writes the next checkpoint.
Aggregates and the analysis cursor are written together, so re-running a step
after an interruption never counts an item twice.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from uuid import uuid4

from discogs_atlas.core.config import Settings
from discogs_atlas.core.telemetry import job_span
from discogs_atlas.jobs.analysis import LabelAggregates, analyze_items
from discogs_atlas.jobs.collection import CollectionProgress, collect_collection
from discogs_atlas.jobs.retention import lease_expired
from discogs_atlas.jobs.sampling import sample_items
from discogs_atlas.schemas.jobs import (
    TERMINAL_STATUSES,
    AnalysisOptions,
    Job,
    JobProgress,
    JobResult,
    JobStatus,
    PipelineCheckpoint,
    PipelineStep,
)
from discogs_atlas.services.discogs_client import DiscogsClient
from discogs_atlas.services.store import JobStore

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]
SleepFn = Callable[[float], Awaitable[None]]

COLLECT_PERCENT_START = 5.0
COLLECT_PERCENT_SPAN = 10.0
ANALYZE_PERCENT_START = 15.0
ANALYZE_PERCENT_SPAN = 84.0
MAX_RUNNING_PERCENT = 99.0


class JobStateError(Exception):
    """Raised when a job status transition is not allowed."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def validate_status_transition(*, from_status: JobStatus, to_status: JobStatus) -> None:
    allowed_transitions = {
        JobStatus.PENDING: {JobStatus.PROCESSING, JobStatus.FAILED},
        JobStatus.PROCESSING: {JobStatus.COMPLETED, JobStatus.FAILED},
        JobStatus.COMPLETED: set(),
        JobStatus.FAILED: set(),
    }
    if to_status == from_status and from_status not in TERMINAL_STATUSES:
        return
    if to_status not in allowed_transitions[from_status]:
        raise JobStateError(f"invalid job status transition: {from_status.value} -> {to_status.value}")


@dataclass(slots=True)
class PipelineConfig:
    page_size: int = 50
    batch_size: int = 5
    progress_interval: int = 5
    item_pacing_seconds: float = 0.0
    lease_seconds: int = 300

    @classmethod
    def from_settings(cls, settings: Settings) -> PipelineConfig:
        return cls(
            page_size=settings.collection_page_size,
            batch_size=max(1, settings.analysis_batch_size),
            item_pacing_seconds=max(0.0, settings.item_pacing_seconds),
            lease_seconds=max(1, settings.run_lease_seconds),
        )


@dataclass(slots=True)
class StepOutcome:
    step: PipelineStep
    finished: bool
    resume_at: datetime | None = None
    blocked: bool = False


@dataclass(slots=True)
class _StepContext:
    store: JobStore
    client: DiscogsClient
    job: Job
    checkpoint: PipelineCheckpoint
    config: PipelineConfig
    clock: Clock
    rng: random.Random | None = None

    async def save_job(self) -> None:
        self.job.updated_at = self.clock()
        await self.store.set(self.job.id, self.job)

    async def save_checkpoint(self) -> None:
        self.checkpoint.updated_at = self.clock()
        await self.store.set_checkpoint(self.job.id, self.checkpoint)

    async def renew_lease(self) -> None:
        """Push the lease deadline out ahead of the next upstream call.

        Only the lease columns are written, never the step position.
        """
        self.checkpoint.lease_expires_at = self.clock() + timedelta(seconds=self.config.lease_seconds)
        await self.store.touch_lease(self.job.id, self.checkpoint.lease_owner, self.checkpoint.lease_expires_at)


async def advance_pipeline(
    store: JobStore,
    client: DiscogsClient,
    job_id: str,
    *,
    options: AnalysisOptions | None = None,
    config: PipelineConfig | None = None,
    owner: str = "local",
    rng: random.Random | None = None,
    clock: Clock = _utcnow,
) -> StepOutcome:
    """Execute the next pending step of a run and persist its checkpoint.

    ``options`` only seed a brand new checkpoint; a resumed run keeps the
    options it started with.
    """
    config = config or PipelineConfig()
    job = await store.get(job_id)
    if job is None:
        logger.error("job not found id=%s; aborting run", job_id)
        return StepOutcome(step=PipelineStep.START, finished=True)

    checkpoint = await store.get_checkpoint(job_id)
    if checkpoint is None:
        checkpoint = PipelineCheckpoint(job_id=job_id, options=options or AnalysisOptions())

    if job.status in TERMINAL_STATUSES or checkpoint.step == PipelineStep.DONE:
        return StepOutcome(step=checkpoint.step, finished=True)

    now = clock()
    if checkpoint.lease_owner not in {None, owner} and not lease_expired(checkpoint, now=now):
        logger.info("run for job id=%s is leased by %s; skipping", job_id, checkpoint.lease_owner)
        return StepOutcome(step=checkpoint.step, finished=True, blocked=True)
    if checkpoint.resume_at is not None and checkpoint.resume_at > now:
        return StepOutcome(step=checkpoint.step, finished=False, resume_at=checkpoint.resume_at)

    checkpoint.resume_at = None
    checkpoint.lease_owner = owner
    checkpoint.lease_expires_at = now + timedelta(seconds=config.lease_seconds)

    context = _StepContext(
        store=store,
        client=client,
        job=job,
        checkpoint=checkpoint,
        config=config,
        clock=clock,
        rng=rng,
    )
    step = checkpoint.step
    handler = _STEP_HANDLERS[step]
    with job_span("pipeline.step", job_id=job_id, step=step.value):
        # Claim the run before any upstream call so other runners see a live lease.
        await context.save_checkpoint()
        try:
            return await handler(context)
        except Exception as exc:
            logger.exception("pipeline step failed job_id=%s step=%s", job_id, step.value)
            await _fail_run(context, exc)
            return StepOutcome(step=step, finished=True)


async def run_pipeline(
    store: JobStore,
    client: DiscogsClient,
    job_id: str,
    *,
    options: AnalysisOptions | None = None,
    config: PipelineConfig | None = None,
    owner: str | None = None,
    rng: random.Random | None = None,
    clock: Clock = _utcnow,
    sleep: SleepFn = asyncio.sleep,
) -> Job | None:
    """Advance a run step by step until it finishes.

    Durable delays are honoured by sleeping until the persisted ``resume_at``;
    if this process stops while waiting, the checkpoint still carries the
    deadline and the run resumes from the same position.
    """
    owner = owner or f"runner-{uuid4()}"
    while True:
        outcome = await advance_pipeline(
            store,
            client,
            job_id,
            options=options,
            config=config,
            owner=owner,
            rng=rng,
            clock=clock,
        )
        if outcome.finished:
            break
        if outcome.resume_at is not None:
            delay = (outcome.resume_at - clock()).total_seconds()
            if delay > 0:
                await sleep(delay)
    return await store.get(job_id)


async def _start(context: _StepContext) -> StepOutcome:
    job = context.job
    validate_status_transition(from_status=job.status, to_status=JobStatus.PROCESSING)
    job.status = JobStatus.PROCESSING
    job.progress.message = "Fetching collection list..."
    _raise_percent(job.progress, COLLECT_PERCENT_START)
    await context.save_job()

    context.checkpoint.step = PipelineStep.COLLECT
    await context.save_checkpoint()
    return StepOutcome(step=PipelineStep.START, finished=False)


async def _collect(context: _StepContext) -> StepOutcome:
    job = context.job

    async def on_page(progress: CollectionProgress) -> None:
        job.progress.pages_fetched = progress.pages_fetched
        job.progress.total_pages = progress.total_pages
        job.progress.total_items = progress.total_items
        ratio = min(1.0, progress.pages_fetched / max(progress.total_pages, 1))
        _raise_percent(job.progress, COLLECT_PERCENT_START + ratio * COLLECT_PERCENT_SPAN)
        job.progress.message = f"Fetching page {progress.pages_fetched} of {max(progress.total_pages, 1)}"
        await context.save_job()

    collected = await collect_collection(
        context.client,
        job.subject_id,
        page_size=context.config.page_size,
        on_page=on_page,
        before_page=context.renew_lease,
    )
    logger.info(
        "collected %s items across %s pages for job id=%s",
        len(collected.items),
        collected.total_pages,
        job.id,
    )

    context.checkpoint.items = collected.items
    context.checkpoint.step = PipelineStep.SAMPLE
    await context.save_checkpoint()
    return StepOutcome(step=PipelineStep.COLLECT, finished=False)


async def _sample(context: _StepContext) -> StepOutcome:
    checkpoint = context.checkpoint
    options = checkpoint.options
    rng = context.rng or random.Random(options.sample_seed)
    collected_count = len(checkpoint.items)
    items = sample_items(checkpoint.items, options.sample_size, rng=rng)

    checkpoint.items = items
    checkpoint.cursor = 0
    checkpoint.country_counts = {}
    checkpoint.label_rows = []
    checkpoint.step = PipelineStep.ANALYZE if items else PipelineStep.FINALIZE
    await context.save_checkpoint()

    progress = context.job.progress
    progress.items_to_analyze = len(items)
    progress.items_processed = 0
    if len(items) < collected_count:
        progress.message = f"Sampling {len(items)} of {collected_count} items..."
    else:
        progress.message = f"Analyzing 0 of {len(items)}"
    await context.save_job()
    return StepOutcome(step=PipelineStep.SAMPLE, finished=False)


async def _analyze(context: _StepContext) -> StepOutcome:
    checkpoint = context.checkpoint
    job = context.job
    total = len(checkpoint.items)
    cursor = min(checkpoint.cursor, total)
    batch = checkpoint.items[cursor : cursor + context.config.batch_size]
    aggregates = LabelAggregates(checkpoint.country_counts, checkpoint.label_rows)

    async def on_progress(processed: int) -> None:
        job.progress.items_processed = processed
        job.progress.items_to_analyze = total
        _raise_percent(job.progress, ANALYZE_PERCENT_START + (processed / max(total, 1)) * ANALYZE_PERCENT_SPAN)
        job.progress.message = f"Analyzing {processed} of {total}"
        await context.save_job()

    processed = await analyze_items(
        context.client,
        batch,
        aggregates,
        all_labels=checkpoint.options.all_labels,
        start=cursor,
        on_progress=on_progress,
        before_item=context.renew_lease,
        progress_interval=context.config.progress_interval,
    )

    checkpoint.cursor = processed
    checkpoint.country_counts = aggregates.country_counts
    checkpoint.label_rows = aggregates.label_rows
    if processed >= total:
        checkpoint.step = PipelineStep.FINALIZE
    elif context.config.item_pacing_seconds > 0:
        checkpoint.resume_at = context.clock() + timedelta(seconds=context.config.item_pacing_seconds)
    await context.save_checkpoint()
    return StepOutcome(step=PipelineStep.ANALYZE, finished=False, resume_at=checkpoint.resume_at)


async def _finalize(context: _StepContext) -> StepOutcome:
    checkpoint = context.checkpoint
    job = context.job
    aggregates = LabelAggregates(checkpoint.country_counts, checkpoint.label_rows)

    validate_status_transition(from_status=job.status, to_status=JobStatus.COMPLETED)
    job.result = JobResult(
        country_counts=dict(aggregates.country_counts),
        label_rows=aggregates.sorted_label_rows(),
    )
    job.status = JobStatus.COMPLETED
    job.error = None
    job.progress.items_processed = checkpoint.cursor
    job.progress.percent = 100.0
    job.progress.message = "Complete"
    await context.save_job()

    checkpoint.step = PipelineStep.DONE
    checkpoint.lease_owner = None
    checkpoint.lease_expires_at = None
    await context.save_checkpoint()
    logger.info(
        "job id=%s completed countries=%s label_rows=%s",
        job.id,
        len(job.result.country_counts),
        len(job.result.label_rows),
    )
    return StepOutcome(step=PipelineStep.FINALIZE, finished=True)


async def _fail_run(context: _StepContext, exc: Exception) -> None:
    # Reload so progress stays at its last persisted value.
    job = await context.store.get(context.job.id) or context.job
    if job.status in TERMINAL_STATUSES:
        return
    validate_status_transition(from_status=job.status, to_status=JobStatus.FAILED)
    job.status = JobStatus.FAILED
    job.error = str(exc) or type(exc).__name__
    job.result = None
    job.updated_at = context.clock()
    await context.store.set(job.id, job)

    context.checkpoint.step = PipelineStep.DONE
    context.checkpoint.lease_owner = None
    context.checkpoint.lease_expires_at = None
    await context.save_checkpoint()


def _raise_percent(progress: JobProgress, value: float) -> None:
    progress.percent = round(max(progress.percent, min(value, MAX_RUNNING_PERCENT)), 2)


_STEP_HANDLERS: dict[PipelineStep, Callable[[_StepContext], Awaitable[StepOutcome]]] = {
    PipelineStep.START: _start,
    PipelineStep.COLLECT: _collect,
    PipelineStep.SAMPLE: _sample,
    PipelineStep.ANALYZE: _analyze,
    PipelineStep.FINALIZE: _finalize,
}
