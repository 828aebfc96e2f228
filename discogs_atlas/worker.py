from __future__ import annotations

import asyncio
import logging
import random
import time
from datetime import datetime, timezone

from opentelemetry import trace

from discogs_atlas.core.config import Settings, get_settings
from discogs_atlas.core.telemetry import configure_logging, job_span, setup_telemetry, shutdown_telemetry
from discogs_atlas.jobs.dispatcher import default_owner
from discogs_atlas.jobs.pipeline import PipelineConfig, run_pipeline
from discogs_atlas.services.discogs_client import DiscogsClient
from discogs_atlas.services.store import JobStore, build_job_store

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


async def resume_due_runs(
    store: JobStore,
    client: DiscogsClient,
    *,
    config: PipelineConfig,
    owner: str,
    limit: int,
) -> int:
    """Advance every run whose lease has lapsed and whose delay is due.

    Resumed runs have no caller credentials; they continue with the
    application-level Discogs credentials only.
    """
    checkpoints = await store.list_resumable(datetime.now(timezone.utc), limit)
    for checkpoint in checkpoints:
        with job_span("worker.resume_run", job_id=checkpoint.job_id, step=checkpoint.step.value):
            logger.info("resuming job id=%s at step=%s", checkpoint.job_id, checkpoint.step.value)
            await run_pipeline(store, client, checkpoint.job_id, config=config, owner=owner)
    return len(checkpoints)


async def run_worker(settings: Settings | None = None) -> None:
    settings = settings or get_settings()
    configure_logging(settings.log_level)
    telemetry_runtime = setup_telemetry(settings, service_suffix="worker")
    store = build_job_store(settings)
    if store.degraded:
        logger.warning("worker has no durable job store; only runs started by this process are visible")
    client = DiscogsClient.from_settings(settings)
    config = PipelineConfig.from_settings(settings)
    owner = default_owner("worker")

    backoff = settings.worker_poll_interval_seconds
    last_purge_at = 0.0

    try:
        while True:
            try:
                with tracer.start_as_current_span("worker.poll_cycle"):
                    now = time.monotonic()
                    if now - last_purge_at >= settings.purge_interval_seconds:
                        purged = await store.purge_expired()
                        if purged:
                            logger.info("purged expired jobs: %s", purged)
                        last_purge_at = now

                    resumed = await resume_due_runs(
                        store,
                        client,
                        config=config,
                        owner=owner,
                        limit=settings.worker_batch_size,
                    )
                    if not resumed:
                        await asyncio.sleep(settings.worker_poll_interval_seconds)
                        continue

                    backoff = settings.worker_poll_interval_seconds
            except Exception as exc:  # pragma: no cover - bootstrap robustness
                jitter = random.uniform(0.0, 0.5)
                sleep_for = min(backoff * (2.0 + jitter), settings.worker_max_backoff_seconds)
                logger.exception("worker iteration failed: %s; retry in %.1fs", exc, sleep_for)
                await asyncio.sleep(sleep_for)
                backoff = sleep_for
    finally:
        await store.close()
        shutdown_telemetry(telemetry_runtime)


if __name__ == "__main__":
    asyncio.run(run_worker())
