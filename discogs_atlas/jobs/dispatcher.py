"""In-process trigger for analysis runs.

Each triggered run becomes an asyncio task; ``trigger`` returns as soon as the
task is scheduled and callers observe the run only through the job store.
"""

from __future__ import annotations

import asyncio
import logging
import os
import socket
from collections.abc import Callable

from discogs_atlas.jobs.pipeline import PipelineConfig, run_pipeline
from discogs_atlas.schemas.jobs import AnalysisTrigger
from discogs_atlas.services.discogs_client import DiscogsClient
from discogs_atlas.services.store import JobStore

logger = logging.getLogger(__name__)

ClientFactory = Callable[[str | None], DiscogsClient]


def default_owner(prefix: str) -> str:
    return f"{prefix}-{socket.gethostname()}-{os.getpid()}"


class PipelineDispatcher:
    def __init__(
        self,
        store: JobStore,
        *,
        client_factory: ClientFactory,
        config: PipelineConfig | None = None,
        owner: str | None = None,
    ) -> None:
        self.store = store
        self.config = config or PipelineConfig()
        self.owner = owner or default_owner("api")
        self._client_factory = client_factory
        self._tasks: dict[str, asyncio.Task[None]] = {}

    def is_running(self, job_id: str) -> bool:
        task = self._tasks.get(job_id)
        return task is not None and not task.done()

    async def trigger(self, trigger: AnalysisTrigger) -> bool:
        """Start or resume the run for ``trigger.job_id``.

        Returns False when a run for that job is already active in this process.
        """
        if self.is_running(trigger.job_id):
            logger.info("analysis already running for job id=%s", trigger.job_id)
            return False

        client = self._client_factory(trigger.credentials)
        task = asyncio.create_task(self._run(trigger, client), name=f"analysis-{trigger.job_id}")
        self._tasks[trigger.job_id] = task
        task.add_done_callback(lambda _: self._forget(trigger.job_id, task))
        logger.info("triggered analysis job id=%s subject=%s", trigger.job_id, trigger.subject_id)
        return True

    async def shutdown(self) -> None:
        tasks = [task for task in self._tasks.values() if not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    async def _run(self, trigger: AnalysisTrigger, client: DiscogsClient) -> None:
        try:
            await run_pipeline(
                self.store,
                client,
                trigger.job_id,
                options=trigger.options,
                config=self.config,
                owner=self.owner,
            )
        except Exception:
            logger.exception("analysis run crashed for job id=%s", trigger.job_id)

    def _forget(self, job_id: str, task: asyncio.Task[None]) -> None:
        if self._tasks.get(job_id) is task:
            del self._tasks[job_id]
