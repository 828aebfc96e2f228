from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone
from typing import Any

import asyncpg  # type: ignore[import-untyped]

from discogs_atlas.core.config import Settings
from discogs_atlas.jobs.retention import checkpoint_resumable, record_expired
from discogs_atlas.schemas.jobs import Job, PipelineCheckpoint, PipelineStep

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StoreError(Exception):
    """Base job store error."""


class StoreUnavailableError(StoreError):
    """Raised when the durable backend is unavailable or not configured."""


class InMemoryJobStore:
    """Process-local job and checkpoint records.

    Records are copied on the way in and on the way out, so a reader never
    observes a half-applied write.
    """

    def __init__(self, retention_hours: int = 24, clock: Clock = _utcnow) -> None:
        self.retention = timedelta(hours=max(1, retention_hours))
        self._clock = clock
        self._jobs: dict[str, tuple[Job, datetime]] = {}
        self._checkpoints: dict[str, tuple[PipelineCheckpoint, datetime]] = {}

    async def get(self, job_id: str) -> Job | None:
        entry = self._jobs.get(job_id)
        if entry is None:
            return None
        if record_expired(entry[1], now=self._clock()):
            del self._jobs[job_id]
            return None
        return entry[0].model_copy(deep=True)

    async def set(self, job_id: str, job: Job) -> None:
        self._jobs[job_id] = (job.model_copy(deep=True), self._clock() + self.retention)

    async def get_checkpoint(self, job_id: str) -> PipelineCheckpoint | None:
        entry = self._checkpoints.get(job_id)
        if entry is None:
            return None
        if record_expired(entry[1], now=self._clock()):
            del self._checkpoints[job_id]
            return None
        return entry[0].model_copy(deep=True)

    async def set_checkpoint(self, job_id: str, checkpoint: PipelineCheckpoint) -> None:
        self._checkpoints[job_id] = (checkpoint.model_copy(deep=True), self._clock() + self.retention)

    async def touch_lease(self, job_id: str, owner: str | None, lease_expires_at: datetime) -> None:
        entry = self._checkpoints.get(job_id)
        if entry is None:
            return
        checkpoint = entry[0]
        checkpoint.lease_owner = owner
        checkpoint.lease_expires_at = lease_expires_at

    async def list_resumable(self, now: datetime, limit: int) -> list[PipelineCheckpoint]:
        resumable = [
            checkpoint.model_copy(deep=True)
            for checkpoint, expires_at in self._checkpoints.values()
            if not record_expired(expires_at, now=now) and checkpoint_resumable(checkpoint, now=now)
        ]
        resumable.sort(key=lambda checkpoint: checkpoint.updated_at)
        return resumable[:limit]

    async def purge_expired(self) -> int:
        now = self._clock()
        expired_jobs = [job_id for job_id, (_, expires_at) in self._jobs.items() if record_expired(expires_at, now=now)]
        for job_id in expired_jobs:
            del self._jobs[job_id]
        expired_checkpoints = [
            job_id for job_id, (_, expires_at) in self._checkpoints.items() if record_expired(expires_at, now=now)
        ]
        for job_id in expired_checkpoints:
            del self._checkpoints[job_id]
        return len(expired_jobs)

    async def close(self) -> None:
        return None


class PostgresJobBackend:
    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
        retention_hours: int,
    ) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.retention_hours = max(1, retention_hours)
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def get(self, job_id: str) -> Job | None:
        pool = await self._get_pool()
        try:
            record = await pool.fetchval(
                """
                select record
                from analysis_jobs
                where id = $1 and expires_at > now()
                """,
                job_id,
            )
        except (asyncpg.PostgresError, OSError) as exc:
            raise StoreUnavailableError(f"failed to read job {job_id}") from exc
        if record is None:
            return None
        return Job.model_validate(self._coerce_json_dict(record))

    async def set(self, job_id: str, job: Job) -> None:
        pool = await self._get_pool()
        try:
            await pool.execute(
                """
                insert into analysis_jobs (id, record, expires_at, updated_at)
                values ($1, $2::jsonb, now() + ($3::int * interval '1 hour'), now())
                on conflict (id) do update
                set
                  record = excluded.record,
                  expires_at = excluded.expires_at,
                  updated_at = excluded.updated_at
                """,
                job_id,
                job.model_dump_json(),
                self.retention_hours,
            )
        except (asyncpg.PostgresError, OSError) as exc:
            raise StoreUnavailableError(f"failed to write job {job_id}") from exc

    async def get_checkpoint(self, job_id: str) -> PipelineCheckpoint | None:
        pool = await self._get_pool()
        try:
            checkpoint = await pool.fetchval(
                """
                select checkpoint
                from analysis_checkpoints
                where job_id = $1 and expires_at > now()
                """,
                job_id,
            )
        except (asyncpg.PostgresError, OSError) as exc:
            raise StoreUnavailableError(f"failed to read checkpoint {job_id}") from exc
        if checkpoint is None:
            return None
        return PipelineCheckpoint.model_validate(self._coerce_json_dict(checkpoint))

    async def set_checkpoint(self, job_id: str, checkpoint: PipelineCheckpoint) -> None:
        pool = await self._get_pool()
        try:
            await pool.execute(
                """
                insert into analysis_checkpoints (
                  job_id,
                  step,
                  checkpoint,
                  resume_at,
                  lease_expires_at,
                  expires_at,
                  updated_at
                )
                values ($1, $2, $3::jsonb, $4, $5, now() + ($6::int * interval '1 hour'), now())
                on conflict (job_id) do update
                set
                  step = excluded.step,
                  checkpoint = excluded.checkpoint,
                  resume_at = excluded.resume_at,
                  lease_expires_at = excluded.lease_expires_at,
                  expires_at = excluded.expires_at,
                  updated_at = excluded.updated_at
                """,
                job_id,
                checkpoint.step.value,
                checkpoint.model_dump_json(),
                checkpoint.resume_at,
                checkpoint.lease_expires_at,
                self.retention_hours,
            )
        except (asyncpg.PostgresError, OSError) as exc:
            raise StoreUnavailableError(f"failed to write checkpoint {job_id}") from exc

    async def touch_lease(self, job_id: str, owner: str | None, lease_expires_at: datetime) -> None:
        pool = await self._get_pool()
        try:
            await pool.execute(
                """
                update analysis_checkpoints
                set
                  lease_expires_at = $3,
                  checkpoint = checkpoint || jsonb_build_object(
                    'lease_owner', $2::text,
                    'lease_expires_at', to_jsonb($3::timestamptz)
                  )
                where job_id = $1
                """,
                job_id,
                owner,
                lease_expires_at,
            )
        except (asyncpg.PostgresError, OSError) as exc:
            raise StoreUnavailableError(f"failed to renew lease {job_id}") from exc

    async def list_resumable(self, now: datetime, limit: int) -> list[PipelineCheckpoint]:
        pool = await self._get_pool()
        try:
            rows = await pool.fetch(
                """
                select checkpoint
                from analysis_checkpoints
                where step <> $1
                  and expires_at > $2
                  and (resume_at is null or resume_at <= $2)
                  and (lease_expires_at is null or lease_expires_at <= $2)
                order by updated_at asc
                limit $3
                """,
                PipelineStep.DONE.value,
                now,
                limit,
            )
        except (asyncpg.PostgresError, OSError) as exc:
            raise StoreUnavailableError("failed to list resumable checkpoints") from exc
        return [PipelineCheckpoint.model_validate(self._coerce_json_dict(row["checkpoint"])) for row in rows]

    async def purge_expired(self) -> int:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    await conn.execute("delete from analysis_checkpoints where expires_at <= now()")
                    deleted = await conn.fetchval(
                        """
                        with deleted as (
                          delete from analysis_jobs where expires_at <= now() returning 1
                        )
                        select count(*) from deleted
                        """
                    )
        except (asyncpg.PostgresError, OSError) as exc:
            raise StoreUnavailableError("failed to purge expired jobs") from exc
        return int(deleted or 0)

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise StoreUnavailableError("DA_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            await self._ensure_schema(pool)
        except Exception as exc:  # pragma: no cover - depends on environment
            raise StoreUnavailableError("database unavailable") from exc
        self._pool = pool
        return pool

    @staticmethod
    async def _ensure_schema(pool: asyncpg.Pool) -> None:
        async with pool.acquire() as conn:
            await conn.execute(
                """
                create table if not exists analysis_jobs (
                  id text primary key,
                  record jsonb not null,
                  expires_at timestamptz not null,
                  updated_at timestamptz not null default now()
                );
                create table if not exists analysis_checkpoints (
                  job_id text primary key,
                  step text not null,
                  checkpoint jsonb not null,
                  resume_at timestamptz,
                  lease_expires_at timestamptz,
                  expires_at timestamptz not null,
                  updated_at timestamptz not null default now()
                );
                create index if not exists analysis_checkpoints_resumable_idx
                  on analysis_checkpoints (step, updated_at);
                """
            )

    @staticmethod
    def _coerce_json_dict(value: Any) -> dict[str, Any]:
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError:
                return {}
        if isinstance(value, dict):
            return value
        return {}


class JobStore:
    """Job store that prefers the durable backend and falls back to memory.

    Every write lands in memory first. The first backend failure is logged and
    switches the store to memory for the rest of the process lifetime.
    """

    def __init__(self, backend: PostgresJobBackend | None = None, memory: InMemoryJobStore | None = None) -> None:
        self.backend = backend
        self.memory = memory or InMemoryJobStore()
        self._degraded = backend is None

    @property
    def degraded(self) -> bool:
        return self._degraded

    async def get(self, job_id: str) -> Job | None:
        if not self._degraded and self.backend is not None:
            try:
                return await self.backend.get(job_id)
            except StoreUnavailableError as exc:
                self._degrade(exc)
        return await self.memory.get(job_id)

    async def set(self, job_id: str, job: Job) -> None:
        await self.memory.set(job_id, job)
        if not self._degraded and self.backend is not None:
            try:
                await self.backend.set(job_id, job)
            except StoreUnavailableError as exc:
                self._degrade(exc)

    async def get_checkpoint(self, job_id: str) -> PipelineCheckpoint | None:
        if not self._degraded and self.backend is not None:
            try:
                return await self.backend.get_checkpoint(job_id)
            except StoreUnavailableError as exc:
                self._degrade(exc)
        return await self.memory.get_checkpoint(job_id)

    async def set_checkpoint(self, job_id: str, checkpoint: PipelineCheckpoint) -> None:
        await self.memory.set_checkpoint(job_id, checkpoint)
        if not self._degraded and self.backend is not None:
            try:
                await self.backend.set_checkpoint(job_id, checkpoint)
            except StoreUnavailableError as exc:
                self._degrade(exc)

    async def touch_lease(self, job_id: str, owner: str | None, lease_expires_at: datetime) -> None:
        await self.memory.touch_lease(job_id, owner, lease_expires_at)
        if not self._degraded and self.backend is not None:
            try:
                await self.backend.touch_lease(job_id, owner, lease_expires_at)
            except StoreUnavailableError as exc:
                self._degrade(exc)

    async def list_resumable(self, now: datetime, limit: int) -> list[PipelineCheckpoint]:
        if not self._degraded and self.backend is not None:
            try:
                return await self.backend.list_resumable(now, limit)
            except StoreUnavailableError as exc:
                self._degrade(exc)
        return await self.memory.list_resumable(now, limit)

    async def purge_expired(self) -> int:
        purged = await self.memory.purge_expired()
        if not self._degraded and self.backend is not None:
            try:
                purged = await self.backend.purge_expired()
            except StoreUnavailableError as exc:
                self._degrade(exc)
        return purged

    async def close(self) -> None:
        if self.backend is not None:
            await self.backend.close()
        await self.memory.close()

    def _degrade(self, exc: StoreUnavailableError) -> None:
        if self._degraded:
            return
        self._degraded = True
        logger.warning("job store backend unavailable; continuing in memory only: %s", exc)


def build_job_store(settings: Settings) -> JobStore:
    memory = InMemoryJobStore(retention_hours=settings.job_retention_hours)
    if not settings.database_url:
        logger.info("DA_DATABASE_URL not set; job store is memory-only")
        return JobStore(backend=None, memory=memory)
    backend = PostgresJobBackend(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
        retention_hours=settings.job_retention_hours,
    )
    return JobStore(backend=backend, memory=memory)


async def purge_expired_periodically(
    store: JobStore,
    interval_seconds: float,
    *,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> None:
    """Drop expired jobs and checkpoints every ``interval_seconds`` until cancelled."""
    interval = max(1.0, interval_seconds)
    while True:
        await sleep(interval)
        purged = await store.purge_expired()
        if purged:
            logger.info("purged expired jobs: %s", purged)
