from __future__ import annotations

from datetime import datetime, timezone

from discogs_atlas.schemas.jobs import PipelineCheckpoint, PipelineStep


def record_expired(expires_at: datetime | str | None, now: datetime | None = None) -> bool:
    now = now or datetime.now(timezone.utc)
    if not expires_at:
        return False

    if isinstance(expires_at, str):
        expires_at = datetime.fromisoformat(expires_at.replace("Z", "+00:00"))

    return expires_at <= now


def lease_expired(checkpoint: PipelineCheckpoint, now: datetime | None = None) -> bool:
    if checkpoint.lease_expires_at is None:
        return True
    return record_expired(checkpoint.lease_expires_at, now=now)


def checkpoint_resumable(checkpoint: PipelineCheckpoint, now: datetime | None = None) -> bool:
    now = now or datetime.now(timezone.utc)
    if checkpoint.step == PipelineStep.DONE:
        return False
    if checkpoint.resume_at is not None and checkpoint.resume_at > now:
        return False
    return lease_expired(checkpoint, now=now)
