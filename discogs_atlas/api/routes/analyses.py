from fastapi import APIRouter, Body, Depends, HTTPException, status

from discogs_atlas.api.deps import get_dispatcher, get_job_store
from discogs_atlas.core.security import get_discogs_token
from discogs_atlas.schemas.jobs import (
    TERMINAL_STATUSES,
    AnalysisAccepted,
    AnalysisOptions,
    AnalysisRequest,
    AnalysisTrigger,
    Job,
)

router = APIRouter()


@router.post("", response_model=AnalysisAccepted, status_code=status.HTTP_202_ACCEPTED)
async def create_analysis(
    payload: AnalysisRequest,
    store=Depends(get_job_store),
    dispatcher=Depends(get_dispatcher),
    discogs_token: str | None = Depends(get_discogs_token),
) -> AnalysisAccepted:
    username = payload.username.strip()
    if not username:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="username is required")

    job = Job(subject_id=username)
    await store.set(job.id, job)
    await dispatcher.trigger(
        AnalysisTrigger(
            job_id=job.id,
            subject_id=username,
            credentials=discogs_token,
            options=payload.to_options(),
        )
    )
    return AnalysisAccepted(job_id=job.id, status=job.status)


@router.post("/{job_id}/run", response_model=AnalysisAccepted, status_code=status.HTTP_202_ACCEPTED)
async def run_analysis(
    job_id: str,
    options: AnalysisOptions | None = Body(default=None),
    store=Depends(get_job_store),
    dispatcher=Depends(get_dispatcher),
    discogs_token: str | None = Depends(get_discogs_token),
) -> AnalysisAccepted:
    job = await store.get(job_id)
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="job not found")
    if job.status in TERMINAL_STATUSES:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=f"job is already {job.status.value}")

    started = await dispatcher.trigger(
        AnalysisTrigger(
            job_id=job.id,
            subject_id=job.subject_id,
            credentials=discogs_token,
            options=options or AnalysisOptions(),
        )
    )
    if not started:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="analysis is already running")
    return AnalysisAccepted(job_id=job.id, status=job.status)


@router.get("/{job_id}", response_model=Job)
async def get_analysis(job_id: str, store=Depends(get_job_store)) -> Job:
    job = await store.get(job_id)
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="job not found")
    return job
