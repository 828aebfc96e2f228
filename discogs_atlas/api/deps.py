from starlette.requests import Request

from discogs_atlas.jobs.dispatcher import PipelineDispatcher
from discogs_atlas.services.store import JobStore


def get_job_store(request: Request) -> JobStore:
    return request.app.state.job_store


def get_dispatcher(request: Request) -> PipelineDispatcher:
    return request.app.state.dispatcher
