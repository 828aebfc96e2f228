import asyncio
from contextlib import asynccontextmanager
import logging
import time

from fastapi import FastAPI
from starlette.requests import Request

from discogs_atlas.api.router import api_router
from discogs_atlas.core.config import get_settings
from discogs_atlas.core.telemetry import configure_logging, setup_telemetry, shutdown_telemetry
from discogs_atlas.jobs.dispatcher import PipelineDispatcher
from discogs_atlas.jobs.pipeline import PipelineConfig
from discogs_atlas.services.discogs_client import DiscogsClient
from discogs_atlas.services.store import build_job_store, purge_expired_periodically

settings = get_settings()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(settings.log_level)
    telemetry_runtime = setup_telemetry(settings, service_suffix="api")
    store = build_job_store(settings)
    dispatcher = PipelineDispatcher(
        store,
        client_factory=lambda token: DiscogsClient.from_settings(settings, token=token),
        config=PipelineConfig.from_settings(settings),
    )
    app.state.job_store = store
    app.state.dispatcher = dispatcher
    purge_task = asyncio.create_task(
        purge_expired_periodically(store, settings.purge_interval_seconds),
        name="job-store-purge",
    )
    try:
        yield
    finally:
        purge_task.cancel()
        await asyncio.gather(purge_task, return_exceptions=True)
        # In-flight runs stay parked at their last checkpoint.
        await dispatcher.shutdown()
        await store.close()
        shutdown_telemetry(telemetry_runtime)


app = FastAPI(title=settings.app_name, lifespan=lifespan)


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    started_at = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - started_at) * 1000.0
    logger.info(
        "http request method=%s path=%s status=%s duration_ms=%.2f",
        request.method,
        request.url.path,
        response.status_code,
        elapsed_ms,
    )
    return response


app.include_router(api_router)
