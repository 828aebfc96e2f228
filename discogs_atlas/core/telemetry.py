from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
import logging
import os

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import DEPLOYMENT_ENVIRONMENT, SERVICE_NAME, SERVICE_NAMESPACE, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased

from discogs_atlas.core.config import Settings

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s trace_id=%(trace_id)s job_id=%(job_id)s %(message)s"
NO_JOB = "-"

_BASE_LOG_RECORD_FACTORY = logging.getLogRecordFactory()
_LOG_CONTEXT_INSTALLED = False
_HTTPX_INSTRUMENTOR = HTTPXClientInstrumentor()
_current_job_id: ContextVar[str | None] = ContextVar("discogs_atlas_job_id", default=None)

tracer = trace.get_tracer("discogs_atlas")


@dataclass(slots=True)
class TelemetryRuntime:
    enabled: bool
    provider: TracerProvider | None
    service_name: str


def configure_logging(level: str = "INFO") -> None:
    """Install the job-aware record factory and a root handler if none exists."""
    _install_log_context()
    if logging.getLogger().handlers:
        return
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)


def current_job_id() -> str | None:
    return _current_job_id.get()


@contextmanager
def job_span(name: str, *, job_id: str, step: str | None = None) -> Iterator[trace.Span]:
    """Open a span for work on one analysis job.

    Log records emitted inside carry the job id even when tracing is disabled.
    """
    token = _current_job_id.set(job_id)
    try:
        with tracer.start_as_current_span(name) as span:
            span.set_attribute("discogs_atlas.job_id", job_id)
            if step is not None:
                span.set_attribute("discogs_atlas.pipeline_step", step)
            yield span
    finally:
        _current_job_id.reset(token)


def setup_telemetry(settings: Settings, *, service_suffix: str | None = None) -> TelemetryRuntime:
    service_name = settings.otel_service_name
    if service_suffix:
        service_name = f"{service_name}-{service_suffix}"

    if not settings.otel_enabled:
        return TelemetryRuntime(enabled=False, provider=None, service_name=service_name)

    if settings.otel_log_correlation:
        _install_log_context()

    provider = TracerProvider(
        resource=Resource.create(
            {
                SERVICE_NAME: service_name,
                SERVICE_NAMESPACE: settings.app_name,
                DEPLOYMENT_ENVIRONMENT: settings.environment,
                "discogs_atlas.upstream": settings.discogs_base_url,
            }
        ),
        sampler=TraceIdRatioBased(settings.otel_trace_sample_ratio),
    )
    exporter = _build_exporter(settings, service_name=service_name)
    if exporter is not None:
        provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)
    # Discogs calls go through httpx, so each request becomes a child of its job span.
    _HTTPX_INSTRUMENTOR.instrument()
    return TelemetryRuntime(enabled=True, provider=provider, service_name=service_name)


def shutdown_telemetry(runtime: TelemetryRuntime) -> None:
    if not runtime.enabled:
        return
    _HTTPX_INSTRUMENTOR.uninstrument()
    if runtime.provider is not None:
        runtime.provider.force_flush()
        runtime.provider.shutdown()


def _build_exporter(settings: Settings, *, service_name: str) -> OTLPSpanExporter | None:
    endpoint = (
        settings.otel_exporter_otlp_endpoint
        or os.getenv("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT")
        or os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    )
    if not endpoint:
        logging.getLogger(__name__).info("no OTLP endpoint; spans for %s stay in-process", service_name)
        return None

    headers = _parse_headers(settings.otel_exporter_otlp_headers or os.getenv("OTEL_EXPORTER_OTLP_HEADERS"))
    return OTLPSpanExporter(endpoint=endpoint, headers=headers or None)


def _parse_headers(raw: str | None) -> dict[str, str]:
    if not raw:
        return {}
    pairs = (item.partition("=") for item in raw.split(","))
    return {key.strip(): value.strip() for key, separator, value in pairs if separator and key.strip()}


def _install_log_context() -> None:
    global _LOG_CONTEXT_INSTALLED
    if _LOG_CONTEXT_INSTALLED:
        return

    def record_factory(*args: object, **kwargs: object) -> logging.LogRecord:
        record = _BASE_LOG_RECORD_FACTORY(*args, **kwargs)
        context = trace.get_current_span().get_span_context()
        record.trace_id = format(context.trace_id, "032x") if context.is_valid else "0" * 32
        record.job_id = _current_job_id.get() or NO_JOB
        return record

    logging.setLogRecordFactory(record_factory)
    _LOG_CONTEXT_INSTALLED = True
