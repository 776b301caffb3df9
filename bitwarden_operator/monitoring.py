"""
Prometheus metrics, health endpoint and OpenTelemetry tracing.
"""
import logging
from typing import Any, Callable, Dict, Optional

from fastapi import FastAPI, Response
from fastapi.responses import JSONResponse
from opentelemetry import trace
from prometheus_client import CONTENT_TYPE_LATEST, Counter, generate_latest

logger = logging.getLogger(__name__)

SERVICE_NAME = "bitwarden-secret-operator"

# prometheus_client appends the _total suffix to counters
reconcile_requests = Counter("reconcile_requests", "Total reconcile attempts")
reconcile_successes = Counter("reconcile_requests_success", "Successful reconciles")
reconcile_errors = Counter("reconcile_errors", "Failed reconciles")


def create_app(status_provider: Optional[Callable[[], Dict[str, Any]]] = None) -> FastAPI:
    """
    Build the metrics/health HTTP app.

    Args:
        status_provider: Optional callable returning extra health details
            (e.g. the vault session summary).
    """
    app = FastAPI(docs_url=None, redoc_url=None, openapi_url=None)

    @app.get("/metrics")
    async def metrics():
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    @app.get("/health")
    async def health():
        body: Dict[str, Any] = {"status": "ok"}
        if status_provider is not None:
            body["session"] = status_provider()
        return JSONResponse(content=body)

    return app


def setup_tracing(endpoint: Optional[str]) -> bool:
    """
    Export traces to an OTLP collector when an endpoint is configured.

    Returns:
        True if a tracer provider was installed.
    """
    if not endpoint:
        return False

    from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
    from opentelemetry.sdk.resources import Resource
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.sdk.trace.export import BatchSpanProcessor

    logger.info("Initializing OpenTelemetry Traces client")
    provider = TracerProvider(resource=Resource.create({"service.name": SERVICE_NAME}))
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    trace.set_tracer_provider(provider)
    return True


def get_tracer():
    return trace.get_tracer("bitwarden_operator")
