"""OpenTelemetry tracing for the control plane.

Opt-in: nothing is imported or instrumented unless ``OTEL_EXPORTER_ENDPOINT``
is set. When enabled, spans cover inbound bridge requests (FastAPI), registry
queries (SQLAlchemy) and outbound adapter calls to the runtime, billing and
notification endpoints (httpx).
"""

from __future__ import annotations

import logging

logger = logging.getLogger(__name__)

# Probes and scrapes would otherwise dominate the trace volume
EXCLUDED_URLS = "/health,/health/live,/health/ready,/health/detailed,/metrics"


def setup_tracing(app=None) -> bool:
    """Configure the OTel SDK; returns whether tracing was enabled.

    Args:
        app: The FastAPI application instance, or ``None`` to skip
            request instrumentation.
    """
    from app.config import settings

    if not settings.otel_exporter_endpoint:
        logger.debug("OpenTelemetry disabled: OTEL_EXPORTER_ENDPOINT not configured")
        return False

    from opentelemetry import trace  # noqa: PLC0415
    from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import (  # noqa: PLC0415
        OTLPSpanExporter,
    )
    from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor  # noqa: PLC0415
    from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor  # noqa: PLC0415
    from opentelemetry.sdk.resources import SERVICE_NAME, SERVICE_VERSION, Resource  # noqa: PLC0415
    from opentelemetry.sdk.trace import TracerProvider  # noqa: PLC0415
    from opentelemetry.sdk.trace.export import BatchSpanProcessor  # noqa: PLC0415

    resource = Resource.create(
        {
            SERVICE_NAME: settings.otel_service_name,
            SERVICE_VERSION: settings.app_version,
            "deployment.environment": settings.environment,
        }
    )
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otel_exporter_endpoint)))
    trace.set_tracer_provider(provider)

    SQLAlchemyInstrumentor().instrument()
    HTTPXClientInstrumentor().instrument()

    if app is not None:
        from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor  # noqa: PLC0415

        FastAPIInstrumentor.instrument_app(app, excluded_urls=EXCLUDED_URLS)

    logger.info(
        "OpenTelemetry tracing enabled: service=%s endpoint=%s",
        settings.otel_service_name,
        settings.otel_exporter_endpoint,
    )
    return True
