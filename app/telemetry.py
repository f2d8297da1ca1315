import logging
import os

from opentelemetry import trace

logger = logging.getLogger(__name__)

_TRACER_NAME = "crm_migrations"


def get_tracer(name: str | None = None) -> trace.Tracer:
    """Return an OTel tracer.

    When OTel is disabled (no TracerProvider configured), the default
    trace API returns no-op spans, so pipeline stages can always open
    spans without checking whether tracing is active.
    """
    return trace.get_tracer(name or _TRACER_NAME)


def setup_otel(app) -> None:
    """Configure OpenTelemetry tracing for the API process.

    Instruments FastAPI, SQLAlchemy, Celery and httpx.  Instrumentors ship
    as optional extras; a missing package is logged and skipped.
    """
    enabled = os.getenv("OTEL_ENABLED", "false").lower() in {"1", "true", "yes", "on"}
    if not enabled:
        return

    try:
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import (
            OTLPSpanExporter,
        )
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
    except Exception:
        logger.exception("OpenTelemetry SDK not available, skipping setup.")
        return

    service_name = os.getenv("OTEL_SERVICE_NAME", "crm_migrations")
    endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")

    resource = Resource.create({"service.name": service_name})
    provider = TracerProvider(resource=resource)
    trace.set_tracer_provider(provider)

    exporter = OTLPSpanExporter(endpoint=f"{endpoint}/v1/traces") if endpoint else OTLPSpanExporter()
    provider.add_span_processor(BatchSpanProcessor(exporter))

    # --- FastAPI ---
    try:
        from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

        FastAPIInstrumentor.instrument_app(app)
        logger.info("OTel: FastAPI instrumented")
    except Exception:
        logger.warning("OTel: FastAPI instrumentation unavailable", exc_info=True)

    # --- SQLAlchemy (uses cached engine singleton) ---
    try:
        from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor

        from app.db import get_engine

        SQLAlchemyInstrumentor().instrument(engine=get_engine())
        logger.info("OTel: SQLAlchemy instrumented")
    except Exception:
        logger.warning("OTel: SQLAlchemy instrumentation unavailable", exc_info=True)

    # --- Celery ---
    try:
        from opentelemetry.instrumentation.celery import CeleryInstrumentor

        CeleryInstrumentor().instrument()
        logger.info("OTel: Celery instrumented")
    except Exception:
        logger.warning("OTel: Celery instrumentation unavailable", exc_info=True)

    # --- httpx (source CRM calls) ---
    try:
        from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor

        HTTPXClientInstrumentor().instrument()
        logger.info("OTel: httpx instrumented")
    except Exception:
        logger.warning("OTel: httpx instrumentation unavailable", exc_info=True)

    logger.info("OpenTelemetry tracing enabled (service=%s)", service_name)
