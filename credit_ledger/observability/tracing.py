"""
Distributed Tracing with OpenTelemetry.

One span per ledger operation (covering all of its retry attempts), with
the FastAPI request span above it and SQLAlchemy query spans below.
"""

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from credit_ledger.config import settings

# Proxy tracer: resolves to the configured provider once setup_tracing runs
tracer = trace.get_tracer("credit_ledger")


def setup_tracing() -> None:
    """Install a TracerProvider exporting to the OTLP collector."""
    if not settings.tracing_enabled:
        return

    provider = TracerProvider(
        resource=Resource.create(
            {
                "service.name": settings.service_name,
                "service.version": settings.api_version,
                "deployment.environment": settings.environment,
            }
        )
    )
    provider.add_span_processor(
        BatchSpanProcessor(
            OTLPSpanExporter(endpoint=settings.otlp_endpoint, insecure=settings.otlp_insecure)
        )
    )
    trace.set_tracer_provider(provider)


def instrument_fastapi(app: Any) -> None:
    """Trace every request. Call once after app creation."""
    if settings.tracing_enabled:
        FastAPIInstrumentor.instrument_app(app, excluded_urls="health,metrics")


def instrument_sqlalchemy(engine: Any) -> None:
    """Trace queries on an async engine's underlying sync engine."""
    if settings.tracing_enabled:
        SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine)


@contextmanager
def ledger_span(operation: str, user_id: str, amount: int | None = None) -> Iterator[trace.Span]:
    """
    Span around one ledger operation.

    Exceptions are recorded on the span and re-raised.
    """
    with tracer.start_as_current_span(f"ledger.{operation}") as span:
        span.set_attribute("ledger.user_id", user_id)
        if amount is not None:
            span.set_attribute("ledger.amount", amount)
        yield span
