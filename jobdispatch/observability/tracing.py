"""
OpenTelemetry tracing setup.
"""

from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.trace import Tracer

from jobdispatch import __version__
from jobdispatch.config import get_settings

# Global tracer instance
_tracer: Tracer | None = None


def setup_tracing(enable_console_export: bool = False) -> Tracer:
    """
    Set up OpenTelemetry tracing.

    The OTLP exporter is only installed when OTEL_ENABLED is set; otherwise
    the tracer is the API's no-op default and spans cost nothing.

    Args:
        enable_console_export: If True, also export spans to console.

    Returns:
        Tracer: The tracer instance.
    """
    global _tracer

    settings = get_settings()

    if settings.otel_enabled or enable_console_export:
        resource = Resource.create(
            {
                "service.name": settings.otel_service_name,
                "service.version": __version__,
            }
        )
        provider = TracerProvider(resource=resource)

        if settings.otel_enabled:
            otlp_exporter = OTLPSpanExporter(
                endpoint=settings.otel_exporter_otlp_endpoint,
                insecure=True,
            )
            provider.add_span_processor(BatchSpanProcessor(otlp_exporter))

        if enable_console_export:
            provider.add_span_processor(
                BatchSpanProcessor(ConsoleSpanExporter())
            )

        trace.set_tracer_provider(provider)

    _tracer = trace.get_tracer(settings.otel_service_name)

    return _tracer


def instrument_fastapi(app: Any) -> None:
    """
    Instrument FastAPI application with OpenTelemetry.

    Args:
        app: The FastAPI application instance.
    """
    FastAPIInstrumentor.instrument_app(app)


def instrument_sqlalchemy(engine: Any) -> None:
    """
    Instrument SQLAlchemy engine with OpenTelemetry.

    Args:
        engine: The SQLAlchemy async engine instance.
    """
    SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine)


def get_tracer() -> Tracer:
    """
    Get the tracer instance.

    Returns:
        Tracer: The tracer instance. Falls back to the API default tracer
        when setup_tracing() has not run, so library code never needs
        settings just to open a span.
    """
    if _tracer is None:
        return trace.get_tracer("jobdispatch")
    return _tracer
