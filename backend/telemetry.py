# telemetry.py — OpenTelemetry instrumentation for KanbanFlow
"""
Tracing is exported to an OTLP collector when OTEL_EXPORTER_OTLP_ENDPOINT is
set. Without it (or with the instrumentation packages missing)
every helper here is a no-op.
"""
import os
import logging
from contextlib import contextmanager

logger = logging.getLogger("kanbanflow.telemetry")

SERVICE_NAME = os.getenv("OTEL_SERVICE_NAME", "kanbanflow-api")
SERVICE_VERSION = "1.0.0"
ENVIRONMENT = os.getenv("ENVIRONMENT", "development")
OTLP_ENDPOINT = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT", "")

# (module, class, label) for each optional auto-instrumentation package
_INSTRUMENTORS = [
    ("opentelemetry.instrumentation.sqlalchemy", "SQLAlchemyInstrumentor", "SQLAlchemy"),
    ("opentelemetry.instrumentation.httpx", "HTTPXClientInstrumentor", "HTTPX"),
    ("opentelemetry.instrumentation.redis", "RedisInstrumentor", "Redis"),
]

_enabled = False


def setup_telemetry(app=None):
    """Initialise tracing and instrument FastAPI, SQLAlchemy, httpx and Redis."""
    global _enabled
    if not OTLP_ENDPOINT:
        logger.info("OpenTelemetry disabled (OTEL_EXPORTER_OTLP_ENDPOINT not set)")
        return None

    try:
        import importlib
        from opentelemetry import trace
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
        from opentelemetry.sdk.resources import Resource, SERVICE_NAME as RES_SVC_NAME
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
    except ImportError:
        logger.info("OpenTelemetry SDK not installed — tracing disabled")
        return None

    resource = Resource.create({
        RES_SVC_NAME: SERVICE_NAME,
        "service.version": SERVICE_VERSION,
        "deployment.environment": ENVIRONMENT,
    })
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=OTLP_ENDPOINT, insecure=True)))
    trace.set_tracer_provider(provider)

    if app is not None:
        try:
            from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
            FastAPIInstrumentor.instrument_app(app, excluded_urls="api/health", tracer_provider=provider)
            logger.info("FastAPI instrumented with OpenTelemetry")
        except ImportError:
            logger.warning("opentelemetry-instrumentation-fastapi not installed")

    for module_name, class_name, label in _INSTRUMENTORS:
        try:
            instrumentor = getattr(importlib.import_module(module_name), class_name)
        except ImportError:
            logger.warning(f"{module_name} not installed; {label} calls will not be traced")
            continue
        instrumentor().instrument(tracer_provider=provider)
        logger.info(f"{label} instrumented with OpenTelemetry")

    _enabled = True
    logger.info(f"OpenTelemetry initialised → {OTLP_ENDPOINT}")
    return provider


@contextmanager
def span(name: str, **attributes):
    """Start a span when tracing is enabled; otherwise do nothing."""
    if not _enabled:
        yield None
        return
    from opentelemetry import trace
    tracer = trace.get_tracer("kanbanflow", SERVICE_VERSION)
    with tracer.start_as_current_span(name) as current:
        for key, value in attributes.items():
            if value is not None:
                current.set_attribute(key, value)
        yield current
