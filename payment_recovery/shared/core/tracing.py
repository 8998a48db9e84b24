"""
OpenTelemetry setup.

Spans cover HTTP requests (FastAPI instrumentation) and timer batches.
Log lines emitted inside a span carry its trace_id so a failed retry can be
followed from the timer poll through the gateway call.
"""

import structlog
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.semconv.resource import ResourceAttributes

from payment_recovery.shared.core.config import get_settings

logger = structlog.get_logger()

SERVICE_NAME = "payment-recovery"


def setup_tracing(app=None) -> bool:
    """Install the tracer provider. Returns False when tracing stays off (tests)."""
    settings = get_settings()
    if settings.TESTING:
        logger.info("setup_tracing_skipped_in_test")
        return False

    provider = TracerProvider(resource=Resource(attributes={
        ResourceAttributes.SERVICE_NAME: SERVICE_NAME,
        ResourceAttributes.SERVICE_VERSION: settings.VERSION,
        ResourceAttributes.DEPLOYMENT_ENVIRONMENT: settings.ENVIRONMENT,
    }))

    endpoint = settings.OTEL_EXPORTER_OTLP_ENDPOINT
    if endpoint:
        exporter = OTLPSpanExporter(endpoint=endpoint, insecure=settings.OTEL_EXPORTER_OTLP_INSECURE)
        logger.info("setup_tracing_otlp", endpoint=endpoint)
    elif settings.DEBUG:
        exporter = ConsoleSpanExporter()
        logger.info("setup_tracing_console")
    else:
        exporter = None
        logger.info("setup_tracing_no_exporter")

    if exporter is not None:
        provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)

    if app is not None:
        FastAPIInstrumentor.instrument_app(app, excluded_urls="health,metrics")
    return True


def get_tracer(name: str):
    return trace.get_tracer(name)


def add_trace_context(logger, method_name, event_dict):
    """structlog processor: attach the active span's ids."""
    context = trace.get_current_span().get_span_context()
    if context.is_valid:
        event_dict.setdefault("trace_id", format(context.trace_id, "032x"))
        event_dict.setdefault("span_id", format(context.span_id, "016x"))
    return event_dict
