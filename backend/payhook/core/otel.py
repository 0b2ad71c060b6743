"""OpenTelemetry initialization and instrumentation"""
import logging
from contextlib import contextmanager

from opentelemetry import metrics, trace
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from payhook import __version__
from payhook.core.config import settings

logger = logging.getLogger(__name__)

# Tracer for event processing spans; a no-op until initialize_otel() installs a provider
BILLING_TRACER = "payhook.billing"

# Polled by load balancers and scrapers; kept out of traces
UNTRACED_URLS = "health,metrics"


def _resource(include_version=True):
    attributes = {
        "service.name": settings.OTEL_SERVICE_NAME,
        "deployment.environment": settings.OTEL_ENVIRONMENT
    }
    if include_version:
        attributes["service.version"] = __version__
    return Resource.create(attributes)


def initialize_otel():
    """Initialize OpenTelemetry providers. Returns False when no exporter is configured."""
    if not settings.OTEL_EXPORTER_OTLP_ENDPOINT:
        return False

    try:
        resource = _resource()

        trace_provider = TracerProvider(resource=resource)
        otlp_trace_exporter = OTLPSpanExporter(
            endpoint=settings.OTEL_EXPORTER_OTLP_ENDPOINT,
            insecure=True
        )
        trace_provider.add_span_processor(BatchSpanProcessor(otlp_trace_exporter))
        trace.set_tracer_provider(trace_provider)

        otlp_metric_exporter = OTLPMetricExporter(
            endpoint=settings.OTEL_EXPORTER_OTLP_ENDPOINT,
            insecure=True
        )
        metric_reader = PeriodicExportingMetricReader(
            otlp_metric_exporter,
            export_interval_millis=5000,
            export_timeout_millis=30000
        )
        metrics_provider = MeterProvider(resource=resource, metric_readers=[metric_reader])
        metrics.set_meter_provider(metrics_provider)

        return True
    except Exception as e:
        logger.warning(f"Failed to initialize OpenTelemetry: {e}")
        return False


def setup_otel_logging():
    """Ship log records through OTLP as well as stdout"""
    if not settings.OTEL_EXPORTER_OTLP_ENDPOINT:
        return False

    try:
        from opentelemetry._logs import set_logger_provider
        from opentelemetry.exporter.otlp.proto.grpc._log_exporter import OTLPLogExporter
        from opentelemetry.sdk._logs import LoggerProvider, LoggingHandler
        from opentelemetry.sdk._logs.export import BatchLogRecordProcessor

        logger_provider = LoggerProvider(resource=_resource(include_version=False))
        set_logger_provider(logger_provider)

        log_exporter = OTLPLogExporter(
            endpoint=settings.OTEL_EXPORTER_OTLP_ENDPOINT,
            insecure=True
        )
        logger_provider.add_log_record_processor(BatchLogRecordProcessor(
            log_exporter,
            max_queue_size=2048,
            export_timeout_millis=30000,
            schedule_delay_millis=5000
        ))

        handler = LoggingHandler(level=logging.NOTSET, logger_provider=logger_provider)
        logging.getLogger().addHandler(handler)

        return True
    except Exception as e:
        logger.warning(f"Failed to setup OTEL logging: {e}")
        return False


def instrument_fastapi(app):
    """Instrument FastAPI application with OpenTelemetry"""
    FastAPIInstrumentor.instrument_app(app, excluded_urls=UNTRACED_URLS)


def instrument_sqlalchemy(engine):
    """Instrument SQLAlchemy with OpenTelemetry"""
    try:
        SQLAlchemyInstrumentor().instrument(engine=engine)
        logger.info("SQLAlchemy instrumentation enabled")
    except Exception as e:
        logger.warning(f"Failed to instrument SQLAlchemy: {e}")


@contextmanager
def event_span(event):
    """Span around processing one stored webhook event"""
    tracer = trace.get_tracer(BILLING_TRACER, __version__)
    with tracer.start_as_current_span("billing.process_event") as span:
        span.set_attribute("billing.event_id", event.provider_event_id)
        span.set_attribute("billing.event_type", event.event_type)
        span.set_attribute("billing.identity_source", str(event.identity_source))
        if event.transaction_id:
            span.set_attribute("billing.transaction_id", event.transaction_id)
        yield span
