"""
OpenTelemetry wiring.

Replaces every logging handler with a single OpenTelemetry handler that
ships records to the configured OTLP sink over HTTP. Every record is
tagged with the service identity, the machine name and the deployment
environment.

Trace and metric export are wired the same way but stay off unless
``startup.use_trace_and_metrics`` is set: the sink currently accepts
OTLP logs only.

Must run before the FastAPI app is built.
"""

import logging
import socket
from dataclasses import dataclass, field
from importlib.metadata import PackageNotFoundError, version

from fastapi import FastAPI
from opentelemetry.exporter.otlp.proto.http._log_exporter import OTLPLogExporter
from opentelemetry.sdk._logs import LoggerProvider, LoggingHandler
from opentelemetry.sdk._logs.export import (
    BatchLogRecordProcessor,
    ConsoleLogExporter,
    LogExporter,
    SimpleLogRecordProcessor,
)
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.resources import (
    DEPLOYMENT_ENVIRONMENT,
    HOST_NAME,
    SERVICE_INSTANCE_ID,
    SERVICE_NAME,
    SERVICE_NAMESPACE,
    SERVICE_VERSION,
    Resource,
)
from opentelemetry.sdk.trace import TracerProvider

from practice_web.config import Settings
from practice_web.correlation import CorrelationIdFilter

logger = logging.getLogger(__name__)

SERVICE_NAMESPACE_VALUE = "Practice.Web"
DISTRIBUTION_NAME = "practice-web"
UNKNOWN_VERSION = "unknown"


def service_version() -> str:
    """Version of the installed distribution, or ``"unknown"``."""
    try:
        return version(DISTRIBUTION_NAME)
    except PackageNotFoundError:
        return UNKNOWN_VERSION


def build_resource(app_name: str, environment: str) -> Resource:
    """Resource attributes attached to every exported signal."""
    machine_name = socket.gethostname()
    return Resource.create({
        SERVICE_NAME: app_name,
        SERVICE_NAMESPACE: SERVICE_NAMESPACE_VALUE,
        SERVICE_VERSION: service_version(),
        SERVICE_INSTANCE_ID: machine_name,
        HOST_NAME: machine_name,
        DEPLOYMENT_ENVIRONMENT: environment.lower(),
    })


def signal_endpoint(sink_address: str, signal: str) -> str:
    """``{sink address}{signal}``; the address is used verbatim as a prefix."""
    return f"{sink_address}{signal}"


@dataclass
class TelemetryHandle:
    """Providers created at startup, kept so they can be flushed on shutdown."""

    resource: Resource
    logger_provider: LoggerProvider
    handler: logging.Handler
    tracer_provider: TracerProvider | None = None
    meter_provider: MeterProvider | None = None
    instrumentors: list = field(default_factory=list)
    closed: bool = False

    def instrument(self, app: FastAPI) -> None:
        if self.tracer_provider is None:
            return
        from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

        FastAPIInstrumentor.instrument_app(
            app,
            tracer_provider=self.tracer_provider,
            meter_provider=self.meter_provider,
        )

    def shutdown(self) -> None:
        if self.closed:
            return
        self.closed = True
        logging.getLogger().removeHandler(self.handler)
        # Client instrumentation is process-global.
        for instrumentor in self.instrumentors:
            instrumentor.uninstrument()
        self.logger_provider.shutdown()
        if self.tracer_provider is not None:
            self.tracer_provider.shutdown()
        if self.meter_provider is not None:
            self.meter_provider.shutdown()


def _configure_logging(
    resource: Resource,
    sink_address: str,
    debug: bool,
    log_exporter: LogExporter | None,
) -> tuple[LoggerProvider, logging.Handler]:
    logger_provider = LoggerProvider(resource=resource)

    if log_exporter is None:
        exporter = OTLPLogExporter(endpoint=signal_endpoint(sink_address, "logs"))
        logger_provider.add_log_record_processor(BatchLogRecordProcessor(exporter))
    else:
        # Injected exporters are flushed synchronously.
        logger_provider.add_log_record_processor(SimpleLogRecordProcessor(log_exporter))

    if debug:
        logger_provider.add_log_record_processor(SimpleLogRecordProcessor(ConsoleLogExporter()))

    handler = LoggingHandler(level=logging.NOTSET, logger_provider=logger_provider)
    handler.addFilter(CorrelationIdFilter())

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(logging.INFO)

    return logger_provider, handler


def _span_processors(sink_address: str, debug: bool) -> list:
    from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
    from opentelemetry.sdk.trace.export import (
        BatchSpanProcessor,
        ConsoleSpanExporter,
        SimpleSpanProcessor,
    )

    processors = [BatchSpanProcessor(OTLPSpanExporter(endpoint=signal_endpoint(sink_address, "traces")))]
    if debug:
        processors.append(SimpleSpanProcessor(ConsoleSpanExporter()))
    return processors


def _configure_traces_and_metrics(
    app_name: str,
    resource: Resource,
    sink_address: str,
    debug: bool,
) -> tuple[TracerProvider, MeterProvider, list]:
    from opentelemetry.exporter.otlp.proto.http.metric_exporter import OTLPMetricExporter
    from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
    from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
    from opentelemetry.sdk.trace.sampling import ALWAYS_ON

    tracer_provider = TracerProvider(resource=resource, sampler=ALWAYS_ON)
    for processor in _span_processors(sink_address, debug):
        tracer_provider.add_span_processor(processor)

    reader = PeriodicExportingMetricReader(
        OTLPMetricExporter(endpoint=signal_endpoint(sink_address, "metrics"))
    )
    meter_provider = MeterProvider(resource=resource, metric_readers=[reader])

    http_client = HTTPXClientInstrumentor()
    http_client.instrument(
        tracer_provider=tracer_provider,
        meter_provider=meter_provider,
    )
    logger.info("Trace and metric export enabled for %s", app_name)
    return tracer_provider, meter_provider, [http_client]


def configure_telemetry(settings: Settings, log_exporter: LogExporter | None = None) -> TelemetryHandle:
    """
    Route all logging through OpenTelemetry and, if enabled, traces and metrics.

    Args:
        settings: Bound application settings.
        log_exporter: Replaces the OTLP log exporter; records are then
            exported synchronously instead of in batches.

    Returns:
        A handle owning the providers, to instrument the app and flush on exit.
    """
    resource = build_resource(settings.app_name, settings.environment)
    sink_address = settings.telemetry_sink.address

    logger_provider, handler = _configure_logging(
        resource, sink_address, settings.startup.debug, log_exporter
    )
    handle = TelemetryHandle(resource=resource, logger_provider=logger_provider, handler=handler)

    logger.info("Log export configured to %s", signal_endpoint(sink_address, "logs"))

    if not settings.startup.use_trace_and_metrics:
        return handle

    handle.tracer_provider, handle.meter_provider, handle.instrumentors = _configure_traces_and_metrics(
        settings.app_name, resource, sink_address, settings.startup.debug
    )
    return handle
