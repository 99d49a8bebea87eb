"""
Shared observability utilities for Seraphim rollout services.

Structured JSON logging, OpenTelemetry tracing and correlation ids used by
the rollout API and the canary decision core.
"""

import json
import logging
import os
import uuid
from contextlib import contextmanager
from typing import Any, Iterator, Optional

from opentelemetry import baggage, context, trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from pythonjsonlogger.json import JsonFormatter

CORRELATION_HEADER = "X-Correlation-Id"


class CorrelationIdFilter(logging.Filter):
    """Attach trace, span, correlation and rollout ids to log records."""

    def filter(self, record):
        span = trace.get_current_span()
        if span.is_recording():
            span_context = span.get_span_context()
            record.trace_id = format(span_context.trace_id, '032x')
            record.span_id = format(span_context.span_id, '016x')
        else:
            record.trace_id = None
            record.span_id = None

        # Ids passed explicitly through ``extra`` win over baggage
        for key in ("correlation_id", "rollout_id"):
            if getattr(record, key, None) is None:
                setattr(record, key, baggage.get_baggage(key))
        return True


def setup_logging(service_name: str, log_level: Optional[str] = None) -> logging.Logger:
    """
    Configure structured JSON logging on the root logger.

    Args:
        service_name: Name of the service, added to every record
        log_level: Optional level override, defaults to ``LOG_LEVEL``

    Returns:
        The service logger
    """
    log_level = (log_level or os.environ.get("LOG_LEVEL", "INFO")).upper()

    formatter = JsonFormatter(
        fmt="%(asctime)s %(name)s %(levelname)s %(message)s %(service_name)s "
            "%(trace_id)s %(span_id)s %(correlation_id)s %(rollout_id)s",
        datefmt="%Y-%m-%dT%H:%M:%SZ",
        static_fields={"service_name": service_name},
    )

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)
    handler.addFilter(CorrelationIdFilter())

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, log_level, logging.INFO))

    logger = logging.getLogger(service_name)
    logger.info("Structured logging initialized", extra={"log_level": log_level})
    return logger


def setup_tracing(service_name: str, service_version: str = "unknown") -> trace.Tracer:
    """
    Configure OpenTelemetry tracing.

    Spans are exported over OTLP when ``OTLP_ENDPOINT`` is set and to the
    console when ``TRACE_CONSOLE=true``.
    """
    resource = Resource.create({
        "service.name": service_name,
        "service.version": service_version,
    })
    tracer_provider = TracerProvider(resource=resource)
    trace.set_tracer_provider(tracer_provider)

    exporters = []

    otlp_endpoint = os.environ.get("OTLP_ENDPOINT")
    if otlp_endpoint:
        try:
            exporters.append(OTLPSpanExporter(endpoint=otlp_endpoint, insecure=True))
        except Exception as e:
            logging.getLogger(__name__).warning(
                "Failed to configure OTLP exporter",
                extra={"error": str(e)}
            )

    if os.environ.get("TRACE_CONSOLE", "false").lower() == "true":
        exporters.append(ConsoleSpanExporter())

    for exporter in exporters:
        tracer_provider.add_span_processor(BatchSpanProcessor(exporter))

    logging.getLogger(__name__).info(
        "Distributed tracing initialized",
        extra={
            "service_version": service_version,
            "exporters": len(exporters)
        }
    )
    return trace.get_tracer(service_name, service_version)


def instrument_fastapi(app):
    """Instrument a FastAPI application, propagating correlation ids."""
    FastAPIInstrumentor.instrument_app(app, server_request_hook=_server_request_hook)


def instrument_httpx():
    """Instrument httpx clients, forwarding correlation ids downstream."""
    HTTPXClientInstrumentor().instrument(
        request_hook=_client_request_hook,
        async_request_hook=_async_client_request_hook,
    )


def _server_request_hook(span: trace.Span, scope: dict):
    if span and span.is_recording():
        headers = dict(scope.get("headers", []))
        correlation_id = headers.get(CORRELATION_HEADER.lower().encode())
        correlation_id_str = correlation_id.decode() if correlation_id else str(uuid.uuid4())
        span.set_attribute("correlation_id", correlation_id_str)
        context.attach(baggage.set_baggage("correlation_id", correlation_id_str))


def _client_request_hook(span: trace.Span, request):
    if span and span.is_recording():
        correlation_id = baggage.get_baggage("correlation_id")
        if correlation_id and hasattr(request, "headers"):
            request.headers[CORRELATION_HEADER] = correlation_id


async def _async_client_request_hook(span: trace.Span, request):
    _client_request_hook(span, request)


@contextmanager
def trace_operation(operation_name: str, **attributes) -> Iterator[trace.Span]:
    """
    Run a block inside a span, recording any exception it raises.

    Example:
        with trace_operation("canary_evaluation", canary_deployment_id=canary_id):
            result = await comparator.compare(...)
    """
    tracer = trace.get_tracer(__name__)
    with tracer.start_as_current_span(operation_name) as span:
        for key, value in attributes.items():
            span.set_attribute(key, str(value))
        try:
            yield span
        except Exception as e:
            span.record_exception(e)
            span.set_status(trace.Status(trace.StatusCode.ERROR, str(e)))
            raise


def add_span_attributes(**attributes):
    span = trace.get_current_span()
    if span and span.is_recording():
        for key, value in attributes.items():
            span.set_attribute(key, str(value))


def get_correlation_id() -> Optional[str]:
    return baggage.get_baggage("correlation_id")


@contextmanager
def baggage_scope(**items: str) -> Iterator[None]:
    """Put ``items`` in OpenTelemetry baggage for the duration of the block."""
    ctx = context.get_current()
    for key, value in items.items():
        ctx = baggage.set_baggage(key, value, context=ctx)
    token = context.attach(ctx)
    try:
        yield
    finally:
        context.detach(token)


def sanitize_for_json_logging(value: Any) -> str:
    """
    Make a free-form value safe to embed in a JSON log record.

    JSON payloads are re-serialised compactly; other text has control
    characters escaped. Output is capped at 1000 characters.
    """
    if value is None:
        return "null"

    str_value = str(value)

    if str_value.strip().startswith(('{', '[', '"')) and len(str_value) > 1:
        try:
            parsed = json.loads(str_value)
            return json.dumps(parsed, separators=(',', ':'), ensure_ascii=False)
        except (json.JSONDecodeError, TypeError):
            pass

    sanitized = str_value.replace('\\', '\\\\').replace('"', '\\"')
    sanitized = sanitized.replace('\n', '\\n').replace('\r', '\\r').replace('\t', '\\t')

    if len(sanitized) > 1000:
        sanitized = sanitized[:997] + '...'

    return sanitized
