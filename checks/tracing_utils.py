#!/usr/bin/env python3
"""
MUTT v2.5 - OpenTelemetry Tracing Utilities for Checks

Opt-in distributed tracing for the ratio check. When enabled, each check run
exports one trace containing a span per backend query plus the evaluation,
and outgoing ``requests`` calls are auto-instrumented.

Usage:
    from tracing_utils import setup_tracing, create_span

    setup_tracing(service_name="es-query-ratio", version="2.5.0")

    with create_span("es.count", attributes={"measurement.side": "dividend"}):
        ...

    shutdown_tracing()  # flush spans before the process exits

Environment Variables:
    OTEL_ENABLED: Enable OpenTelemetry tracing (default: false)
    OTEL_EXPORTER_OTLP_ENDPOINT: OTLP collector endpoint (default: http://localhost:4317)
    OTEL_SERVICE_NAME: Service name override
    OTEL_RESOURCE_ATTRIBUTES: Additional resource attributes (key1=val1,key2=val2)
    POD_NAME: Host/pod name for metadata

Author: MUTT Development Team
License: MIT
Version: 2.5.0
"""

import os
import logging
from contextlib import contextmanager
from typing import Any, Dict, Optional

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.requests import RequestsInstrumentor
from opentelemetry.sdk.resources import Resource, SERVICE_NAME, SERVICE_VERSION
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace import Status, StatusCode

logger = logging.getLogger(__name__)

_tracer: Optional[Any] = None
_provider: Optional[Any] = None
_tracing_enabled = False


def setup_tracing(service_name: str, version: str) -> bool:
    """
    Configure OpenTelemetry tracing for a check run.

    Only activates when OTEL_ENABLED is "true". Failures to set up the
    exporter are logged and leave tracing disabled; they never fail the check.

    Returns:
        True if tracing was enabled, False otherwise
    """
    global _tracer, _provider, _tracing_enabled

    otel_enabled = os.getenv("OTEL_ENABLED", "false").lower() in (
        "true",
        "1",
        "yes",
        "on",
    )
    if not otel_enabled:
        logger.debug(f"OpenTelemetry tracing disabled for service={service_name}")
        _tracing_enabled = False
        return False

    try:
        otlp_endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT", "http://localhost:4317")
        service_name_override = os.getenv("OTEL_SERVICE_NAME", service_name)

        resource_attrs = {
            SERVICE_NAME: service_name_override,
            SERVICE_VERSION: version,
            "service.instance.id": os.getenv("POD_NAME", "unknown"),
        }
        additional_attrs = os.getenv("OTEL_RESOURCE_ATTRIBUTES", "")
        if additional_attrs:
            for pair in additional_attrs.split(","):
                if "=" in pair:
                    key, value = pair.split("=", 1)
                    resource_attrs[key.strip()] = value.strip()

        provider = TracerProvider(resource=Resource.create(resource_attrs))
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(
            endpoint=otlp_endpoint,
            insecure=not otlp_endpoint.startswith("https"),
        )))
        trace.set_tracer_provider(provider)

        _provider = provider
        _tracer = trace.get_tracer(f"mutt.{service_name}", version)

        RequestsInstrumentor().instrument()

        logger.info(
            f"OpenTelemetry tracing enabled: service={service_name_override} endpoint={otlp_endpoint}"
        )
        _tracing_enabled = True
        return True

    except Exception as e:
        logger.error(f"Failed to setup OpenTelemetry tracing: {e}", exc_info=True)
        _tracing_enabled = False
        return False


def shutdown_tracing() -> None:
    """Flush pending spans; a check process exits right after reporting."""
    global _tracing_enabled
    if _provider is not None:
        try:
            _provider.shutdown()
        except Exception as e:
            logger.warning(f"Failed to flush spans: {e}")
    _tracing_enabled = False


@contextmanager
def create_span(name: str, attributes: Optional[Dict[str, Any]] = None):
    """
    Run a block inside a span. Yields None when tracing is disabled.

    Exceptions escaping the block are recorded on the span and re-raised.
    """
    if not _tracing_enabled or _tracer is None:
        yield None
        return

    with _tracer.start_as_current_span(name, record_exception=False, set_status_on_exception=False) as span:
        if attributes:
            for key, value in attributes.items():
                if not isinstance(value, (str, int, float, bool)):
                    value = str(value)
                span.set_attribute(key, value)
        try:
            yield span
        except Exception as e:
            span.set_status(Status(StatusCode.ERROR, str(e)))
            span.record_exception(e)
            raise


def set_span_attribute(key: str, value: Any) -> None:
    """Set an attribute on the current active span."""
    if not _tracing_enabled:
        return

    span = trace.get_current_span()
    if span and span.is_recording():
        if not isinstance(value, (str, int, float, bool)):
            value = str(value)
        span.set_attribute(key, value)


def record_exception(exception: Exception) -> None:
    """Record an exception on the current active span and mark it failed."""
    if not _tracing_enabled:
        return

    span = trace.get_current_span()
    if span and span.is_recording():
        span.record_exception(exception)
        span.set_status(Status(StatusCode.ERROR, str(exception)))
