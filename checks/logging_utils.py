#!/usr/bin/env python3
"""
MUTT v2.5 - Ratio Check Logging Utilities

Structured logging for the ratio check. Everything is written to stderr so
that stdout only ever carries the single status line read by the monitoring
agent.

Key Features:
- NDJSON (newline-delimited JSON) format, opt-in via LOG_JSON_ENABLED
- Plain text format otherwise
- Per-run correlation ID on every record (one check invocation = one run)
- OpenTelemetry trace context injection when a span is active

Usage:
    from logging_utils import setup_json_logging

    logger = setup_json_logging(
        service_name="es-query-ratio",
        version="2.5.0",
        level="WARNING",
        run_id=run_id,
        json_enabled=False,
    )

Level and format come from environment.LOG_LEVEL and
environment.LOG_JSON_ENABLED; the caller passes them in.

Environment Variables:
    POD_NAME: Host/pod name for metadata

Author: MUTT Development Team
License: MIT
Version: 2.5.0
"""

import os
import sys
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from opentelemetry import trace

# LogRecord attributes that are not copied into the JSON "extra" fields
_RESERVED_ATTRS = frozenset([
    "name",
    "msg",
    "args",
    "created",
    "filename",
    "funcName",
    "levelname",
    "levelno",
    "lineno",
    "module",
    "msecs",
    "message",
    "pathname",
    "process",
    "processName",
    "relativeCreated",
    "thread",
    "threadName",
    "taskName",
    "exc_info",
    "exc_text",
    "stack_info",
    "correlation_id",
    "trace_id",
    "span_id",
])


class NDJSONFormatter(logging.Formatter):
    """
    Formatter that outputs each record as one JSON object per line.

    Fields included:
    - timestamp, level, message, logger, module, function, line
    - service, version, pod_name
    - correlation_id: Run ID of the check invocation
    - trace_id / span_id: OpenTelemetry IDs (if tracing enabled)
    - error: Exception details (if exception present)
    - any fields passed via ``extra={}``
    """

    def __init__(self, service_name: str, version: str):
        super().__init__()
        self.service_name = service_name
        self.version = version
        self.pod_name = os.getenv("POD_NAME", "unknown")

    def format(self, record: logging.LogRecord) -> str:
        log_entry: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
            "service": self.service_name,
            "version": self.version,
            "pod_name": self.pod_name,
            "correlation_id": getattr(record, "correlation_id", None) or "system",
        }

        trace_id = getattr(record, "trace_id", None)
        span_id = getattr(record, "span_id", None)
        if trace_id:
            log_entry["trace_id"] = trace_id
        if span_id:
            log_entry["span_id"] = span_id

        if record.exc_info:
            log_entry["error"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": self.formatException(record.exc_info),
            }

        for key, value in record.__dict__.items():
            if key in _RESERVED_ATTRS:
                continue
            try:
                json.dumps(value)
                log_entry[key] = value
            except (TypeError, ValueError):
                log_entry[key] = str(value)

        return json.dumps(log_entry, default=str)


class RunIdFilter(logging.Filter):
    """Stamps every record with the correlation ID of the current check run."""

    def __init__(self, run_id: str):
        super().__init__()
        self.run_id = run_id

    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "correlation_id", None):
            record.correlation_id = self.run_id
        return True


class TraceContextFilter(logging.Filter):
    """
    Injects OpenTelemetry trace context into log records.

    Records logged outside of a recording span are passed through untouched.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        span = trace.get_current_span()
        if span is not None and span.is_recording():
            span_context = span.get_span_context()
            if span_context.is_valid:
                record.trace_id = format(span_context.trace_id, "032x")
                record.span_id = format(span_context.span_id, "016x")
        return True


def setup_json_logging(
    service_name: str,
    version: str,
    level: str = "WARNING",
    run_id: Optional[str] = None,
    json_enabled: bool = False,
    stream=None,
) -> logging.Logger:
    """
    Configure logging for a check run.

    Uses the NDJSON formatter when json_enabled is set, otherwise a plain
    text format. The function is idempotent: existing root handlers
    are replaced.

    Args:
        service_name: Name reported in JSON records (e.g. "es-query-ratio")
        version: Version string reported in JSON records
        level: Logging level name (environment.LOG_LEVEL)
        run_id: Correlation ID attached to every record
        json_enabled: Emit NDJSON records (environment.LOG_JSON_ENABLED)
        stream: Output stream (default: sys.stderr)

    Returns:
        Configured root logger
    """
    log_level = level.upper()

    logger = logging.getLogger()
    logger.handlers.clear()
    logger.setLevel(getattr(logging, log_level, logging.WARNING))

    handler = logging.StreamHandler(stream if stream is not None else sys.stderr)
    handler.setLevel(logger.level)
    handler.addFilter(RunIdFilter(run_id or "system"))

    if json_enabled:
        handler.setFormatter(NDJSONFormatter(service_name=service_name, version=version))
        handler.addFilter(TraceContextFilter())
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s - %(levelname)s - [%(correlation_id)s] - %(name)s - %(message)s"
        ))

    logger.addHandler(handler)
    logger.debug(
        f"Logging configured for service={service_name} version={version} json={json_enabled}"
    )
    return logger