#!/usr/bin/env python3
"""
MUTT v2.5 - Ratio Check Prometheus Metrics

A check is a short-lived process, so its metrics live in a private
CollectorRegistry and are written once per run to a node-exporter textfile
collector file (METRICS_TEXTFILE_PATH) instead of being served over HTTP.

Author: MUTT Development Team
License: MIT
Version: 2.5.0
"""

import time
import logging
from typing import Optional

from prometheus_client import CollectorRegistry, Gauge, Histogram, Counter, write_to_textfile

logger = logging.getLogger(__name__)


class CheckMetrics:
    """Metrics for one ratio check run, labelled by check name."""

    def __init__(self, check_name: str, registry: Optional[CollectorRegistry] = None):
        self.check_name = check_name
        self.registry = registry or CollectorRegistry()

        self.ratio = Gauge(
            'mutt_ratio_check_ratio',
            'Last computed dividend/divisor ratio',
            ['check'],
            registry=self.registry,
        )
        self.status = Gauge(
            'mutt_ratio_check_status',
            'Last check status (0=OK, 1=WARNING, 2=CRITICAL, 3=UNKNOWN)',
            ['check'],
            registry=self.registry,
        )
        self.measurement = Gauge(
            'mutt_ratio_check_measurement_value',
            'Last measured value per side',
            ['check', 'side'],
            registry=self.registry,
        )
        self.queries = Counter(
            'mutt_ratio_check_queries_total',
            'Backend queries issued by the check',
            ['check', 'side', 'outcome'],
            registry=self.registry,
        )
        self.query_latency = Histogram(
            'mutt_ratio_check_query_latency_seconds',
            'Backend query latency',
            ['check', 'side', 'operation'],
            buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
            registry=self.registry,
        )
        self.last_run = Gauge(
            'mutt_ratio_check_last_run_timestamp_seconds',
            'Unix time of the last completed run',
            ['check'],
            registry=self.registry,
        )

    def observe_query(self, side: str, operation: str, seconds: float, outcome: str) -> None:
        self.query_latency.labels(check=self.check_name, side=side, operation=operation).observe(seconds)
        self.queries.labels(check=self.check_name, side=side, outcome=outcome.lower()).inc()

    def record_measurement(self, side: str, value: float) -> None:
        self.measurement.labels(check=self.check_name, side=side).set(value)

    def record_ratio(self, value: float) -> None:
        self.ratio.labels(check=self.check_name).set(value)

    def record_status(self, status: int) -> None:
        self.status.labels(check=self.check_name).set(int(status))
        self.last_run.labels(check=self.check_name).set(time.time())

    def write(self, path: Optional[str]) -> bool:
        """
        Write the registry to a textfile collector file.

        Returns:
            True if written, False when no path is configured or the write failed
        """
        if not path:
            return False
        try:
            write_to_textfile(path, self.registry)
            logger.debug(f"Metrics written to {path}")
            return True
        except OSError as e:
            logger.warning(f"Failed to write metrics to {path}: {e}")
            return False
