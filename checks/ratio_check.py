#!/usr/bin/env python3
"""
MUTT v2.5 - Elasticsearch Query Ratio Check

Monitoring check that divides the result of one Elasticsearch query (the
dividend) by the result of another (the divisor) over the same time window
and compares the ratio with warning/critical thresholds.

Each side is either a raw document count or a single-value aggregation
(cardinality, avg, sum, ...) over a field.

Output is a single status line on stdout and the conventional exit code:
OK=0, WARNING=1, CRITICAL=2, UNKNOWN=3.

Example: alert when fewer than 5% of requests (unique users) hit the
checkout page over the last 90 minutes:

    check-es-query-ratio -h elasticsearch.service.consul -p 9200 \\
        -Q "path:checkout" -I "web-*" -q "*:*" -i "web-*" \\
        -a user_id --divisor-aggr-type cardinality \\
        --minutes-previous 90 -c 5 -w 10 --invert

Author: MUTT Development Team
License: MIT
Version: 2.5.0
"""

import sys
import uuid
import logging
import argparse
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

import redis

import environment
from check_metrics import CheckMetrics
from dynamic_config import DynamicConfig, DynamicConfigError
from kibana_link import build_link
from logging_utils import setup_json_logging
from measurement import (
    REPEAT_DAILY,
    REPEAT_HOURLY,
    MeasurementRequest,
    MeasurementResult,
    build_requests,
)
from query_executor import (
    DEFAULT_HEADERS,
    ElasticsearchQueryExecutor,
    QueryOutcome,
    build_base_url,
    parse_headers,
)
from ratio_evaluator import (
    REASON_NO_RESULTS,
    Ratio,
    Status,
    Thresholds,
    classify,
    evaluate,
)
from tracing_utils import create_span, set_span_attribute, setup_tracing, shutdown_tracing
from vault_secrets import VaultSecretsError, fetch_backend_credentials

SERVICE_NAME = 'es-query-ratio'
VERSION = '2.5.0'
DEFAULT_CHECK_NAME = 'ESQueryRatio'

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Raised when the check cannot run with the configured environment."""
    pass


@dataclass(frozen=True)
class CheckResult:
    status: Status
    message: str
    ratio: Optional[float] = None


class CheckArgumentParser(argparse.ArgumentParser):
    """Argument errors are reported as UNKNOWN, not argparse's exit code 2 (CRITICAL)."""

    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(int(Status.UNKNOWN), f"{self.prog}: error: {message}\n")


def build_parser() -> argparse.ArgumentParser:
    es = environment.get_elasticsearch_config()

    # -h is the backend host, as in the rest of the check suite
    parser = CheckArgumentParser(
        prog='check-es-query-ratio',
        description='Check the ratio between the results of two Elasticsearch queries',
        add_help=False,
    )
    parser.add_argument('--help', action='help', help='Show this help message and exit')

    side = parser.add_argument_group('dividend / divisor')
    side.add_argument('-I', '--dividend-index', help='Indices the ratio is calculated for (comma separated, wildcards allowed)')
    side.add_argument('-i', '--divisor-index', help='Indices the ratio is calculated from')
    side.add_argument('-D', '--dividend-date-index', help='strftime pattern of a time based dividend index, e.g. logstash-%%Y.%%m.%%d')
    side.add_argument('-d', '--divisor-date-index', help='strftime pattern of a time based divisor index')
    repeat = side.add_mutually_exclusive_group()
    repeat.add_argument('--repeat-daily', dest='repeat', action='store_const', const=REPEAT_DAILY,
                        help='Time based indices repeat daily (default)')
    repeat.add_argument('--repeat-hourly', dest='repeat', action='store_const', const=REPEAT_HOURLY,
                        help='Time based indices repeat hourly')
    parser.set_defaults(repeat=REPEAT_DAILY)
    side.add_argument('-Q', '--dividend-query', required=True, help='Query the ratio is calculated for')
    side.add_argument('-q', '--divisor-query', required=True, help='Query the ratio is calculated from')
    side.add_argument('-F', '--dividend-field', default='message', help='Default field for the dividend query string')
    side.add_argument('-f', '--divisor-field', default='message', help='Default field for the divisor query string')
    side.add_argument('--dividend-timestamp-field', default='@timestamp', help='Timestamp field of the dividend documents')
    side.add_argument('--divisor-timestamp-field', default='@timestamp', help='Timestamp field of the divisor documents')
    side.add_argument('--dividend-aggr-type', help='Aggregation type for the dividend (cardinality, avg, sum, ...)')
    side.add_argument('--divisor-aggr-type', help='Aggregation type for the divisor')
    side.add_argument('-A', '--dividend-aggr-field', help='Field the dividend aggregation runs on')
    side.add_argument('-a', '--divisor-aggr-field', help='Field the divisor aggregation runs on')

    window = parser.add_argument_group('time window')
    window.add_argument('--offset', type=int, default=0, help='Seconds before now to end the window')
    window.add_argument('--minutes-previous', type=int, default=0, help='Minutes before the offset to start the window')
    window.add_argument('--hours-previous', type=int, default=0, help='Hours before the offset to start the window')
    window.add_argument('--days-previous', type=int, default=0, help='Days before the offset to start the window')
    window.add_argument('--weeks-previous', type=int, default=0, help='Weeks before the offset to start the window')
    window.add_argument('--months-previous', type=int, default=0, help='Months (31 days) before the offset to start the window')

    conn = parser.add_argument_group('connection')
    conn.add_argument('-h', '--host', default=es['host'], help='Elasticsearch host')
    conn.add_argument('-p', '--port', type=int, default=es['port'], help='Elasticsearch port')
    conn.add_argument('-s', '--scheme', default=es['scheme'], help='Connection scheme (default: https when authenticated)')
    conn.add_argument('-u', '--user', default=es['user'], help='Elasticsearch user')
    conn.add_argument('-P', '--password', default=es['password'], help='Elasticsearch password')
    conn.add_argument('--headers', default=DEFAULT_HEADERS, help='Comma separated "Name: value" HTTP headers')
    conn.add_argument('-t', '--timeout', type=int, default=es['timeout'], help='Query timeout in seconds')
    conn.add_argument('--ignore-unavailable', action=argparse.BooleanOptionalAction, default=True,
                      help='Ignore unavailable indices')

    thresholds = parser.add_argument_group('thresholds')
    thresholds.add_argument('-w', '--warn', type=float, default=0.0, help='Ratio WARNING threshold')
    thresholds.add_argument('-c', '--crit', type=float, default=0.0, help='Ratio CRITICAL threshold')
    thresholds.add_argument('--invert', action='store_true', default=False, help='Alert when the ratio is below the thresholds')
    thresholds.add_argument('-z', '--zero', dest='divisor_zero_ok', action='store_true', default=False,
                            help='A zero divisor returns OK instead of CRITICAL')

    output = parser.add_argument_group('output')
    output.add_argument('--kibana-url', help='Kibana URL prefix linked from WARNING/CRITICAL output')
    output.add_argument('--check-name', default=DEFAULT_CHECK_NAME,
                        help='Name printed in the status line and used for dynamic threshold keys')
    return parser


class RatioCheck:
    """
    Runs one ratio check: two measurements, one evaluation, one status.
    """

    def __init__(
        self,
        config: Dict[str, Any],
        executor: ElasticsearchQueryExecutor,
        dynamic_config: Optional[DynamicConfig] = None,
        metrics: Optional[CheckMetrics] = None,
    ):
        self.config = config
        self.executor = executor
        self.dynamic_config = dynamic_config
        self.metrics = metrics
        self.check_name = config.get('check_name') or DEFAULT_CHECK_NAME

    def _get_dynamic_threshold(self, key: str, default: float) -> float:
        """Threshold from dynamic config, or the static default on any failure."""
        if self.dynamic_config is None:
            return default
        try:
            return self.dynamic_config.get_float(f"{self.check_name}_{key}", default)
        except DynamicConfigError as e:
            logger.warning(f"Using static {key} threshold {default}: {e}")
            return default

    def thresholds(self) -> Thresholds:
        return Thresholds(
            warning=self._get_dynamic_threshold('warning', float(self.config.get('warn') or 0.0)),
            critical=self._get_dynamic_threshold('critical', float(self.config.get('crit') or 0.0)),
            invert=bool(self.config.get('invert')),
            zero_divisor_ok=bool(self.config.get('divisor_zero_ok')),
        )

    def _kibana_info(self, request: MeasurementRequest) -> str:
        link = build_link(
            self.config.get('kibana_url'),
            request.index_label(),
            request.query,
            request.timestamp_field,
            request.window,
            date_index=None if request.index else request.date_index,
        )
        return f" Kibana logs: {link}" if link else ''

    def _measured(self, outcome: QueryOutcome) -> MeasurementResult:
        """Result of a side, with a missing index counted as zero."""
        if outcome.found:
            return outcome.result
        logger.warning(
            f"{outcome.request.side} index not found with inverted thresholds; "
            f"counting it as 0 (normal thresholds report OK instead)"
        )
        return MeasurementResult.for_request(outcome.request, 0)

    def run(self, now: Optional[datetime] = None) -> CheckResult:
        thresholds = self.thresholds()
        dividend_request, divisor_request = build_requests(self.config, now=now)

        outcomes: List[QueryOutcome] = []
        for request in (dividend_request, divisor_request):
            outcome = self.executor.measure(request)
            if outcome.failed:
                return CheckResult(Status.UNKNOWN, str(outcome.error))
            if outcome.not_found and not thresholds.invert:
                return CheckResult(Status.OK, f"{REASON_NO_RESULTS}, ratio was below thresholds")
            outcomes.append(outcome)

        dividend = self._measured(outcomes[0])
        divisor = self._measured(outcomes[1])
        if self.metrics is not None:
            self.metrics.record_measurement(dividend.side, dividend.value)
            self.metrics.record_measurement(divisor.side, divisor.value)

        with create_span('ratio.evaluate'):
            outcome = evaluate(dividend, divisor, thresholds.zero_divisor_ok)
            status, reason = classify(outcome, thresholds)
            set_span_attribute('ratio.status', status.name)

        ratio = outcome.value if isinstance(outcome, Ratio) else None
        if ratio is not None:
            set_span_attribute('ratio.value', ratio)
            if self.metrics is not None:
                self.metrics.record_ratio(ratio)
            if status in (Status.WARNING, Status.CRITICAL):
                reason += '.' + self._kibana_info(dividend_request)

        logger.info(
            f"{self.check_name}: dividend={dividend.value} divisor={divisor.value} -> {status.name}"
        )
        return CheckResult(status, reason, ratio)


def format_output(check_name: str, result: CheckResult) -> str:
    return f"{check_name} {result.status.name}: {result.message}"


def _resolve_credentials(args: argparse.Namespace) -> Dict[str, Optional[str]]:
    """Command line (or environment) credentials, else Vault when enabled."""
    if args.password or not environment.VAULT_ENABLED:
        return {'user': args.user, 'password': args.password}
    return fetch_backend_credentials(environment.get_vault_config(), default_user=args.user)


def _init_dynamic_config() -> Optional[DynamicConfig]:
    """Connect to Redis for threshold overrides when DYNAMIC_CONFIG_ENABLED is set."""
    if not environment.DYNAMIC_CONFIG_ENABLED:
        return None
    try:
        rc = environment.get_redis_config()
        redis_client = redis.Redis(
            host=rc['host'],
            port=rc['port'],
            db=rc['db'],
            password=rc.get('password'),
            socket_timeout=2,
            decode_responses=True,
        )
        return DynamicConfig(redis_client, prefix=environment.DYNAMIC_CONFIG_PREFIX)
    except (redis.RedisError, DynamicConfigError) as e:
        logger.warning(f"Dynamic config unavailable, using static thresholds: {e}")
        return None


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point. Returns the check exit code."""
    args = build_parser().parse_args(argv)
    run_id = uuid.uuid4().hex[:12]

    setup_json_logging(
        SERVICE_NAME,
        VERSION,
        level=environment.LOG_LEVEL,
        run_id=run_id,
        json_enabled=environment.LOG_JSON_ENABLED,
    )
    setup_tracing(SERVICE_NAME, VERSION)
    for warning in environment.validate_environment():
        logger.warning(warning)

    check_name = args.check_name
    metrics = CheckMetrics(check_name)
    executor = None
    config_errors = environment.get_config_errors()
    try:
        if config_errors:
            raise ConfigurationError(f"Invalid environment: {'; '.join(config_errors)}")
        with create_span('ratio.check', attributes={'check.name': check_name, 'check.run_id': run_id}):
            credentials = _resolve_credentials(args)
            executor = ElasticsearchQueryExecutor(
                build_base_url(args.host, args.port, args.scheme, authenticated=bool(credentials['user'])),
                user=credentials['user'],
                password=credentials['password'],
                headers=parse_headers(args.headers),
                timeout=args.timeout,
                ignore_unavailable=args.ignore_unavailable,
                metrics=metrics,
            )
            check = RatioCheck(vars(args), executor, dynamic_config=_init_dynamic_config(), metrics=metrics)
            result = check.run()
    except (VaultSecretsError, ConfigurationError) as e:
        logger.error(str(e))
        result = CheckResult(Status.UNKNOWN, str(e))
    except Exception as e:
        logger.error(f"Unexpected error during ratio check: {e}", exc_info=True)
        result = CheckResult(Status.UNKNOWN, f"Check failed to run: {e}")
    finally:
        if executor is not None:
            executor.close()

    print(format_output(check_name, result))

    metrics.record_status(result.status)
    metrics.write(environment.METRICS_TEXTFILE_PATH)
    shutdown_tracing()
    return int(result.status)


if __name__ == "__main__":
    sys.exit(main())
