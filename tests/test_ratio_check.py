"""
=====================================================================
MUTT v2.5 Ratio Check - Check Runner Unit Tests
=====================================================================
Tests for checks/ratio_check.py
Run with: pytest tests/test_ratio_check.py -v
=====================================================================
"""

import sys
import os
import importlib

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'checks'))

import pytest
from unittest.mock import Mock, MagicMock, patch

from conftest import assert_log_contains
from dynamic_config import DynamicConfigError
from measurement import DIVIDEND, DIVISOR, MeasurementResult
from query_executor import (
    BackendError,
    NotFoundError,
    OutcomeKind,
    QueryOutcome,
)
from ratio_evaluator import Status
from vault_secrets import VaultSecretsError

pytestmark = pytest.mark.unit


# =====================================================================
# FIXTURES
# =====================================================================

def _found(request, value):
    return QueryOutcome(OutcomeKind.FOUND, request, result=MeasurementResult.for_request(request, value))


def _not_found(request):
    return QueryOutcome(OutcomeKind.NOT_FOUND, request, error=NotFoundError("no such index"))


def _failed(request):
    return QueryOutcome(OutcomeKind.BACKEND_ERROR, request, error=BackendError("connection refused"))


@pytest.fixture
def mock_executor():
    """Executor whose measure() answers per side from a dict of callables."""
    executor = Mock()
    executor.answers = {}
    executor.measure.side_effect = lambda request: executor.answers[request.side](request)
    return executor


def _run(config, executor, fixed_now, **kwargs):
    from ratio_check import RatioCheck
    return RatioCheck(config, executor, **kwargs).run(now=fixed_now)


# =====================================================================
# END-TO-END SCENARIOS
# =====================================================================

class TestRatioCheckRun:
    """Tests for RatioCheck.run()"""

    def test_counts_within_thresholds(self, base_config, mock_executor, fixed_now):
        """50 / 500 = 0.1 is below both thresholds."""
        mock_executor.answers = {
            DIVIDEND: lambda r: _found(r, 50),
            DIVISOR: lambda r: _found(r, 500),
        }

        result = _run(base_config, mock_executor, fixed_now)

        assert result.status == Status.OK
        assert result.ratio == pytest.approx(0.1)
        assert "0.1" in result.message

    def test_inverted_cardinality_critical(self, base_config, mock_executor, fixed_now):
        """cardinality 2 / count 100 = 0.02 is below the critical threshold."""
        base_config.update({
            'invert': True,
            'dividend_aggr_type': 'cardinality',
            'dividend_aggr_field': 'user_id',
        })
        mock_executor.answers = {
            DIVIDEND: lambda r: _found(r, 2.0),
            DIVISOR: lambda r: _found(r, 100),
        }

        result = _run(base_config, mock_executor, fixed_now)

        assert result.status == Status.CRITICAL
        assert "below critical threshold (5.0)" in result.message
        dividend_request = mock_executor.measure.call_args_list[0][0][0]
        assert dividend_request.is_aggregated

    def test_warning_includes_kibana_link(self, base_config, mock_executor, fixed_now):
        base_config['kibana_url'] = 'https://kibana.example.com'
        mock_executor.answers = {
            DIVIDEND: lambda r: _found(r, 70),
            DIVISOR: lambda r: _found(r, 10),
        }

        result = _run(base_config, mock_executor, fixed_now)

        assert result.status == Status.CRITICAL
        assert "Kibana logs: https://kibana.example.com/#/discover" in result.message
        assert "query:'status:500'" in result.message

    def test_ok_has_no_kibana_link(self, base_config, mock_executor, fixed_now):
        base_config['kibana_url'] = 'https://kibana.example.com'
        mock_executor.answers = {
            DIVIDEND: lambda r: _found(r, 1),
            DIVISOR: lambda r: _found(r, 10),
        }

        result = _run(base_config, mock_executor, fixed_now)

        assert result.status == Status.OK
        assert "Kibana" not in result.message

    def test_zero_divisor_critical(self, base_config, mock_executor, fixed_now):
        mock_executor.answers = {
            DIVIDEND: lambda r: _found(r, 3),
            DIVISOR: lambda r: _found(r, 0),
        }

        result = _run(base_config, mock_executor, fixed_now)

        assert result.status == Status.CRITICAL
        assert result.message == "divisor is zero, raising alert"
        assert result.ratio is None

    def test_zero_divisor_ok(self, base_config, mock_executor, fixed_now):
        base_config['divisor_zero_ok'] = True
        mock_executor.answers = {
            DIVIDEND: lambda r: _found(r, 3),
            DIVISOR: lambda r: _found(r, 0),
        }

        result = _run(base_config, mock_executor, fixed_now)

        assert result.status == Status.OK
        assert result.message == "divisor is zero, failing safe"

    def test_dividend_queried_before_divisor(self, base_config, mock_executor, fixed_now):
        mock_executor.answers = {
            DIVIDEND: lambda r: _found(r, 1),
            DIVISOR: lambda r: _found(r, 1),
        }

        _run(base_config, mock_executor, fixed_now)

        sides = [c[0][0].side for c in mock_executor.measure.call_args_list]
        assert sides == [DIVIDEND, DIVISOR]

    def test_metrics_recorded(self, base_config, mock_executor, fixed_now):
        metrics = Mock()
        mock_executor.answers = {
            DIVIDEND: lambda r: _found(r, 50),
            DIVISOR: lambda r: _found(r, 500),
        }

        _run(base_config, mock_executor, fixed_now, metrics=metrics)

        metrics.record_measurement.assert_any_call(DIVIDEND, 50)
        metrics.record_measurement.assert_any_call(DIVISOR, 500)
        metrics.record_ratio.assert_called_once_with(pytest.approx(0.1))


class TestNotFoundRecovery:
    """Missing indices: OK under normal thresholds, zero under inverted ones."""

    def test_dividend_missing_normal_is_ok(self, base_config, mock_executor, fixed_now):
        mock_executor.answers = {DIVIDEND: _not_found, DIVISOR: lambda r: _found(r, 10)}

        result = _run(base_config, mock_executor, fixed_now)

        assert result.status == Status.OK
        assert "no results found" in result.message
        # the divisor is never queried
        assert mock_executor.measure.call_count == 1

    def test_divisor_missing_normal_is_ok(self, base_config, mock_executor, fixed_now):
        mock_executor.answers = {DIVIDEND: lambda r: _found(r, 10), DIVISOR: _not_found}

        result = _run(base_config, mock_executor, fixed_now)

        assert result.status == Status.OK
        assert "no results found" in result.message

    def test_dividend_missing_inverted_classifies_zero(self, base_config, mock_executor, fixed_now, caplog):
        base_config['invert'] = True
        mock_executor.answers = {DIVIDEND: _not_found, DIVISOR: lambda r: _found(r, 10)}

        result = _run(base_config, mock_executor, fixed_now)

        assert result.status == Status.CRITICAL
        assert result.ratio == 0.0
        assert_log_contains(caplog, "WARNING", "index not found with inverted thresholds")

    def test_divisor_missing_inverted_uses_zero_policy(self, base_config, mock_executor, fixed_now):
        base_config.update({'invert': True, 'divisor_zero_ok': True})
        mock_executor.answers = {DIVIDEND: lambda r: _found(r, 10), DIVISOR: _not_found}

        result = _run(base_config, mock_executor, fixed_now)

        assert result.status == Status.OK
        assert result.message == "divisor is zero, failing safe"


class TestBackendFailure:
    """Backend errors end the run as UNKNOWN."""

    def test_dividend_failure_is_unknown(self, base_config, mock_executor, fixed_now):
        mock_executor.answers = {DIVIDEND: _failed, DIVISOR: lambda r: _found(r, 10)}

        result = _run(base_config, mock_executor, fixed_now)

        assert result.status == Status.UNKNOWN
        assert "connection refused" in result.message
        assert mock_executor.measure.call_count == 1

    def test_divisor_failure_is_unknown(self, base_config, mock_executor, fixed_now):
        base_config['invert'] = True
        mock_executor.answers = {DIVIDEND: lambda r: _found(r, 10), DIVISOR: _failed}

        result = _run(base_config, mock_executor, fixed_now)

        assert result.status == Status.UNKNOWN


# =====================================================================
# THRESHOLDS
# =====================================================================

class TestThresholds:
    """Tests for static and dynamic thresholds."""

    def test_static_thresholds(self, base_config):
        from ratio_check import RatioCheck

        thresholds = RatioCheck(base_config, Mock()).thresholds()

        assert thresholds.warning == 10.0
        assert thresholds.critical == 5.0
        assert thresholds.invert is False
        assert thresholds.zero_divisor_ok is False

    def test_dynamic_overrides(self, base_config):
        from ratio_check import RatioCheck

        dyn = Mock()
        dyn.get_float.side_effect = lambda key, default: {'ESQueryRatio_warning': 7.5}.get(key, default)

        thresholds = RatioCheck(base_config, Mock(), dynamic_config=dyn).thresholds()

        assert thresholds.warning == 7.5
        assert thresholds.critical == 5.0
        dyn.get_float.assert_any_call('ESQueryRatio_critical', 5.0)

    def test_dynamic_failure_falls_back(self, base_config):
        from ratio_check import RatioCheck

        dyn = Mock()
        dyn.get_float.side_effect = DynamicConfigError("redis down")

        thresholds = RatioCheck(base_config, Mock(), dynamic_config=dyn).thresholds()

        assert thresholds.warning == 10.0
        assert thresholds.critical == 5.0


# =====================================================================
# CLI
# =====================================================================

class TestArgumentParser:
    """Tests for build_parser()"""

    def test_required_queries(self, capsys):
        from ratio_check import build_parser

        with pytest.raises(SystemExit) as exc_info:
            build_parser().parse_args(['-I', 'web-*'])

        assert exc_info.value.code == 3
        assert 'required' in capsys.readouterr().err

    def test_short_flags(self):
        from ratio_check import build_parser

        args = build_parser().parse_args([
            '-h', 'es.service.consul', '-p', '9243',
            '-Q', 'status:500', '-I', 'web-*',
            '-q', '*:*', '-i', 'web-*',
            '-a', 'user_id', '--divisor-aggr-type', 'cardinality',
            '--minutes-previous', '90', '-c', '5', '-w', '10', '--invert', '-z',
        ])

        assert args.host == 'es.service.consul'
        assert args.port == 9243
        assert args.divisor_aggr_field == 'user_id'
        assert args.minutes_previous == 90
        assert args.crit == 5.0
        assert args.warn == 10.0
        assert args.invert is True
        assert args.divisor_zero_ok is True
        assert args.ignore_unavailable is True

    def test_defaults(self):
        from ratio_check import build_parser

        args = build_parser().parse_args(['-Q', 'a', '-q', 'b', '--no-ignore-unavailable'])

        assert args.dividend_field == 'message'
        assert args.divisor_timestamp_field == '@timestamp'
        assert args.warn == 0.0
        assert args.crit == 0.0
        assert args.invert is False
        assert args.ignore_unavailable is False
        assert args.check_name == 'ESQueryRatio'
        assert args.repeat == 'daily'

    def test_repeat_hourly(self):
        from ratio_check import build_parser

        args = build_parser().parse_args(['-Q', 'a', '-q', 'b', '--repeat-hourly'])

        assert args.repeat == 'hourly'

    def test_repeat_flags_are_exclusive(self, capsys):
        from ratio_check import build_parser

        with pytest.raises(SystemExit) as exc_info:
            build_parser().parse_args(['-Q', 'a', '-q', 'b', '--repeat-daily', '--repeat-hourly'])

        assert exc_info.value.code == 3
        assert 'not allowed with argument' in capsys.readouterr().err


class TestMain:
    """Tests for main() wiring: output line and exit code."""

    ARGV = ['-Q', 'status:500', '-I', 'web-*', '-q', '*:*', '-i', 'web-*',
            '--minutes-previous', '90', '-w', '10', '-c', '5']

    @patch('ratio_check.setup_json_logging')
    @patch('ratio_check.ElasticsearchQueryExecutor')
    def test_ok_run(self, mock_executor_cls, mock_logging, capsys):
        from ratio_check import main

        executor = MagicMock()
        executor.measure.side_effect = lambda r: _found(r, 50 if r.side == DIVIDEND else 500)
        mock_executor_cls.return_value = executor

        code = main(self.ARGV)

        assert code == 0
        assert capsys.readouterr().out.strip() == "ESQueryRatio OK: Query ratio (0.1) was ok"
        executor.close.assert_called_once()

    @patch('ratio_check.setup_json_logging')
    @patch('ratio_check.ElasticsearchQueryExecutor')
    def test_logging_configured_from_environment(self, mock_executor_cls, mock_logging, capsys):
        from ratio_check import main

        mock_executor_cls.return_value.measure.side_effect = lambda r: _found(r, 1)

        with patch('ratio_check.environment.LOG_JSON_ENABLED', True), \
                patch('ratio_check.environment.LOG_LEVEL', 'INFO'):
            main(self.ARGV)

        kwargs = mock_logging.call_args[1]
        assert kwargs['json_enabled'] is True
        assert kwargs['level'] == 'INFO'

    @patch('ratio_check.setup_json_logging')
    def test_backend_error_exit_unknown(self, mock_logging, capsys):
        """A real executor against an unreachable backend reports UNKNOWN."""
        from ratio_check import main
        import requests

        with patch.object(requests.Session, 'post', side_effect=requests.exceptions.ConnectionError('refused')):
            code = main(self.ARGV + ['--check-name', 'ErrorRatio'])

        out = capsys.readouterr().out
        assert code == 3
        assert out.startswith("ErrorRatio UNKNOWN: Cannot connect to Elasticsearch")

    @patch('ratio_check.setup_json_logging')
    @patch('ratio_check.ElasticsearchQueryExecutor')
    def test_unexpected_error_exit_unknown(self, mock_executor_cls, mock_logging, capsys):
        from ratio_check import main

        mock_executor_cls.return_value.measure.side_effect = RuntimeError("boom")

        code = main(self.ARGV)

        assert code == 3
        assert "UNKNOWN: Check failed to run: boom" in capsys.readouterr().out

    @patch('ratio_check.setup_json_logging')
    @patch('ratio_check.ElasticsearchQueryExecutor')
    def test_malformed_environment_exit_unknown(self, mock_executor_cls, mock_logging, capsys):
        """A non-numeric ES_PORT is reported as one UNKNOWN line, not a crash."""
        import environment
        from ratio_check import main

        try:
            with patch.dict(os.environ, {'ES_PORT': 'abc'}):
                importlib.reload(environment)
            code = main(self.ARGV)
        finally:
            importlib.reload(environment)

        lines = capsys.readouterr().out.splitlines()
        assert code == 3
        assert len(lines) == 1
        assert lines[0].startswith("ESQueryRatio UNKNOWN: Invalid environment: ES_PORT ('abc')")
        mock_executor_cls.assert_not_called()

    @patch('ratio_check.setup_json_logging')
    @patch('ratio_check.fetch_backend_credentials')
    @patch('ratio_check.environment')
    @patch('ratio_check.ElasticsearchQueryExecutor')
    def test_vault_credentials(self, mock_executor_cls, mock_env, mock_fetch, mock_logging, capsys):
        from ratio_check import main

        mock_env.VAULT_ENABLED = True
        mock_env.DYNAMIC_CONFIG_ENABLED = False
        mock_env.METRICS_TEXTFILE_PATH = None
        mock_env.LOG_LEVEL = 'WARNING'
        mock_env.validate_environment.return_value = []
        mock_env.get_config_errors.return_value = []
        mock_env.get_elasticsearch_config.return_value = {
            'host': 'localhost', 'port': 9200, 'scheme': None,
            'user': None, 'password': None, 'timeout': 30,
        }
        mock_fetch.return_value = {'user': 'monitoring', 'password': 'from-vault'}
        executor = MagicMock()
        executor.measure.side_effect = lambda r: _found(r, 1)
        mock_executor_cls.return_value = executor

        code = main(self.ARGV)

        assert code == 0
        args, kwargs = mock_executor_cls.call_args
        assert args[0] == 'https://localhost:9200'
        assert kwargs['user'] == 'monitoring'
        assert kwargs['password'] == 'from-vault'

    @patch('ratio_check.setup_json_logging')
    @patch('ratio_check.fetch_backend_credentials')
    @patch('ratio_check.environment')
    def test_vault_failure_exit_unknown(self, mock_env, mock_fetch, mock_logging, capsys):
        from ratio_check import main

        mock_env.VAULT_ENABLED = True
        mock_env.METRICS_TEXTFILE_PATH = None
        mock_env.LOG_LEVEL = 'WARNING'
        mock_env.validate_environment.return_value = []
        mock_env.get_config_errors.return_value = []
        mock_env.get_elasticsearch_config.return_value = {
            'host': 'localhost', 'port': 9200, 'scheme': None,
            'user': None, 'password': None, 'timeout': 30,
        }
        mock_fetch.side_effect = VaultSecretsError("Vault secret ID file is empty")

        code = main(self.ARGV)

        assert code == 3
        assert "UNKNOWN: Vault secret ID file is empty" in capsys.readouterr().out

    @patch('ratio_check.setup_json_logging')
    @patch('ratio_check.ElasticsearchQueryExecutor')
    def test_metrics_textfile_written(self, mock_executor_cls, mock_logging, tmp_path, capsys):
        from ratio_check import main

        executor = MagicMock()
        executor.measure.side_effect = lambda r: _found(r, 1 if r.side == DIVIDEND else 4)
        mock_executor_cls.return_value = executor
        path = tmp_path / 'ratio.prom'

        with patch('ratio_check.environment.METRICS_TEXTFILE_PATH', str(path)):
            main(self.ARGV)

        content = path.read_text()
        assert 'mutt_ratio_check_ratio{check="ESQueryRatio"} 0.25' in content
        assert 'mutt_ratio_check_status{check="ESQueryRatio"} 0.0' in content
