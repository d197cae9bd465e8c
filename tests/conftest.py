# =====================================================================
# MUTT v2.5 Ratio Check - Pytest Configuration and Fixtures
# =====================================================================
# Shared fixtures and configuration for all ratio check tests
# =====================================================================

import os
import sys
from datetime import datetime, timezone
from unittest.mock import MagicMock, Mock

import pytest
import requests

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'checks'))


# --- Check Configuration ---

@pytest.fixture
def fixed_now():
    """Reference instant used as 'now' by time window tests"""
    return datetime(2024, 3, 3, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def base_config():
    """Raw check configuration as produced by the argument parser"""
    return {
        'dividend_index': 'web-*',
        'divisor_index': 'web-*',
        'dividend_date_index': None,
        'divisor_date_index': None,
        'repeat': 'daily',
        'dividend_query': 'status:500',
        'divisor_query': '*:*',
        'dividend_field': 'message',
        'divisor_field': 'message',
        'dividend_timestamp_field': '@timestamp',
        'divisor_timestamp_field': '@timestamp',
        'dividend_aggr_type': None,
        'divisor_aggr_type': None,
        'dividend_aggr_field': None,
        'divisor_aggr_field': None,
        'offset': 0,
        'minutes_previous': 90,
        'hours_previous': 0,
        'days_previous': 0,
        'weeks_previous': 0,
        'months_previous': 0,
        'warn': 10.0,
        'crit': 5.0,
        'invert': False,
        'divisor_zero_ok': False,
        'kibana_url': None,
        'check_name': 'ESQueryRatio',
    }


# --- HTTP Fixtures ---

def make_response(status_code=200, json_data=None, text=''):
    """Build a mock requests.Response"""
    response = Mock(spec=requests.Response)
    response.status_code = status_code
    response.reason = 'OK' if status_code < 400 else 'Error'
    response.text = text
    if json_data is None:
        response.json.side_effect = ValueError("No JSON object could be decoded")
    else:
        response.json.return_value = json_data
    if status_code >= 400:
        response.raise_for_status.side_effect = requests.exceptions.HTTPError(f"{status_code} Error")
    else:
        response.raise_for_status.return_value = None
    return response


@pytest.fixture
def mock_session():
    """Mock requests.Session"""
    session = MagicMock(spec=requests.Session)
    session.headers = {}
    session.auth = None
    return session


# --- External Service Fixtures ---

@pytest.fixture
def mock_redis_client():
    """Mock Redis client with no dynamic config keys"""
    client = MagicMock()
    client.scan_iter.return_value = []
    client.get.return_value = None
    return client


@pytest.fixture
def mock_vault_client():
    """Mock Vault client"""
    vault = MagicMock()
    vault.is_authenticated.return_value = True
    vault.auth.approle.login.return_value = {"auth": {"client_token": "test-token", "lease_duration": 3600}}
    vault.secrets.kv.v2.read_secret_version.return_value = {
        "data": {
            "data": {
                "ES_USER": "monitoring",
                "ES_PASSWORD": "es-password",
            }
        }
    }
    return vault


# --- Pytest Configuration ---

def pytest_configure(config):
    """Pytest configuration hook"""
    config.addinivalue_line(
        "markers", "unit: Unit tests (mock all external dependencies)"
    )


# --- Helper Functions ---

def assert_log_contains(caplog, level, message_fragment):
    """Assert that logs contain a specific message"""
    for record in caplog.records:
        if record.levelname == level and message_fragment in record.message:
            return True
    raise AssertionError(
        f"Log message containing '{message_fragment}' at level '{level}' not found"
    )
