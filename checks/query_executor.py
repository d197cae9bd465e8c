#!/usr/bin/env python3
"""
MUTT v2.5 - Elasticsearch Query Executor

Runs one MeasurementRequest against Elasticsearch over its REST API and
returns a single numeric value.

- RawCount requests use ``<indices>/_count``
- Aggregated requests use ``<indices>/_search`` with ``size: 0`` and a single
  named aggregation whose scalar ``value`` is returned

Failures are split in two:
- NotFoundError: the index does not exist for the window (HTTP 404)
- BackendError: everything else (connection, timeout, auth, bad query,
  malformed response)

``measure()`` wraps both into a QueryOutcome so the caller can branch on
the result instead of catching exceptions.

Author: MUTT Development Team
License: MIT
Version: 2.5.0
"""

import time
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional
from urllib.parse import quote

import requests

from measurement import (
    Aggregated,
    MeasurementRequest,
    MeasurementResult,
    describe,
)
from tracing_utils import create_span, record_exception

logger = logging.getLogger(__name__)

ES_DATE_FORMAT = '%Y-%m-%dT%H:%M:%S'
DEFAULT_HEADERS = 'Content-Type: application/json'


class QueryError(Exception):
    """Base class for query failures."""
    pass


class BackendError(QueryError):
    """Raised on transport, authentication or query failures. Fatal for the run."""
    pass


class NotFoundError(QueryError):
    """Raised when the target index does not exist for the queried window."""
    pass


class OutcomeKind:
    """Enum-like class for query outcomes."""
    FOUND = "FOUND"
    NOT_FOUND = "NOT_FOUND"
    BACKEND_ERROR = "BACKEND_ERROR"


@dataclass(frozen=True)
class QueryOutcome:
    kind: str
    request: MeasurementRequest
    result: Optional[MeasurementResult] = None
    error: Optional[QueryError] = None

    @property
    def found(self) -> bool:
        return self.kind == OutcomeKind.FOUND

    @property
    def not_found(self) -> bool:
        return self.kind == OutcomeKind.NOT_FOUND

    @property
    def failed(self) -> bool:
        return self.kind == OutcomeKind.BACKEND_ERROR


def parse_headers(raw: Optional[str]) -> Dict[str, str]:
    """
    Parse a comma separated ``Name: value`` header list.

    >>> parse_headers('Content-Type: application/json, X-Team: neto')
    {'Content-Type': 'application/json', 'X-Team': 'neto'}
    """
    headers: Dict[str, str] = {}
    if not raw:
        return headers
    for item in raw.split(','):
        if ':' not in item:
            continue
        name, value = item.split(':', 1)
        if name.strip():
            headers[name.strip()] = value.strip()
    return headers


def build_base_url(host: str, port: int, scheme: Optional[str] = None, authenticated: bool = False) -> str:
    """Backend base URL; the scheme defaults to https for authenticated connections."""
    if not scheme:
        scheme = 'https' if authenticated else 'http'
    return f"{scheme}://{host}:{port}"


def build_query(request: MeasurementRequest) -> Optional[Dict[str, Any]]:
    """
    Query clause restricting the predicate to the request's window.

    Returns None for an open window on a raw count; the predicate is then
    sent as the ``q`` URL parameter with ``df`` as its default field.
    """
    query_string = {
        'query_string': {
            'default_field': request.search_field,
            'query': request.query,
        }
    }
    if request.window.is_open:
        if request.is_aggregated:
            return query_string
        return None

    return {
        'bool': {
            'must': [
                query_string,
                {
                    'range': {
                        request.timestamp_field: {
                            'gt': request.window.start.strftime(ES_DATE_FORMAT),
                            'lt': request.window.end.strftime(ES_DATE_FORMAT),
                        }
                    }
                },
            ]
        }
    }


def build_body(request: MeasurementRequest) -> Optional[Dict[str, Any]]:
    """Full request body for the count or search call."""
    query = build_query(request)
    aggregation = request.aggregation
    if isinstance(aggregation, Aggregated):
        return {
            'size': 0,
            'query': query,
            'aggs': {
                aggregation.name: {
                    aggregation.type: {'field': aggregation.field}
                }
            },
        }
    if query is None:
        return None
    return {'query': query}


class ElasticsearchQueryExecutor:
    """
    Executes measurement requests against one Elasticsearch endpoint.

    Attributes:
        base_url: Backend URL (scheme://host:port)
        timeout: Per-query timeout in seconds
        ignore_unavailable: Skip missing concrete indices in multi-index queries
    """

    def __init__(
        self,
        base_url: str,
        user: Optional[str] = None,
        password: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
        timeout: int = 30,
        ignore_unavailable: bool = True,
        session: Optional[requests.Session] = None,
        metrics: Optional[Any] = None,
    ):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.ignore_unavailable = ignore_unavailable
        self.metrics = metrics
        self.session = session or requests.Session()
        if headers:
            self.session.headers.update(headers)
        if user is not None and password is not None:
            self.session.auth = (user, password)
        logger.debug(f"Query executor initialized for {self.base_url} (timeout={timeout}s)")

    def close(self) -> None:
        self.session.close()

    def __enter__(self) -> "ElasticsearchQueryExecutor":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _call(self, endpoint: str, request: MeasurementRequest, body: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        url = f"{self.base_url}/{quote(request.indices(), safe=',*')}/{endpoint}"
        params: Dict[str, Any] = {
            'ignore_unavailable': 'true' if self.ignore_unavailable else 'false',
        }
        if body is None:
            params['q'] = request.query
            params['df'] = request.search_field

        try:
            if body is None:
                response = self.session.get(url, params=params, timeout=self.timeout)
            else:
                response = self.session.post(url, params=params, json=body, timeout=self.timeout)
        except requests.exceptions.Timeout as e:
            raise BackendError(f"{request.side} query timed out after {self.timeout}s") from e
        except requests.exceptions.ConnectionError as e:
            raise BackendError(f"Cannot connect to Elasticsearch at {self.base_url}: {e}") from e
        except requests.exceptions.RequestException as e:
            raise BackendError(f"{request.side} query failed: {e}") from e

        if response.status_code == 404:
            raise NotFoundError(
                f"Index not found for {request.side} query: {request.index_label()} "
                f"({_error_reason(response)})"
            )
        try:
            response.raise_for_status()
        except requests.exceptions.HTTPError as e:
            raise BackendError(
                f"{request.side} query returned HTTP {response.status_code}: {_error_reason(response)}"
            ) from e

        try:
            return response.json()
        except ValueError as e:
            raise BackendError(f"{request.side} query returned a non-JSON response") from e

    def count(self, request: MeasurementRequest) -> int:
        """Number of documents matching the request."""
        data = self._call('_count', request, build_body(request))
        try:
            return int(data['count'])
        except (KeyError, TypeError, ValueError) as e:
            raise BackendError(f"{request.side} count response has no 'count': {data}") from e

    def aggregate(self, request: MeasurementRequest) -> float:
        """Scalar value of the request's aggregation."""
        aggregation = request.aggregation
        if not isinstance(aggregation, Aggregated):
            raise ValueError(f"{request.side} request has no aggregation")

        data = self._call('_search', request, build_body(request))
        try:
            value = data['aggregations'][aggregation.name]['value']
        except (KeyError, TypeError) as e:
            raise BackendError(
                f"{request.side} search response has no '{aggregation.name}' aggregation value"
            ) from e
        # single-value aggregations over zero documents report null
        return 0.0 if value is None else float(value)

    def measure(self, request: MeasurementRequest) -> QueryOutcome:
        """
        Run the request in its measurement mode and report the outcome.

        Never raises QueryError; failures are returned as NOT_FOUND or
        BACKEND_ERROR outcomes.
        """
        operation = 'aggregate' if request.is_aggregated else 'count'
        started = time.monotonic()
        with create_span(f"es.{operation}", attributes=describe(request)):
            try:
                if request.is_aggregated:
                    value = self.aggregate(request)
                else:
                    value = self.count(request)
            except NotFoundError as e:
                logger.warning(str(e))
                outcome = QueryOutcome(OutcomeKind.NOT_FOUND, request, error=e)
            except BackendError as e:
                record_exception(e)
                logger.error(str(e))
                outcome = QueryOutcome(OutcomeKind.BACKEND_ERROR, request, error=e)
            else:
                logger.info(f"{request.side} {operation} on {request.index_label()}: {value}")
                outcome = QueryOutcome(
                    OutcomeKind.FOUND,
                    request,
                    result=MeasurementResult.for_request(request, value),
                )

        if self.metrics is not None:
            self.metrics.observe_query(request.side, operation, time.monotonic() - started, outcome.kind)
        return outcome


def _error_reason(response: requests.Response) -> str:
    """Best-effort extraction of the Elasticsearch error reason."""
    try:
        data = response.json()
    except ValueError:
        return response.text[:200] or response.reason or 'no details'
    error = data.get('error') if isinstance(data, dict) else None
    if isinstance(error, dict):
        return error.get('reason') or error.get('type') or str(error)
    return str(error) if error else (response.reason or 'no details')
