#!/usr/bin/env python3
"""
MUTT v2.5 - Ratio Check Measurement Model

Immutable descriptions of the two sides (dividend and divisor) of a ratio
check, and the results measured for them.

A MeasurementRequest is built once per side from the shared raw check
configuration. The raw configuration is never mutated; each side reads its
own ``dividend_*`` / ``divisor_*`` keys plus the shared time-window keys.

Author: MUTT Development Team
License: MIT
Version: 2.5.0
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

logger = logging.getLogger(__name__)

DIVIDEND = 'dividend'
DIVISOR = 'divisor'
SIDES = (DIVIDEND, DIVISOR)

DEFAULT_SEARCH_FIELD = 'message'
DEFAULT_TIMESTAMP_FIELD = '@timestamp'
ALL_INDICES = '_all'

SECONDS_PER_MINUTE = 60
SECONDS_PER_HOUR = 60 * 60
SECONDS_PER_DAY = 60 * 60 * 24
SECONDS_PER_WEEK = 60 * 60 * 24 * 7
# Months are approximated as 31 days
SECONDS_PER_MONTH = 60 * 60 * 24 * 31

REPEAT_DAILY = 'daily'
REPEAT_HOURLY = 'hourly'
_REPEAT_STEP_SECONDS = {
    REPEAT_DAILY: SECONDS_PER_DAY,
    REPEAT_HOURLY: SECONDS_PER_HOUR,
}


@dataclass(frozen=True)
class TimeWindow:
    """Absolute UTC interval a measurement is restricted to."""

    start: datetime
    end: datetime

    @property
    def duration_seconds(self) -> float:
        return (self.end - self.start).total_seconds()

    @property
    def is_open(self) -> bool:
        """True when no look-back was configured; no range filter applies."""
        return self.start == self.end


def window_duration_seconds(
    minutes: int = 0,
    hours: int = 0,
    days: int = 0,
    weeks: int = 0,
    months: int = 0,
) -> int:
    return (
        minutes * SECONDS_PER_MINUTE
        + hours * SECONDS_PER_HOUR
        + days * SECONDS_PER_DAY
        + weeks * SECONDS_PER_WEEK
        + months * SECONDS_PER_MONTH
    )


def resolve_time_window(
    offset: int = 0,
    minutes: int = 0,
    hours: int = 0,
    days: int = 0,
    weeks: int = 0,
    months: int = 0,
    now: Optional[datetime] = None,
) -> TimeWindow:
    """
    Resolve a look-back window ending ``offset`` seconds before now.

    Args:
        offset: Seconds to shift the end of the window into the past
        minutes/hours/days/weeks/months: Additive look-back components
        now: Reference instant (default: current UTC time)

    Returns:
        TimeWindow with timezone-aware UTC start and end
    """
    if now is None:
        now = datetime.now(timezone.utc)
    end = now - timedelta(seconds=offset)
    start = end - timedelta(seconds=window_duration_seconds(minutes, hours, days, weeks, months))
    return TimeWindow(start=start, end=end)


@dataclass(frozen=True)
class RawCount:
    """Measure the number of matching documents."""

    @property
    def is_aggregated(self) -> bool:
        return False


@dataclass(frozen=True)
class Aggregated:
    """Measure a single-value aggregation (cardinality, avg, sum, ...) over a field."""

    type: str
    field: str
    name: str

    @property
    def is_aggregated(self) -> bool:
        return True


Aggregation = Union[RawCount, Aggregated]


def resolve_aggregation(aggr_type: Optional[str], aggr_field: Optional[str], name: str) -> Aggregation:
    """
    Decide the measurement mode for one side.

    Aggregation mode requires both the type and the field. When only one of
    the pair is given the side silently falls back to a raw count, which is
    how existing check definitions have always behaved.
    """
    if aggr_type and aggr_field:
        return Aggregated(type=aggr_type, field=aggr_field, name=name)
    if aggr_type or aggr_field:
        logger.warning(
            f"{name}: aggregation needs both a type and a field "
            f"(type={aggr_type!r}, field={aggr_field!r}); falling back to raw count"
        )
    return RawCount()


@dataclass(frozen=True)
class MeasurementRequest:
    """One fully-resolved side of the ratio."""

    side: str
    query: str
    window: TimeWindow
    aggregation: Aggregation = field(default_factory=RawCount)
    index: Optional[str] = None
    date_index: Optional[str] = None
    repeat: str = REPEAT_DAILY
    search_field: str = DEFAULT_SEARCH_FIELD
    timestamp_field: str = DEFAULT_TIMESTAMP_FIELD

    @property
    def is_aggregated(self) -> bool:
        return self.aggregation.is_aggregated

    def indices(self) -> str:
        """
        Index selector sent to the backend.

        An explicit index list wins. A strftime date pattern is expanded to
        every concrete index the window touches, newest first. Otherwise all
        indices are searched.
        """
        if self.index:
            return self.index
        if self.date_index:
            return ','.join(expand_date_index(self.date_index, self.window, self.repeat))
        return ALL_INDICES

    def index_label(self) -> str:
        """Human-readable index for messages (the pattern, not its expansion)."""
        return self.index or self.date_index or ALL_INDICES


def expand_date_index(pattern: str, window: TimeWindow, repeat: str = REPEAT_DAILY) -> List[str]:
    """
    Expand a time-templated index pattern over a window.

    >>> w = resolve_time_window(days=2, now=datetime(2024, 3, 3, 12, tzinfo=timezone.utc))
    >>> expand_date_index('logs-%Y.%m.%d', w)
    ['logs-2024.03.03', 'logs-2024.03.02', 'logs-2024.03.01']
    """
    step = timedelta(seconds=_REPEAT_STEP_SECONDS.get(repeat, SECONDS_PER_DAY))
    names: List[str] = []
    current = window.end
    while True:
        name = current.strftime(pattern)
        if name not in names:
            names.append(name)
        if current <= window.start:
            break
        current = max(current - step, window.start)
    return names


@dataclass(frozen=True)
class MeasurementResult:
    """Value measured for one side, with the metadata needed for messages."""

    side: str
    value: float
    index: str
    query: str
    field: str

    @classmethod
    def for_request(cls, request: MeasurementRequest, value: float) -> "MeasurementResult":
        return cls(
            side=request.side,
            value=value,
            index=request.index_label(),
            query=request.query,
            field=request.search_field,
        )


def build_request(config: Mapping[str, Any], side: str, window: TimeWindow) -> MeasurementRequest:
    """
    Build the MeasurementRequest for one side from the raw configuration.

    Args:
        config: Raw check configuration (e.g. ``vars(args)``)
        side: DIVIDEND or DIVISOR
        window: Time window shared by both sides

    Returns:
        Immutable MeasurementRequest
    """
    if side not in SIDES:
        raise ValueError(f"Unknown measurement side: {side}")

    def opt(name: str, default: Any = None) -> Any:
        value = config.get(f"{side}_{name}")
        return default if value is None else value

    repeat = config.get('repeat') or REPEAT_DAILY

    return MeasurementRequest(
        side=side,
        query=opt('query'),
        window=window,
        aggregation=resolve_aggregation(opt('aggr_type'), opt('aggr_field'), side),
        index=opt('index'),
        date_index=opt('date_index'),
        repeat=repeat,
        search_field=opt('field', DEFAULT_SEARCH_FIELD),
        timestamp_field=opt('timestamp_field', DEFAULT_TIMESTAMP_FIELD),
    )


def build_requests(
    config: Mapping[str, Any],
    now: Optional[datetime] = None,
) -> Tuple[MeasurementRequest, MeasurementRequest]:
    """Build the (dividend, divisor) request pair sharing one time window."""
    window = resolve_time_window(
        offset=int(config.get('offset') or 0),
        minutes=int(config.get('minutes_previous') or 0),
        hours=int(config.get('hours_previous') or 0),
        days=int(config.get('days_previous') or 0),
        weeks=int(config.get('weeks_previous') or 0),
        months=int(config.get('months_previous') or 0),
        now=now,
    )
    return build_request(config, DIVIDEND, window), build_request(config, DIVISOR, window)


def describe(request: MeasurementRequest) -> Dict[str, Any]:
    """Flat attribute dict for spans and structured log records."""
    attrs: Dict[str, Any] = {
        'measurement.side': request.side,
        'measurement.index': request.index_label(),
        'measurement.mode': 'aggregation' if request.is_aggregated else 'count',
        'measurement.window_seconds': request.window.duration_seconds,
    }
    if isinstance(request.aggregation, Aggregated):
        attrs['measurement.aggr_type'] = request.aggregation.type
        attrs['measurement.aggr_field'] = request.aggregation.field
    return attrs
