#!/usr/bin/env python3
"""
MUTT v2.5 - Kibana Discover Link Builder

Builds a Kibana "discover" URL showing the documents behind a ratio check's
dividend query, so WARNING/CRITICAL output can be followed straight into the
logs.

Author: MUTT Development Team
License: MIT
Version: 2.5.0
"""

from datetime import datetime
from typing import Optional
from urllib.parse import quote

from measurement import TimeWindow

# Characters left as-is in the rison-encoded Kibana state
_SAFE_CHARS = "!*'();/?:@&=+$,[]"

# strftime directive -> Kibana (moment.js) index pattern token
_KIBANA_DATE_TOKENS = {
    'Y': 'YYYY',
    'y': 'YY',
    'm': 'MM',
    'd': 'DD',
    'j': 'DDDD',
    'H': 'HH',
}


def kibana_timestamp(moment: datetime) -> str:
    """ISO timestamp with millisecond precision, e.g. 2024-03-03T12:00:00.000Z."""
    return moment.strftime('%Y-%m-%dT%H:%M:%S.') + f"{moment.microsecond // 1000:03d}Z"


def kibana_index_pattern(date_index: str) -> str:
    """
    Convert a strftime index pattern into Kibana's bracketed form.

    >>> kibana_index_pattern('logstash-%Y.%m.%d')
    '[logstash-]YYYY.MM.DD'
    """
    parts = date_index.split('%')
    pattern = f"[{parts[0]}]" if parts[0] else ''
    for part in parts[1:]:
        if not part:
            continue
        token, literal = part[0], part[1:]
        pattern += _KIBANA_DATE_TOKENS.get(token, token)
        if any(c.isalpha() for c in literal):
            pattern += f"[{literal}]"
        else:
            pattern += literal
    return pattern


def _escape(value: str) -> str:
    return quote(value, safe=_SAFE_CHARS)


def build_link(
    base_url: Optional[str],
    index: str,
    query: str,
    timestamp_field: str,
    window: TimeWindow,
    date_index: Optional[str] = None,
) -> str:
    """
    Kibana discover URL for a query over a window.

    Args:
        base_url: Kibana URL prefix; empty or None disables the link
        index: Index selector of the measured side
        query: Query predicate of the measured side
        timestamp_field: Field the results are sorted on
        window: Time window of the measurement
        date_index: strftime index pattern, used instead of ``index`` when set

    Returns:
        The URL, or an empty string when no base URL is configured
    """
    if not base_url:
        return ''

    if date_index:
        index = kibana_index_pattern(date_index)

    return (
        f"{base_url.rstrip('/')}/#/discover?_g="
        f"(refreshInterval:(display:Off,section:0,value:0),time:(from:'"
        f"{_escape(kibana_timestamp(window.start))}',mode:absolute,to:'"
        f"{_escape(kibana_timestamp(window.end))}'))&_a=(columns:!(_source),index:"
        f"{_escape(index)},interval:auto,query:(query_string:(analyze_wildcard:!t,query:'"
        f"{_escape(query)}')),sort:!('{timestamp_field}',desc))&dummy"
    )
