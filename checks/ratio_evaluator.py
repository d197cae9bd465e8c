#!/usr/bin/env python3
"""
MUTT v2.5 - Ratio Evaluation and Threshold Classification

Combines the dividend and divisor measurements into a ratio and classifies
it against warning/critical thresholds.

Evaluation outcomes:
- Ratio(value): dividend / divisor for a non-zero divisor
- ZeroDivisorOK: divisor is zero and the check is configured to fail safe
- ZeroDivisorCritical: divisor is zero and the check must alert

Classification (critical is always checked before warning):
- normal polarity:   value > critical -> CRITICAL, value > warning -> WARNING
- inverted polarity: value < critical -> CRITICAL, value < warning -> WARNING
A value equal to a threshold does not trigger it.

Author: MUTT Development Team
License: MIT
Version: 2.5.0
"""

from dataclasses import dataclass
from enum import IntEnum
from typing import NamedTuple, Union

from measurement import MeasurementResult


class Status(IntEnum):
    """Check status, valued as the process exit code."""
    OK = 0
    WARNING = 1
    CRITICAL = 2
    UNKNOWN = 3


REASON_ZERO_DIVISOR_OK = "divisor is zero, failing safe"
REASON_ZERO_DIVISOR_CRITICAL = "divisor is zero, raising alert"
REASON_NO_RESULTS = "no results found"


@dataclass(frozen=True)
class Thresholds:
    """Threshold configuration for one run."""

    warning: float = 0.0
    critical: float = 0.0
    invert: bool = False
    zero_divisor_ok: bool = False


@dataclass(frozen=True)
class Ratio:
    value: float


@dataclass(frozen=True)
class ZeroDivisorOK:
    pass


@dataclass(frozen=True)
class ZeroDivisorCritical:
    pass


Outcome = Union[Ratio, ZeroDivisorOK, ZeroDivisorCritical]


class Classification(NamedTuple):
    status: Status
    reason: str


def evaluate(dividend: MeasurementResult, divisor: MeasurementResult, zero_divisor_ok: bool) -> Outcome:
    """Divide the two measurements, applying the zero-divisor policy."""
    if divisor.value == 0:
        return ZeroDivisorOK() if zero_divisor_ok else ZeroDivisorCritical()
    return Ratio(float(dividend.value) / divisor.value)


def classify(outcome: Outcome, thresholds: Thresholds) -> Classification:
    """
    Map an evaluation outcome to a status and a human-readable reason.

    Threshold ordering is not validated; critical wins whenever both match.
    """
    if isinstance(outcome, ZeroDivisorOK):
        return Classification(Status.OK, REASON_ZERO_DIVISOR_OK)
    if isinstance(outcome, ZeroDivisorCritical):
        return Classification(Status.CRITICAL, REASON_ZERO_DIVISOR_CRITICAL)

    value = outcome.value
    if thresholds.invert:
        if value < thresholds.critical:
            return Classification(
                Status.CRITICAL,
                f"Query ratio ({value}) was below critical threshold ({thresholds.critical})",
            )
        if value < thresholds.warning:
            return Classification(
                Status.WARNING,
                f"Query ratio ({value}) was below warning threshold ({thresholds.warning})",
            )
    else:
        if value > thresholds.critical:
            return Classification(
                Status.CRITICAL,
                f"Query ratio ({value}) was above critical threshold ({thresholds.critical})",
            )
        if value > thresholds.warning:
            return Classification(
                Status.WARNING,
                f"Query ratio ({value}) was above warning threshold ({thresholds.warning})",
            )
    return Classification(Status.OK, f"Query ratio ({value}) was ok")
