"""
Confidence learning -- bounded multiplicative reliability updates.

A success multiplies confidence by 1.20 (capped at 0.95); a failure
multiplies it by 0.85 (floored at 0.05). Additive in log space, so no
batch retraining is ever needed:

    0.50 -> 0.60 -> 0.72 -> 0.864 -> 0.95 (capped)
    0.50 -> 0.425 -> 0.36125
"""

from typing import Iterable

from patternbank.types import CONFIDENCE_CEILING, CONFIDENCE_FLOOR, INITIAL_CONFIDENCE

SUCCESS_FACTOR = 1.20
FAILURE_FACTOR = 0.85

# Rounding keeps repeated updates on the documented decimal trajectory.
_PRECISION = 10


def clamp_confidence(value: float) -> float:
    return min(CONFIDENCE_CEILING, max(CONFIDENCE_FLOOR, value))


def update_confidence(current: float, success: bool) -> float:
    """Return the confidence after one outcome."""
    if success:
        updated = min(CONFIDENCE_CEILING, current * SUCCESS_FACTOR)
    else:
        updated = max(CONFIDENCE_FLOOR, current * FAILURE_FACTOR)
    return round(clamp_confidence(updated), _PRECISION)


def replay(outcomes: Iterable[bool], start: float = INITIAL_CONFIDENCE) -> float:
    """Fold a sequence of outcomes into a final confidence."""
    value = start
    for success in outcomes:
        value = update_confidence(value, success)
    return value
