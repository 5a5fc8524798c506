from __future__ import annotations

import math
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Union

from ..core.errors import InvalidDurationError, ValidationError


BILLING_INCREMENT_SECONDS = 60
MONEY_QUANTUM = Decimal("0.0001")

Number = Union[Decimal, float, int, str]


def to_decimal(value: Number) -> Decimal:
    """Convert ``value`` to ``Decimal`` without inheriting binary float noise."""
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value))
        except InvalidOperation as exc:
            raise ValidationError(f"Invalid amount: {value!r}") from exc
    if not result.is_finite():
        raise ValidationError(f"Amount must be finite: {value!r}")
    return result


def round_money(value: Number) -> Decimal:
    """Round to four decimal places, half-up."""
    return to_decimal(value).quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)


def compute_cost(
    rate_per_minute: Number,
    duration_seconds: Union[int, float],
    billing_increment_seconds: int = BILLING_INCREMENT_SECONDS,
) -> Decimal:
    """Charge for a call, billing every started increment in full.

    ``ceil(duration / increment)`` increments are billed, so a 61 second call
    at a 60 second increment costs two minutes.
    """
    if duration_seconds < 0:
        raise InvalidDurationError(
            f"Duration must be non-negative, got {duration_seconds}"
        )
    if billing_increment_seconds <= 0:
        raise ValidationError("Billing increment must be a positive number of seconds")

    rate = to_decimal(rate_per_minute)
    increments = math.ceil(to_decimal(duration_seconds) / billing_increment_seconds)
    billable_minutes = Decimal(increments * billing_increment_seconds) / 60
    return round_money(rate * billable_minutes)
