"""Billing cycle arithmetic and charge outcome transitions.

Nothing here performs I/O. Callers load a ``Subscription``, apply one of the
transitions below, and persist the result.
"""

import calendar
from dataclasses import dataclass
from datetime import datetime, timezone, tzinfo
from typing import Any

from realtycrm.billing.toss_client import PaymentResult
from realtycrm.models.subscription import Subscription

MAX_PAYMENT_RETRIES = 3


@dataclass(frozen=True)
class FailureOutcome:
    """Result of recording a failed charge."""

    suspended: bool
    retry_count: int


def compute_next_billing_date(reference: datetime) -> datetime:
    """Return ``reference`` plus one calendar month, keeping the time of day.

    A day-of-month the target month doesn't have is clamped to that month's
    last day (Jan 31 -> Feb 28, or Feb 29 in a leap year).
    """
    year = reference.year + reference.month // 12
    month = reference.month % 12 + 1
    day = min(reference.day, calendar.monthrange(year, month)[1])
    return reference.replace(year=year, month=month, day=day)


def _to_local(value: datetime, tz: tzinfo) -> datetime:
    return value.replace(tzinfo=timezone.utc).astimezone(tz)


def _to_naive_utc(value: datetime) -> datetime:
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def next_billing_after(now: datetime, previous: datetime | None = None, tz: tzinfo | None = None) -> datetime:
    """Next cursor for a charge that succeeded at ``now`` (naive UTC).

    The month is added on the local calendar of ``tz``. The cursor is
    re-anchored to the charge time, but never moves backwards past
    ``previous``.
    """
    tz = tz or timezone.utc
    candidate = _to_naive_utc(compute_next_billing_date(_to_local(now, tz)))
    if previous is not None and candidate <= previous:
        candidate = _to_naive_utc(compute_next_billing_date(_to_local(previous, tz)))
    return candidate


def _history_entry(**fields: Any) -> dict[str, Any]:
    return {key: value for key, value in fields.items() if value is not None}


def apply_success(
    subscription: Subscription,
    payment_result: PaymentResult,
    now: datetime,
    tz: tzinfo | None = None,
) -> None:
    """Record an approved charge and advance the billing cursor."""
    subscription.last_payment_date = now
    subscription.next_billing_date = next_billing_after(now, subscription.next_billing_date, tz)
    subscription.retry_count = 0
    subscription.status = "active"
    # Reassign so the JSON column is flagged dirty
    subscription.payment_history = [
        *(subscription.payment_history or []),
        _history_entry(
            date=now.isoformat(),
            status="success",
            amount=payment_result.total_amount,
            payment_key=payment_result.payment_key,
            order_id=payment_result.order_id,
        ),
    ]


def apply_failure(
    subscription: Subscription,
    error: Exception,
    now: datetime,
    max_retries: int = MAX_PAYMENT_RETRIES,
) -> FailureOutcome:
    """Record a failed charge; suspend once ``max_retries`` failures accumulate."""
    subscription.retry_count = min((subscription.retry_count or 0) + 1, max_retries)
    subscription.last_payment_attempt = now
    subscription.payment_history = [
        *(subscription.payment_history or []),
        _history_entry(
            date=now.isoformat(),
            status="failed",
            error=str(error),
            retry_count=subscription.retry_count,
        ),
    ]

    if subscription.retry_count >= max_retries:
        subscription.status = "suspended"
        subscription.suspended_at = now
        return FailureOutcome(suspended=True, retry_count=subscription.retry_count)

    return FailureOutcome(suspended=False, retry_count=subscription.retry_count)
