"""Subscription service: store queries used by the scheduler and ops endpoints."""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from realtycrm.billing.cycle import compute_next_billing_date
from realtycrm.models.subscription import Subscription
from realtycrm.models.subscription_history import SubscriptionHistory
from realtycrm.models.user import User
from realtycrm.services.history_service import list_subscription_history

logger = logging.getLogger(__name__)


async def get_subscription(db: AsyncSession, subscription_id: uuid.UUID) -> Subscription | None:
    result = await db.execute(select(Subscription).where(Subscription.id == subscription_id))
    return result.scalar_one_or_none()


async def get_user(db: AsyncSession, user_id: uuid.UUID) -> User | None:
    result = await db.execute(select(User).where(User.id == user_id))
    return result.scalar_one_or_none()


async def find_due_subscriptions(db: AsyncSession, now: datetime) -> list[Subscription]:
    """Active auto-renewing subscriptions whose billing cursor has passed."""
    result = await db.execute(
        select(Subscription)
        .where(
            Subscription.status == "active",
            Subscription.auto_renew.is_(True),
            Subscription.next_billing_date <= now,
        )
        .order_by(Subscription.next_billing_date)
    )
    return list(result.scalars().all())


async def find_retryable_subscriptions(
    db: AsyncSession, cutoff: datetime, max_retries: int
) -> list[Subscription]:
    """Suspended subscriptions with retries left whose last attempt is older than ``cutoff``."""
    result = await db.execute(
        select(Subscription)
        .where(
            Subscription.status == "suspended",
            Subscription.retry_count < max_retries,
            Subscription.last_payment_attempt <= cutoff,
        )
        .order_by(Subscription.last_payment_attempt)
    )
    return list(result.scalars().all())


async def find_expired_grace_periods(db: AsyncSession, now: datetime) -> list[Subscription]:
    """Cancelled subscriptions whose grace period has run out."""
    result = await db.execute(
        select(Subscription).where(
            Subscription.status == "cancelled",
            Subscription.grace_period_end_date <= now,
        )
    )
    return list(result.scalars().all())


async def find_users_with_trial_ending(
    db: AsyncSession, day_start: datetime, day_end: datetime
) -> list[User]:
    """Active users whose free trial ends in ``[day_start, day_end)``."""
    result = await db.execute(
        select(User).where(
            User.free_trial_used.is_(True),
            User.free_trial_end_date >= day_start,
            User.free_trial_end_date < day_end,
            User.subscription_status == "active",
        )
    )
    return list(result.scalars().all())


async def get_trial_subscription(
    db: AsyncSession, user_id: uuid.UUID, plan_id: str
) -> Subscription | None:
    result = await db.execute(
        select(Subscription)
        .where(Subscription.customer_id == user_id, Subscription.plan_id == plan_id)
        .order_by(Subscription.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def list_active_subscriptions(db: AsyncSession) -> list[Subscription]:
    """Active auto-renewing subscriptions ordered by next billing date."""
    result = await db.execute(
        select(Subscription)
        .where(Subscription.status == "active", Subscription.auto_renew.is_(True))
        .order_by(Subscription.next_billing_date)
    )
    return list(result.scalars().all())


async def count_active_subscriptions(db: AsyncSession) -> int:
    result = await db.execute(
        select(func.count())
        .select_from(Subscription)
        .where(Subscription.status == "active", Subscription.auto_renew.is_(True))
    )
    return result.scalar_one()


async def list_upcoming_subscriptions(
    db: AsyncSession, now: datetime, window: timedelta = timedelta(days=1)
) -> list[Subscription]:
    """Active auto-renewing subscriptions billing within ``window`` from ``now``."""
    result = await db.execute(
        select(Subscription)
        .where(
            Subscription.status == "active",
            Subscription.auto_renew.is_(True),
            Subscription.next_billing_date >= now,
            Subscription.next_billing_date <= now + window,
        )
        .order_by(Subscription.next_billing_date)
    )
    return list(result.scalars().all())


@dataclass
class SubscriptionDiagnosis:
    """Date and retry diagnostics for a single subscription."""

    subscription_id: uuid.UUID
    status: str
    start_date: datetime | None
    next_billing_date: datetime | None
    days_since_start: int | None
    days_until_billing: int | None
    is_overdue: bool
    expected_next_billing_date: datetime | None
    has_billing_key: bool
    retry_count: int
    recent_history: list[SubscriptionHistory]


def _ceil_days(delta: timedelta) -> int:
    return -int(-delta.total_seconds() // 86400)


async def diagnose_subscription(
    db: AsyncSession, subscription: Subscription, now: datetime
) -> SubscriptionDiagnosis:
    """Explain where a subscription stands relative to its billing cursor."""
    next_billing = subscription.next_billing_date
    start = subscription.start_date

    is_overdue = next_billing is not None and next_billing <= now
    if is_overdue:
        logger.warning(
            "Subscription %s is overdue (next billing %s, now %s)",
            subscription.id,
            next_billing,
            now,
        )

    return SubscriptionDiagnosis(
        subscription_id=subscription.id,
        status=subscription.status,
        start_date=start,
        next_billing_date=next_billing,
        days_since_start=_ceil_days(now - start) if start else None,
        days_until_billing=_ceil_days(next_billing - now) if next_billing else None,
        is_overdue=is_overdue,
        expected_next_billing_date=compute_next_billing_date(start) if start else None,
        has_billing_key=bool(subscription.billing_key),
        retry_count=subscription.retry_count or 0,
        recent_history=await list_subscription_history(db, subscription.id, limit=5),
    )


async def reset_user_billing(db: AsyncSession, user_id: uuid.UUID) -> User | None:
    """Return a user to the never-subscribed state (trial unused, not premium)."""
    user = await get_user(db, user_id)
    if user is None:
        return None

    user.free_trial_used = False
    user.free_trial_start_date = None
    user.free_trial_end_date = None
    user.is_premium = False
    user.subscription_status = "inactive"
    user.subscription_start_date = None
    user.subscription_end_date = None
    await db.flush()

    logger.info("Reset billing projection for user %s", user_id)
    return user
