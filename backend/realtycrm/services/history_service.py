"""Subscription history service: append-only audit log of billing events."""

import logging
import uuid
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from realtycrm.models.subscription_history import SubscriptionHistory

logger = logging.getLogger(__name__)


async def log_subscription_history(
    db: AsyncSession,
    *,
    user_id: uuid.UUID,
    subscription_id: uuid.UUID,
    action: str,
    description: str,
    status: str,
    amount: int | None = None,
    currency: str | None = None,
    payment_key: str | None = None,
    order_id: str | None = None,
    error_message: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> SubscriptionHistory | None:
    """Insert and commit one history entry.

    The log is advisory: a failed write is logged and rolled back, and
    ``None`` is returned instead of raising.
    """
    entry = SubscriptionHistory(
        user_id=user_id,
        subscription_id=subscription_id,
        action=action,
        description=description,
        status=status,
        amount=amount,
        currency=currency,
        payment_key=payment_key,
        order_id=order_id,
        error_message=error_message,
        extra_metadata=metadata or {},
    )
    try:
        db.add(entry)
        await db.commit()
    except SQLAlchemyError:
        logger.exception(
            "Failed to record %s history for subscription %s", action, subscription_id
        )
        await db.rollback()
        return None
    return entry


async def list_recent_history(db: AsyncSession, limit: int = 20) -> list[SubscriptionHistory]:
    """Most recent history entries across all subscriptions, newest first."""
    result = await db.execute(
        select(SubscriptionHistory).order_by(SubscriptionHistory.created_at.desc()).limit(limit)
    )
    return list(result.scalars().all())


async def list_subscription_history(
    db: AsyncSession, subscription_id: uuid.UUID, limit: int = 20
) -> list[SubscriptionHistory]:
    result = await db.execute(
        select(SubscriptionHistory)
        .where(SubscriptionHistory.subscription_id == subscription_id)
        .order_by(SubscriptionHistory.created_at.desc())
        .limit(limit)
    )
    return list(result.scalars().all())
