"""Manual subscription trigger endpoints for operational testing.

Admin-only. Each endpoint either runs a scheduler pass synchronously or
inspects the subscription store and history log.
"""

import logging
import uuid
from datetime import timedelta

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from realtycrm.api.deps import get_current_admin_user, get_db, get_scheduler
from realtycrm.database import utcnow
from realtycrm.scheduler.subscription_scheduler import PassResult, SubscriptionScheduler
from realtycrm.schemas.subscription_ops import (
    ErrorResponse,
    HistoryEntryResponse,
    HistoryListResponse,
    PassRunResponse,
    SubscriptionDiagnosisResponse,
    SubscriptionListResponse,
    SubscriptionSummary,
    UpcomingListResponse,
    UpcomingSubscription,
)
from realtycrm.services.history_service import list_recent_history
from realtycrm.services.subscription_service import (
    count_active_subscriptions,
    diagnose_subscription,
    get_subscription,
    list_active_subscriptions,
    list_upcoming_subscriptions,
)

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/v1/test-subscription",
    tags=["subscription-ops"],
    dependencies=[Depends(get_current_admin_user)],
)


def _error(message: str, error: Exception | str, status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(message=message, error=str(error)).model_dump(),
    )


def _pass_response(message: str, active: int, result: PassResult) -> PassRunResponse:
    return PassRunResponse(
        message=message,
        active_subscriptions=active,
        considered=result.considered,
        succeeded=result.succeeded,
        failed=result.failed,
        suspended=result.suspended,
        expired=result.expired,
        skipped=result.skipped,
    )


@router.post("/test-payment", response_model=PassRunResponse)
async def run_test_payment(
    db: AsyncSession = Depends(get_db),
    scheduler: SubscriptionScheduler = Depends(get_scheduler),
):
    """Run one monthly billing pass now and report how many active subscriptions it saw."""
    try:
        active = await count_active_subscriptions(db)
        logger.info("Manual billing pass requested (%d active subscriptions)", active)
        result = await scheduler.run_monthly_billing_pass()
    except Exception as e:
        logger.exception("Manual billing pass failed")
        return _error("Failed to run the test billing pass", e)

    if result.error is not None:
        return _error("Failed to run the test billing pass", result.error)

    message = "A billing pass is already running" if result.skipped else "Test billing pass executed"
    return _pass_response(message, active, result)


@router.post("/test-retry", response_model=PassRunResponse)
async def run_test_retry(
    db: AsyncSession = Depends(get_db),
    scheduler: SubscriptionScheduler = Depends(get_scheduler),
):
    """Run the failed-payment retry pass now, after any billing pass in progress."""
    try:
        active = await count_active_subscriptions(db)
        result = await scheduler.run_failed_retry_pass()
    except Exception as e:
        logger.exception("Manual retry pass failed")
        return _error("Failed to run the retry pass", e)

    if result.error is not None:
        return _error("Failed to run the retry pass", result.error)

    return _pass_response("Retry pass executed", active, result)


@router.get("/subscriptions", response_model=SubscriptionListResponse)
async def get_active_subscriptions(db: AsyncSession = Depends(get_db)):
    """List active auto-renewing subscriptions, soonest billing first."""
    try:
        subscriptions = await list_active_subscriptions(db)
    except SQLAlchemyError as e:
        logger.exception("Failed to list subscriptions")
        return _error("Failed to load subscriptions", e)

    return SubscriptionListResponse(
        data=[SubscriptionSummary.model_validate(s) for s in subscriptions]
    )


@router.get("/history", response_model=HistoryListResponse)
async def get_history(
    limit: int = Query(20, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
):
    """Most recent billing history entries, newest first."""
    try:
        entries = await list_recent_history(db, limit=limit)
    except SQLAlchemyError as e:
        logger.exception("Failed to load subscription history")
        return _error("Failed to load history", e)

    return HistoryListResponse(data=[HistoryEntryResponse.model_validate(entry) for entry in entries])


@router.get("/upcoming", response_model=UpcomingListResponse)
async def get_upcoming(db: AsyncSession = Depends(get_db)):
    """Subscriptions that will be billed within the next 24 hours."""
    now = utcnow()
    try:
        subscriptions = await list_upcoming_subscriptions(db, now, timedelta(days=1))
    except SQLAlchemyError as e:
        logger.exception("Failed to load upcoming subscriptions")
        return _error("Failed to load upcoming billing", e)

    data = [
        UpcomingSubscription(
            id=s.id,
            customer_id=s.customer_id,
            plan_name=s.plan_name,
            price=s.price,
            next_billing_date=s.next_billing_date,
            hours_until_billing=round((s.next_billing_date - now).total_seconds() / 3600),
        )
        for s in subscriptions
    ]
    return UpcomingListResponse(data=data, count=len(data))


@router.get("/subscriptions/{subscription_id}/diagnosis", response_model=SubscriptionDiagnosisResponse)
async def get_subscription_diagnosis(
    subscription_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
):
    """Explain a subscription's billing dates, retry state and recent history."""
    try:
        subscription = await get_subscription(db, subscription_id)
        if subscription is None:
            return _error("Subscription not found", subscription_id, status.HTTP_404_NOT_FOUND)
        diagnosis = await diagnose_subscription(db, subscription, utcnow())
    except SQLAlchemyError as e:
        logger.exception("Failed to diagnose subscription %s", subscription_id)
        return _error("Failed to diagnose subscription", e)

    return SubscriptionDiagnosisResponse.model_validate(diagnosis)
