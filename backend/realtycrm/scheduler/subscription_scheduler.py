"""Subscription scheduler: time-driven billing, retry, grace-period and free-trial passes.

The scheduler is the only writer of a subscription's status, retry count,
billing cursor and payment history. It mirrors the outcome onto the owning
user's billing projection after every change.
"""

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone, tzinfo
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from realtycrm.billing.cycle import apply_failure, apply_success
from realtycrm.billing.exceptions import (
    BillingError,
    GatewayError,
    GatewayTimeoutError,
    PersistenceError,
)
from realtycrm.billing.toss_client import PaymentResult, build_order_id, charge_billing_key
from realtycrm.config import settings
from realtycrm.database import async_session_factory, utcnow
from realtycrm.models.subscription import Subscription
from realtycrm.scheduler.triggers import DailyTrigger, IntervalTrigger, TriggerRunner
from realtycrm.services.history_service import log_subscription_history
from realtycrm.services.subscription_service import (
    find_due_subscriptions,
    find_expired_grace_periods,
    find_retryable_subscriptions,
    find_users_with_trial_ending,
    get_subscription,
    get_trial_subscription,
    get_user,
)

logger = logging.getLogger(__name__)

ChargeFn = Callable[..., Awaitable[PaymentResult]]

OUTCOME_SUCCESS = "success"
OUTCOME_FAILED = "failed"
OUTCOME_SUSPENDED = "suspended"


@dataclass
class PassResult:
    """Summary of one scheduler pass.

    ``error`` holds the store failure that aborted the pass, if any.
    """

    name: str
    considered: int = 0
    succeeded: int = 0
    failed: int = 0
    suspended: int = 0
    expired: int = 0
    skipped: bool = False
    error: PersistenceError | None = None

    def record(self, outcome: str | None) -> None:
        if outcome == OUTCOME_SUCCESS:
            self.succeeded += 1
        elif outcome == OUTCOME_FAILED:
            self.failed += 1
        elif outcome == OUTCOME_SUSPENDED:
            self.failed += 1
            self.suspended += 1


def _history_metadata(subscription: Subscription, **extra: Any) -> dict[str, Any]:
    return {
        "plan_id": subscription.plan_id,
        "plan_name": subscription.plan_name,
        "billing_cycle": subscription.billing_cycle,
        "source": "scheduler",
        **extra,
    }


class SubscriptionScheduler:
    """Orchestrates billing passes over the subscription store.

    Monthly billing is single-flight: a monthly pass requested while a
    billing pass is in progress returns immediately with ``skipped=True``.
    The failed-payment retry takes the same lock but waits for it, so a
    long monthly pass delays that day's retry instead of dropping it.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] = async_session_factory,
        charge: ChargeFn = charge_billing_key,
        *,
        tz: tzinfo | None = None,
        max_retries: int | None = None,
        retry_cooldown: timedelta | None = None,
        charge_timeout: float | None = None,
        trial_plan_id: str | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._charge = charge
        self._tz = tz or settings.tz
        self._max_retries = max_retries or settings.max_payment_retries
        self._retry_cooldown = retry_cooldown or timedelta(hours=settings.retry_cooldown_hours)
        self._charge_timeout = charge_timeout or settings.payment_timeout_seconds
        self._trial_plan_id = trial_plan_id or settings.trial_plan_id
        self._billing_lock = asyncio.Lock()
        self._runner: TriggerRunner | None = None

    @property
    def is_running(self) -> bool:
        """True while a billing pass holds the single-flight lock."""
        return self._billing_lock.locked()

    # ------------------------------------------------------------------
    # Trigger wiring
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Register the daily triggers and start them on the running loop."""
        if self._runner is not None and self._runner.running:
            return

        runner = TriggerRunner()
        runner.add(DailyTrigger.at("monthly_billing", settings.billing_time, self._tz), self.run_monthly_billing_pass)
        runner.add(DailyTrigger.at("failed_payment_retry", settings.retry_time, self._tz), self.run_failed_retry_pass)
        runner.add(
            DailyTrigger.at("free_trial_expiry", settings.free_trial_expiry_time, self._tz),
            self.run_free_trial_expiry,
        )
        if settings.environment == "development" and settings.scheduler_dev_interval_minutes > 0:
            logger.warning(
                "Accelerated billing trigger enabled: every %d minute(s)",
                settings.scheduler_dev_interval_minutes,
            )
            runner.add(
                IntervalTrigger("monthly_billing_dev", timedelta(minutes=settings.scheduler_dev_interval_minutes)),
                self.run_monthly_billing_pass,
            )
        runner.start()
        self._runner = runner

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.stop()
            self._runner = None

    # ------------------------------------------------------------------
    # Passes
    # ------------------------------------------------------------------

    async def run_monthly_billing_pass(self, now: datetime | None = None) -> PassResult:
        """Charge every due subscription once, then expire lapsed grace periods."""
        result = PassResult(name="monthly_billing")
        if self._billing_lock.locked():
            logger.info("Billing pass already in progress; skipping monthly billing")
            result.skipped = True
            return result

        async with self._billing_lock:
            now = now or utcnow()
            logger.info("Monthly billing pass started at %s", now)
            try:
                async with self._session_factory() as db:
                    due_ids = [s.id for s in await find_due_subscriptions(db, now)]
                result.considered = len(due_ids)

                for subscription_id in due_ids:
                    outcome = await self._bill_subscription(
                        subscription_id, now, lambda s: self._is_due(s, now)
                    )
                    result.record(outcome)

                result.expired = await self._expire_grace_periods(now)
            except SQLAlchemyError as e:
                logger.exception("Monthly billing pass aborted by a persistence error")
                result.error = PersistenceError(str(e))

        logger.info(
            "Monthly billing pass finished: %d due, %d succeeded, %d failed (%d suspended), %d expired",
            result.considered,
            result.succeeded,
            result.failed,
            result.suspended,
            result.expired,
        )
        return result

    async def run_failed_retry_pass(self, now: datetime | None = None) -> PassResult:
        """Re-attempt suspended subscriptions that still have retries and have cooled down."""
        result = PassResult(name="failed_payment_retry")
        if self._billing_lock.locked():
            logger.info("Billing pass in progress; failed-payment retry waits for it to finish")

        async with self._billing_lock:
            now = now or utcnow()
            cutoff = now - self._retry_cooldown
            try:
                async with self._session_factory() as db:
                    retry_ids = [
                        s.id for s in await find_retryable_subscriptions(db, cutoff, self._max_retries)
                    ]
                result.considered = len(retry_ids)

                for subscription_id in retry_ids:
                    outcome = await self._bill_subscription(
                        subscription_id, now, lambda s: self._is_retryable(s, cutoff)
                    )
                    result.record(outcome)
            except SQLAlchemyError as e:
                logger.exception("Failed-payment retry pass aborted by a persistence error")
                result.error = PersistenceError(str(e))

        logger.info(
            "Failed-payment retry pass finished: %d eligible, %d succeeded, %d failed",
            result.considered,
            result.succeeded,
            result.failed,
        )
        return result

    async def run_grace_period_reconciliation(self, now: datetime | None = None) -> PassResult:
        """Expire cancelled subscriptions whose grace period has ended."""
        result = PassResult(name="grace_period_reconciliation")
        try:
            result.expired = await self._expire_grace_periods(now or utcnow())
        except SQLAlchemyError as e:
            logger.exception("Grace-period reconciliation aborted by a persistence error")
            result.error = PersistenceError(str(e))
        return result

    async def run_free_trial_expiry(self, now: datetime | None = None) -> PassResult:
        """Demote users whose free trial ends on the current local calendar day."""
        result = PassResult(name="free_trial_expiry")
        now = now or utcnow()
        day_start, day_end = self._local_day_bounds(now)
        try:
            async with self._session_factory() as db:
                user_ids = [u.id for u in await find_users_with_trial_ending(db, day_start, day_end)]
            result.considered = len(user_ids)

            for user_id in user_ids:
                if await self._end_free_trial(user_id, now, day_start, day_end):
                    result.expired += 1
        except SQLAlchemyError as e:
            logger.exception("Free-trial expiry pass aborted by a persistence error")
            result.error = PersistenceError(str(e))

        logger.info("Free-trial expiry finished: %d of %d trials ended", result.expired, result.considered)
        return result

    # ------------------------------------------------------------------
    # Per-item steps; each runs in its own session
    # ------------------------------------------------------------------

    def _is_due(self, subscription: Subscription, now: datetime) -> bool:
        return (
            subscription.status == "active"
            and subscription.auto_renew
            and subscription.next_billing_date is not None
            and subscription.next_billing_date <= now
        )

    def _is_retryable(self, subscription: Subscription, cutoff: datetime) -> bool:
        return (
            subscription.status == "suspended"
            and subscription.retry_count < self._max_retries
            and subscription.last_payment_attempt is not None
            and subscription.last_payment_attempt <= cutoff
        )

    async def _bill_subscription(
        self,
        subscription_id: uuid.UUID,
        now: datetime,
        eligible: Callable[[Subscription], bool],
    ) -> str | None:
        async with self._session_factory() as db:
            subscription = await get_subscription(db, subscription_id)
            if subscription is None or not eligible(subscription):
                # Picked up by someone else since the batch was selected
                return None

            try:
                payment = await self._attempt_charge(subscription, now)
            except BillingError as e:
                logger.warning("Charge failed for subscription %s: %s", subscription_id, e)
                return await self._handle_payment_failure(db, subscription, e, now)

            return await self._handle_payment_success(db, subscription, payment, now)

    async def _attempt_charge(self, subscription: Subscription, now: datetime) -> PaymentResult:
        order_id = build_order_id(subscription.customer_id, subscription.plan_id, now)
        try:
            return await asyncio.wait_for(
                self._charge(
                    subscription.billing_key,
                    customer_key=str(subscription.customer_id),
                    amount=subscription.price,
                    order_id=order_id,
                    order_name=f"{subscription.plan_name} monthly subscription",
                    customer_email=subscription.customer_email,
                    customer_name=subscription.customer_name,
                ),
                timeout=self._charge_timeout,
            )
        except asyncio.TimeoutError as e:
            raise GatewayTimeoutError(f"Payment request timed out for order {order_id}") from e
        except BillingError:
            raise
        except Exception as e:
            # Anything else the gateway raises still counts against this subscription only
            raise GatewayError(f"Unexpected payment error: {e}") from e

    async def _handle_payment_success(
        self,
        db: AsyncSession,
        subscription: Subscription,
        payment: PaymentResult,
        now: datetime,
    ) -> str:
        apply_success(subscription, payment, now, self._tz)

        user = await get_user(db, subscription.customer_id)
        if user is not None:
            user.is_premium = True
            user.subscription_status = "active"
            user.last_payment_date = now
            user.next_payment_date = subscription.next_billing_date
        else:
            logger.warning("Subscription %s has no user %s to update", subscription.id, subscription.customer_id)
        await db.commit()

        logger.info(
            "Subscription %s charged %s; next billing %s",
            subscription.id,
            payment.total_amount,
            subscription.next_billing_date,
        )
        await log_subscription_history(
            db,
            user_id=subscription.customer_id,
            subscription_id=subscription.id,
            action="payment_success",
            description=f"Automatic payment succeeded ({subscription.plan_name})",
            amount=payment.total_amount,
            currency=settings.billing_currency,
            payment_key=payment.payment_key or None,
            order_id=payment.order_id or None,
            status="success",
            metadata=_history_metadata(subscription),
        )
        return OUTCOME_SUCCESS

    async def _handle_payment_failure(
        self,
        db: AsyncSession,
        subscription: Subscription,
        error: BillingError,
        now: datetime,
    ) -> str:
        outcome = apply_failure(subscription, error, now, self._max_retries)

        if outcome.suspended:
            user = await get_user(db, subscription.customer_id)
            if user is not None:
                user.subscription_status = "suspended"
                user.is_premium = False
        await db.commit()

        # Captured up front; a failed history write rolls back and expires the instance
        user_id = subscription.customer_id
        subscription_id = subscription.id
        price = subscription.price
        metadata = _history_metadata(subscription, retry_count=outcome.retry_count)
        if isinstance(error, GatewayError) and error.code:
            metadata["error_code"] = error.code

        await log_subscription_history(
            db,
            user_id=user_id,
            subscription_id=subscription_id,
            action="payment_failed",
            description=f"Automatic payment failed (retry {outcome.retry_count}/{self._max_retries})",
            amount=price,
            currency=settings.billing_currency,
            status="failed",
            error_message=str(error),
            metadata=metadata,
        )

        if not outcome.suspended:
            return OUTCOME_FAILED

        logger.warning("Subscription %s suspended after %d failed attempts", subscription_id, outcome.retry_count)
        await log_subscription_history(
            db,
            user_id=user_id,
            subscription_id=subscription_id,
            action="subscription_suspended",
            description="Subscription suspended after reaching the maximum number of payment retries",
            status="failed",
            metadata=metadata,
        )
        return OUTCOME_SUSPENDED

    async def _expire_grace_periods(self, now: datetime) -> int:
        async with self._session_factory() as db:
            expired_ids = [s.id for s in await find_expired_grace_periods(db, now)]

        expired = 0
        for subscription_id in expired_ids:
            async with self._session_factory() as db:
                subscription = await get_subscription(db, subscription_id)
                if subscription is None or subscription.status != "cancelled":
                    continue

                grace_end = subscription.grace_period_end_date
                user = await get_user(db, subscription.customer_id)
                if user is not None:
                    user.is_premium = False
                    user.subscription_status = "expired"
                    user.subscription_end_date = grace_end
                subscription.status = "expired"
                await db.commit()
                expired += 1

                logger.info("Subscription %s expired at end of grace period %s", subscription_id, grace_end)
                await log_subscription_history(
                    db,
                    user_id=subscription.customer_id,
                    subscription_id=subscription_id,
                    action="subscription_expired",
                    description="Grace period ended; premium access revoked",
                    status="success",
                    metadata=_history_metadata(
                        subscription, grace_period_end_date=grace_end.isoformat() if grace_end else None
                    ),
                )
        return expired

    async def _end_free_trial(
        self, user_id: uuid.UUID, now: datetime, day_start: datetime, day_end: datetime
    ) -> bool:
        async with self._session_factory() as db:
            user = await get_user(db, user_id)
            if (
                user is None
                or user.subscription_status != "active"
                or user.free_trial_end_date is None
                or not (day_start <= user.free_trial_end_date < day_end)
            ):
                return False

            user.subscription_status = "inactive"
            user.is_premium = False

            trial = await get_trial_subscription(db, user_id, self._trial_plan_id)
            if trial is not None:
                trial.status = "cancelled"
                trial.end_date = now
            await db.commit()

            logger.info("Free trial ended for user %s", user_id)
            if trial is not None:
                await log_subscription_history(
                    db,
                    user_id=user_id,
                    subscription_id=trial.id,
                    action="free_trial_ended",
                    description="Free trial ended; account returned to the free tier",
                    status="success",
                    metadata=_history_metadata(trial),
                )
        return True

    def _local_day_bounds(self, now: datetime) -> tuple[datetime, datetime]:
        """Naive-UTC bounds of the local calendar day containing ``now``."""
        local_date = now.replace(tzinfo=timezone.utc).astimezone(self._tz).date()
        start = datetime.combine(local_date, time.min, tzinfo=self._tz)
        end = datetime.combine(local_date + timedelta(days=1), time.min, tzinfo=self._tz)
        return (
            start.astimezone(timezone.utc).replace(tzinfo=None),
            end.astimezone(timezone.utc).replace(tzinfo=None),
        )


subscription_scheduler = SubscriptionScheduler()
