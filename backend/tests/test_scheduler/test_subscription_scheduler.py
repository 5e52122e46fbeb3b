"""Tests for the subscription scheduler passes against an in-memory database.

The gateway is always mocked. ``NOW`` is 2026-01-31 06:00 UTC, which is
15:00 in Asia/Seoul, the configured billing time.
"""

import asyncio
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.exc import SQLAlchemyError

from realtycrm.billing.exceptions import GatewayError, PersistenceError
from realtycrm.billing.toss_client import charge_billing_key
from realtycrm.scheduler.subscription_scheduler import PassResult
from realtycrm.services.history_service import list_subscription_history
from conftest import payment_result

NOW = datetime(2026, 1, 31, 6, 0)


async def _actions(db_session, subscription) -> set[str]:
    return {entry.action for entry in await list_subscription_history(db_session, subscription.id)}


class TestPassResult:
    def test_record_counts_outcomes(self):
        result = PassResult(name="monthly_billing")
        for outcome in ("success", "failed", "suspended", None):
            result.record(outcome)
        assert (result.succeeded, result.failed, result.suspended) == (1, 2, 1)


# ---------------------------------------------------------------------------
# Monthly billing
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
class TestMonthlyBillingPass:
    """Charging due subscriptions and mirroring the outcome onto the user."""

    async def test_successful_charge_advances_cursor(self, make_scheduler, create_user, create_subscription, db_session):
        charge = AsyncMock(return_value=payment_result(9900, payment_key="pay_ok"))
        scheduler = make_scheduler(charge=charge)
        user = await create_user(is_premium=False, subscription_status="inactive")
        subscription = await create_subscription(user=user)

        result = await scheduler.run_monthly_billing_pass(now=NOW)

        assert (result.considered, result.succeeded, result.failed) == (1, 1, 0)
        assert result.error is None
        await db_session.refresh(subscription)
        assert subscription.next_billing_date == datetime(2026, 2, 28, 6, 0)
        assert subscription.last_payment_date == NOW
        assert subscription.retry_count == 0
        assert subscription.status == "active"
        assert subscription.payment_history[-1]["status"] == "success"
        assert subscription.payment_history[-1]["payment_key"] == "pay_ok"

        await db_session.refresh(user)
        assert user.is_premium is True
        assert user.subscription_status == "active"
        assert user.last_payment_date == NOW
        assert user.next_payment_date == datetime(2026, 2, 28, 6, 0)

    async def test_charge_request_fields(self, make_scheduler, create_subscription):
        charge = AsyncMock(return_value=payment_result())
        scheduler = make_scheduler(charge=charge)
        subscription = await create_subscription()

        await scheduler.run_monthly_billing_pass(now=NOW)

        charge.assert_awaited_once()
        assert charge.await_args.args == (subscription.billing_key,)
        kwargs = charge.await_args.kwargs
        assert kwargs["customer_key"] == str(subscription.customer_id)
        assert kwargs["amount"] == 9900
        assert kwargs["order_name"] == "Premium monthly subscription"
        assert kwargs["order_id"] == f"{subscription.customer_id.hex}_premium_monthly_1769839200000"
        assert 6 <= len(kwargs["order_id"]) <= 64
        assert kwargs["customer_email"] == subscription.customer_email

    async def test_success_writes_history(self, scheduler, create_subscription, db_session):
        subscription = await create_subscription()

        await scheduler.run_monthly_billing_pass(now=NOW)

        entries = await list_subscription_history(db_session, subscription.id)
        assert len(entries) == 1
        entry = entries[0]
        assert entry.action == "payment_success"
        assert entry.status == "success"
        assert entry.amount == 9900
        assert entry.currency == "KRW"
        assert entry.payment_key.startswith("pay_")
        assert entry.extra_metadata["plan_id"] == "premium_monthly"
        assert entry.extra_metadata["source"] == "scheduler"

    async def test_failed_charge_increments_retry(self, make_scheduler, create_subscription, db_session):
        charge = AsyncMock(side_effect=GatewayError("Payment failed: 400", status_code=400, code="REJECT_CARD_COMPANY"))
        scheduler = make_scheduler(charge=charge)
        subscription = await create_subscription()

        result = await scheduler.run_monthly_billing_pass(now=NOW)

        assert (result.succeeded, result.failed, result.suspended) == (0, 1, 0)
        await db_session.refresh(subscription)
        assert subscription.retry_count == 1
        assert subscription.status == "active"
        assert subscription.next_billing_date == datetime(2026, 1, 31, 6, 0)
        assert subscription.last_payment_attempt == NOW
        assert subscription.payment_history[-1]["error"] == "Payment failed: 400"

        entries = await list_subscription_history(db_session, subscription.id)
        assert [e.action for e in entries] == ["payment_failed"]
        assert entries[0].status == "failed"
        assert entries[0].error_message == "Payment failed: 400"
        assert entries[0].extra_metadata["error_code"] == "REJECT_CARD_COMPANY"
        assert entries[0].extra_metadata["retry_count"] == 1

    async def test_third_failure_suspends_and_demotes_user(
        self, make_scheduler, create_user, create_subscription, db_session
    ):
        scheduler = make_scheduler(charge=AsyncMock(side_effect=GatewayError("declined")))
        user = await create_user()
        subscription = await create_subscription(user=user, retry_count=2)

        result = await scheduler.run_monthly_billing_pass(now=NOW)

        assert (result.failed, result.suspended) == (1, 1)
        await db_session.refresh(subscription)
        assert subscription.status == "suspended"
        assert subscription.retry_count == 3
        assert subscription.suspended_at == NOW

        await db_session.refresh(user)
        assert user.subscription_status == "suspended"
        assert user.is_premium is False

        assert await _actions(db_session, subscription) == {"payment_failed", "subscription_suspended"}

    async def test_missing_billing_key_counts_as_failure(self, make_scheduler, create_subscription, db_session):
        scheduler = make_scheduler(charge=charge_billing_key)
        subscription = await create_subscription(billing_key=None)

        with patch("realtycrm.billing.toss_client.get_http_client") as mock_client:
            result = await scheduler.run_monthly_billing_pass(now=NOW)

        mock_client.assert_not_called()
        assert result.failed == 1
        await db_session.refresh(subscription)
        assert subscription.retry_count == 1
        entries = await list_subscription_history(db_session, subscription.id)
        assert entries[0].error_message == "Subscription has no billing key"

    async def test_one_failure_does_not_stop_the_batch(self, make_scheduler, create_subscription, db_session):
        subs = [
            await create_subscription(billing_key="bk_a", next_billing_date=NOW - timedelta(hours=3)),
            await create_subscription(billing_key="bk_b", next_billing_date=NOW - timedelta(hours=2)),
            await create_subscription(billing_key="bk_c", next_billing_date=NOW - timedelta(hours=1)),
        ]

        async def charge(billing_key, **kwargs):
            if billing_key == "bk_b":
                raise GatewayError("Payment failed: 400")
            return payment_result(kwargs["amount"])

        scheduler = make_scheduler(charge=charge)
        result = await scheduler.run_monthly_billing_pass(now=NOW)

        assert (result.considered, result.succeeded, result.failed) == (3, 2, 1)
        for sub in subs:
            await db_session.refresh(sub)
        a, b, c = subs
        assert a.retry_count == 0 and a.next_billing_date > NOW
        assert b.retry_count == 1 and b.next_billing_date == NOW - timedelta(hours=2)
        assert c.retry_count == 0 and c.next_billing_date > NOW

    async def test_unexpected_exception_is_isolated(self, make_scheduler, create_subscription, db_session):
        broken = await create_subscription(billing_key="bk_broken")
        healthy = await create_subscription(billing_key="bk_healthy")

        async def charge(billing_key, **kwargs):
            if billing_key == "bk_broken":
                raise RuntimeError("socket exploded")
            return payment_result(kwargs["amount"])

        result = await make_scheduler(charge=charge).run_monthly_billing_pass(now=NOW)

        assert (result.succeeded, result.failed) == (1, 1)
        entries = await list_subscription_history(db_session, broken.id)
        assert entries[0].error_message == "Unexpected payment error: socket exploded"
        await db_session.refresh(healthy)
        assert healthy.last_payment_date == NOW

    async def test_charge_timeout_counts_as_failure(self, make_scheduler, create_subscription, db_session):
        async def slow_charge(billing_key, **kwargs):
            await asyncio.sleep(5)
            return payment_result()

        scheduler = make_scheduler(charge=slow_charge, charge_timeout=0.05)
        subscription = await create_subscription()

        result = await scheduler.run_monthly_billing_pass(now=NOW)

        assert result.failed == 1
        await db_session.refresh(subscription)
        assert subscription.retry_count == 1
        entries = await list_subscription_history(db_session, subscription.id)
        assert "timed out" in entries[0].error_message

    @pytest.mark.parametrize(
        "overrides",
        [
            {"status": "suspended"},
            {"status": "cancelled"},
            {"auto_renew": False},
            {"next_billing_date": NOW + timedelta(minutes=1)},
        ],
    )
    async def test_ineligible_subscriptions_are_not_charged(
        self, make_scheduler, create_subscription, overrides
    ):
        charge = AsyncMock(return_value=payment_result())
        scheduler = make_scheduler(charge=charge)
        await create_subscription(**overrides)

        result = await scheduler.run_monthly_billing_pass(now=NOW)

        assert result.considered == 0
        charge.assert_not_awaited()

    async def test_cursor_either_advances_or_retry_increments(self, make_scheduler, create_subscription, db_session):
        """Every charged subscription ends in exactly one of the two outcomes."""
        failing = {"bk_1", "bk_3", "bk_4"}
        subs = [await create_subscription(billing_key=f"bk_{i}", retry_count=i % 2) for i in range(6)]
        before = {s.id: (s.next_billing_date, s.retry_count) for s in subs}

        async def charge(billing_key, **kwargs):
            if billing_key in failing:
                raise GatewayError("declined")
            return payment_result()

        await make_scheduler(charge=charge).run_monthly_billing_pass(now=NOW)

        for sub in subs:
            await db_session.refresh(sub)
            prev_cursor, prev_retry = before[sub.id]
            advanced = sub.next_billing_date > prev_cursor and sub.retry_count == 0
            retried = sub.next_billing_date == prev_cursor and sub.retry_count == prev_retry + 1
            assert advanced != retried
            assert retried == (sub.billing_key in failing)

    async def test_charged_subscription_is_not_charged_again_same_day(self, scheduler, create_subscription):
        await create_subscription()

        first = await scheduler.run_monthly_billing_pass(now=NOW)
        second = await scheduler.run_monthly_billing_pass(now=NOW + timedelta(minutes=10))

        assert first.succeeded == 1
        assert second.considered == 0


@pytest.mark.asyncio
class TestSingleFlight:
    """Only one billing pass runs at a time."""

    async def test_overlapping_pass_is_skipped(self, make_scheduler, create_subscription):
        started = asyncio.Event()
        release = asyncio.Event()

        async def blocking_charge(billing_key, **kwargs):
            started.set()
            await release.wait()
            return payment_result()

        scheduler = make_scheduler(charge=blocking_charge, charge_timeout=10)
        await create_subscription()

        first = asyncio.create_task(scheduler.run_monthly_billing_pass(now=NOW))
        await asyncio.wait_for(started.wait(), timeout=5)
        assert scheduler.is_running

        second = await scheduler.run_monthly_billing_pass(now=NOW)

        release.set()
        first_result = await first

        assert second.skipped is True
        assert second.considered == 0
        assert first_result.skipped is False
        assert first_result.succeeded == 1
        assert not scheduler.is_running

    async def test_retry_pass_waits_for_running_monthly_pass(
        self, make_scheduler, create_subscription, db_session
    ):
        started = asyncio.Event()
        release = asyncio.Event()
        charged: list[str] = []

        async def blocking_charge(billing_key, **kwargs):
            charged.append(billing_key)
            if billing_key == "bk_due":
                started.set()
                await release.wait()
            return payment_result()

        scheduler = make_scheduler(charge=blocking_charge, charge_timeout=10)
        await create_subscription(billing_key="bk_due")
        suspended = await create_subscription(
            billing_key="bk_suspended",
            status="suspended",
            retry_count=1,
            last_payment_attempt=NOW - timedelta(days=1),
        )

        monthly = asyncio.create_task(scheduler.run_monthly_billing_pass(now=NOW))
        await asyncio.wait_for(started.wait(), timeout=5)
        retry = asyncio.create_task(scheduler.run_failed_retry_pass(now=NOW))
        await asyncio.sleep(0.05)

        assert not retry.done()
        assert charged == ["bk_due"]

        release.set()
        monthly_result = await monthly
        retry_result = await retry

        assert monthly_result.succeeded == 1
        assert retry_result.skipped is False
        assert (retry_result.considered, retry_result.succeeded) == (1, 1)
        assert charged == ["bk_due", "bk_suspended"]
        await db_session.refresh(suspended)
        assert suspended.status == "active"

    async def test_lock_released_after_persistence_error(self, scheduler, create_subscription):
        await create_subscription()

        with patch(
            "realtycrm.scheduler.subscription_scheduler.find_due_subscriptions",
            AsyncMock(side_effect=SQLAlchemyError("database is unavailable")),
        ):
            failed = await scheduler.run_monthly_billing_pass(now=NOW)

        assert isinstance(failed.error, PersistenceError)
        assert "database is unavailable" in str(failed.error)
        assert not scheduler.is_running

        recovered = await scheduler.run_monthly_billing_pass(now=NOW)
        assert recovered.error is None
        assert recovered.succeeded == 1


# ---------------------------------------------------------------------------
# Failed-payment retry
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
class TestFailedRetryPass:
    async def test_cooled_down_subscription_is_reactivated(
        self, make_scheduler, create_user, create_subscription, db_session
    ):
        charge = AsyncMock(return_value=payment_result())
        scheduler = make_scheduler(charge=charge)
        user = await create_user(is_premium=False, subscription_status="suspended")
        subscription = await create_subscription(
            user=user,
            status="suspended",
            retry_count=1,
            last_payment_attempt=NOW - timedelta(hours=25),
        )

        result = await scheduler.run_failed_retry_pass(now=NOW)

        assert (result.considered, result.succeeded) == (1, 1)
        await db_session.refresh(subscription)
        assert subscription.status == "active"
        assert subscription.retry_count == 0
        assert subscription.next_billing_date == datetime(2026, 2, 28, 6, 0)
        await db_session.refresh(user)
        assert user.is_premium is True
        assert user.subscription_status == "active"

    async def test_recent_attempt_waits_for_cooldown(self, make_scheduler, create_subscription):
        charge = AsyncMock(return_value=payment_result())
        scheduler = make_scheduler(charge=charge)
        await create_subscription(status="suspended", retry_count=1, last_payment_attempt=NOW - timedelta(hours=2))

        result = await scheduler.run_failed_retry_pass(now=NOW)

        assert result.considered == 0
        charge.assert_not_awaited()

    async def test_exhausted_retries_are_not_retried(self, make_scheduler, create_subscription):
        charge = AsyncMock(return_value=payment_result())
        scheduler = make_scheduler(charge=charge)
        await create_subscription(status="suspended", retry_count=3, last_payment_attempt=NOW - timedelta(days=3))

        result = await scheduler.run_failed_retry_pass(now=NOW)

        assert result.considered == 0
        charge.assert_not_awaited()

    async def test_failed_retry_stays_suspended(self, make_scheduler, create_subscription, db_session):
        scheduler = make_scheduler(charge=AsyncMock(side_effect=GatewayError("declined")))
        subscription = await create_subscription(
            status="suspended", retry_count=1, last_payment_attempt=NOW - timedelta(days=1)
        )

        result = await scheduler.run_failed_retry_pass(now=NOW)

        assert result.failed == 1
        await db_session.refresh(subscription)
        assert subscription.status == "suspended"
        assert subscription.retry_count == 2
        assert subscription.last_payment_attempt == NOW


# ---------------------------------------------------------------------------
# Grace period and free trial
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
class TestGracePeriodExpiry:
    async def test_lapsed_grace_period_expires_once(
        self, scheduler, create_user, create_subscription, db_session
    ):
        user = await create_user()
        grace_end = NOW - timedelta(hours=1)
        subscription = await create_subscription(user=user, status="cancelled", grace_period_end_date=grace_end)

        first = await scheduler.run_grace_period_reconciliation(now=NOW)
        second = await scheduler.run_grace_period_reconciliation(now=NOW)

        assert first.expired == 1
        assert second.expired == 0
        await db_session.refresh(subscription)
        assert subscription.status == "expired"
        await db_session.refresh(user)
        assert user.is_premium is False
        assert user.subscription_status == "expired"
        assert user.subscription_end_date == grace_end

        entries = await list_subscription_history(db_session, subscription.id)
        assert [e.action for e in entries] == ["subscription_expired"]

    async def test_grace_period_still_running(self, scheduler, create_subscription, db_session):
        subscription = await create_subscription(status="cancelled", grace_period_end_date=NOW + timedelta(days=2))

        result = await scheduler.run_grace_period_reconciliation(now=NOW)

        assert result.expired == 0
        await db_session.refresh(subscription)
        assert subscription.status == "cancelled"

    async def test_monthly_pass_also_expires_grace_periods(self, scheduler, create_subscription):
        await create_subscription(status="cancelled", grace_period_end_date=NOW - timedelta(days=1))

        result = await scheduler.run_monthly_billing_pass(now=NOW)

        assert result.considered == 0
        assert result.expired == 1


@pytest.mark.asyncio
class TestFreeTrialExpiry:
    """Trials ending on the current Asia/Seoul calendar day are ended."""

    # 2026-01-31 00:00 KST
    MIDNIGHT = datetime(2026, 1, 30, 15, 0)

    async def _trial_user(self, create_user, create_subscription, end_date: datetime):
        user = await create_user(
            free_trial_used=True,
            free_trial_start_date=end_date - timedelta(days=14),
            free_trial_end_date=end_date,
        )
        trial = await create_subscription(
            user=user,
            plan_id="premium_trial",
            plan_name="Premium Trial",
            price=0,
            billing_key=None,
            next_billing_date=None,
        )
        return user, trial

    async def test_trial_ending_today_is_ended(self, scheduler, create_user, create_subscription, db_session):
        # 12:00 KST on the same local day
        user, trial = await self._trial_user(create_user, create_subscription, datetime(2026, 1, 31, 3, 0))

        result = await scheduler.run_free_trial_expiry(now=self.MIDNIGHT)

        assert (result.considered, result.expired) == (1, 1)
        await db_session.refresh(user)
        assert user.subscription_status == "inactive"
        assert user.is_premium is False
        await db_session.refresh(trial)
        assert trial.status == "cancelled"
        assert trial.end_date == self.MIDNIGHT
        assert await _actions(db_session, trial) == {"free_trial_ended"}

    async def test_trial_ending_tomorrow_is_untouched(self, scheduler, create_user, create_subscription, db_session):
        # 00:30 KST on the next local day
        user, trial = await self._trial_user(create_user, create_subscription, datetime(2026, 1, 31, 15, 30))

        result = await scheduler.run_free_trial_expiry(now=self.MIDNIGHT)

        assert result.considered == 0
        await db_session.refresh(user)
        assert user.subscription_status == "active"
        assert user.is_premium is True

    async def test_trial_user_without_trial_subscription(self, scheduler, create_user, db_session):
        user = await create_user(free_trial_used=True, free_trial_end_date=datetime(2026, 1, 31, 3, 0))

        result = await scheduler.run_free_trial_expiry(now=self.MIDNIGHT)

        assert result.expired == 1
        await db_session.refresh(user)
        assert user.subscription_status == "inactive"
