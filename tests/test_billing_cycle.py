from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import select

from contentpilot.billing.cycle import (
    RENEWAL_BACKOFF,
    RENEWAL_EXPIRED,
    RENEWAL_IN_PROGRESS,
    RENEWAL_NOT_DUE,
    RENEWAL_RENEWED,
    RENEWAL_RETRY_SCHEDULED,
    RENEWAL_SKIPPED_LOCKED,
    RENEWAL_SUPERSEDED,
    BillingCycleManager,
)
from contentpilot.billing.gateway import PaymentDeclinedError, PaymentGatewayError
from contentpilot.core.errors import (
    BillingOperationInProgress,
    NoActiveSubscription,
    PaymentRejected,
    PlanUnavailable,
)
from contentpilot.core.timeutil import ensure_utc
from contentpilot.domain.enums import BillingCycle, PricingHistoryStatus, QuotaDimension, Status, SubscriptionState
from contentpilot.notifications.sink import RENEWAL_FAILED, SUBSCRIPTION_EXPIRED, RecordingNotificationSink
from contentpilot.orchestrator.locks import BILLING_SCOPE, ResourceLockManager
from contentpilot.quota.ledger import QuotaLedger
from contentpilot.storage.models import BillingRenewalAttempt, PricingPlan, PricingPlanHistory, User
from tests.conftest import T0, FakePaymentGateway, FakeRedis, build_session_factory, create_plan, create_user


class _HookedGateway(FakePaymentGateway):
    """Runs ``on_charge`` while the charge is out, before its outcome is returned."""

    def __init__(self) -> None:
        super().__init__()
        self.on_charge = None

    def charge(self, **kwargs):
        if self.on_charge is not None:
            self.on_charge()
        return super().charge(**kwargs)


class _BillingContext:
    def __init__(self, *, max_renewal_attempts: int = 3, with_locks: bool = True) -> None:
        self.factory = build_session_factory()
        self.gateway = _HookedGateway()
        self.sink = RecordingNotificationSink()
        self.redis = FakeRedis()
        self.locks = ResourceLockManager(self.redis, ttl_seconds=60)
        self.manager = BillingCycleManager(
            session_factory=self.factory,
            payment_gateway=self.gateway,
            lock_manager=self.locks if with_locks else None,
            notification_sink=self.sink,
            monthly_cycle_days=30,
            yearly_cycle_days=365,
            usage_reset_interval_days=30,
            max_renewal_attempts=max_renewal_attempts,
            retry_base_seconds=900,
            renewal_lease_seconds=600,
            max_workers=1,
        )

    def user(self, user_id: str) -> User:
        with self.factory() as session:
            return session.get(User, user_id)

    def spend(self, user_id: str, amount: int) -> None:
        with self.factory() as session:
            QuotaLedger(session).reserve(user_id, QuotaDimension.CREDIT, amount)
            session.commit()

    def attempts(self, history_id: str) -> list[BillingRenewalAttempt]:
        with self.factory() as session:
            statement = (
                select(BillingRenewalAttempt)
                .where(BillingRenewalAttempt.history_id == history_id)
                .order_by(BillingRenewalAttempt.attempt_number.asc())
            )
            return list(session.scalars(statement).all())


def _seed(ctx: _BillingContext, **plan_kwargs):
    with ctx.factory() as session:
        plan = create_plan(session, **plan_kwargs)
        user = create_user(session)
    return plan, user


def test_subscribe_activates_plan_and_resets_quota() -> None:
    ctx = _BillingContext()
    plan, user = _seed(ctx, credit=10, capacity=100)

    history = ctx.manager.subscribe(user.id, plan.id, "card-123", payment_method="card", now=T0)

    assert history.status == PricingHistoryStatus.SUCCESS
    assert history.transaction_id == "txn-1"
    assert history.expire_at == T0 + timedelta(days=30)
    assert ctx.gateway.idempotency_keys == [f"subscribe:{user.id}:{plan.id}:card-123"]
    assert ctx.gateway.calls[0]["amount"] == plan.price

    refreshed = ctx.user(user.id)
    assert refreshed.pricing_plan_id == plan.id
    assert (refreshed.credit, refreshed.credit_used, refreshed.capacity) == (10, 0, 100)
    assert ctx.manager.subscription_state(user.id, now=T0 + timedelta(days=1)) == SubscriptionState.ACTIVE


def test_resubscribe_closes_previous_history() -> None:
    ctx = _BillingContext()
    plan, user = _seed(ctx)
    with ctx.factory() as session:
        ultra = create_plan(session, name="ultra", price=500000, credit=50)

    first = ctx.manager.subscribe(user.id, plan.id, now=T0)
    second = ctx.manager.subscribe(user.id, ultra.id, now=T0 + timedelta(days=3))

    histories = ctx.manager.history(user.id)
    assert [row.id for row in histories] == [second.id, first.id]
    closed = next(row for row in histories if row.id == first.id)
    assert closed.end_date is not None
    assert ctx.manager.current_subscription(user.id).id == second.id
    assert ctx.user(user.id).credit == 50


def test_free_plan_skips_payment_gateway() -> None:
    ctx = _BillingContext()
    plan, user = _seed(ctx, name="free", price=0, credit=200, capacity=20)

    history = ctx.manager.subscribe(user.id, plan.id, now=T0)

    assert ctx.gateway.calls == []
    assert history.transaction_id is None
    assert ctx.user(user.id).credit == 200


def test_subscribe_to_inactive_plan_is_refused() -> None:
    ctx = _BillingContext()
    plan, user = _seed(ctx, status=Status.INACTIVE)

    with pytest.raises(PlanUnavailable):
        ctx.manager.subscribe(user.id, plan.id, now=T0)

    assert ctx.gateway.calls == []
    assert ctx.manager.subscription_state(user.id, now=T0) == SubscriptionState.NO_PLAN


def test_declined_subscription_records_failed_history() -> None:
    ctx = _BillingContext()
    plan, user = _seed(ctx)
    ctx.gateway.queue(PaymentDeclinedError("card_declined"))

    with pytest.raises(PaymentRejected) as exc_info:
        ctx.manager.subscribe(user.id, plan.id, now=T0)

    with ctx.factory() as session:
        failed = session.get(PricingPlanHistory, exc_info.value.history_id)
        assert failed.status == PricingHistoryStatus.FAILED
        assert failed.error_message == "card_declined"
        assert failed.end_date is not None
    assert ctx.user(user.id).pricing_plan_id is None
    assert ctx.manager.subscription_state(user.id, now=T0) == SubscriptionState.NO_PLAN


def test_subscribe_refused_while_billing_lock_is_held() -> None:
    ctx = _BillingContext()
    plan, user = _seed(ctx)
    handle = ctx.locks.acquire(BILLING_SCOPE, user.id)

    with pytest.raises(BillingOperationInProgress):
        ctx.manager.subscribe(user.id, plan.id, now=T0)

    handle.release()
    ctx.manager.subscribe(user.id, plan.id, now=T0)


def test_renewal_on_due_date_starts_next_cycle() -> None:
    ctx = _BillingContext()
    plan, user = _seed(ctx, credit=10)
    first = ctx.manager.subscribe(user.id, plan.id, "card-123", now=T0)
    ctx.spend(user.id, 7)

    due_at = T0 + timedelta(days=30)
    assert ctx.manager.renew(user.id, now=due_at - timedelta(seconds=1)).status == RENEWAL_NOT_DUE
    assert ctx.manager.subscription_state(user.id, now=due_at) == SubscriptionState.RENEWING

    outcome = ctx.manager.renew(user.id, now=due_at)

    assert outcome.status == RENEWAL_RENEWED
    assert ctx.gateway.idempotency_keys[-1] == f"renew:{first.id}:1"
    current = ctx.manager.current_subscription(user.id)
    assert current.id == outcome.history_id
    assert ensure_utc(current.expire_at) == due_at + timedelta(days=30)
    assert ctx.user(user.id).credit_used == 0
    assert [attempt.status for attempt in ctx.attempts(first.id)] == ["succeeded"]
    assert ctx.manager.subscription_state(user.id, now=due_at) == SubscriptionState.ACTIVE


def test_declined_renewal_expires_and_keeps_balance() -> None:
    ctx = _BillingContext()
    plan, user = _seed(ctx, credit=10)
    subscription = ctx.manager.subscribe(user.id, plan.id, now=T0)
    ctx.spend(user.id, 3)
    ctx.gateway.queue(PaymentDeclinedError("insufficient_funds"))

    day_31 = T0 + timedelta(days=31)
    assert ctx.manager.refresh_usage_cycles(now=day_31).due == 0
    result = ctx.manager.run_renewal_sweep(now=day_31)

    assert result.due == 1
    assert result.expired == 1
    assert result.outcomes[0].status == RENEWAL_EXPIRED
    assert ctx.manager.subscription_state(user.id, now=day_31) == SubscriptionState.EXPIRED
    refreshed = ctx.user(user.id)
    assert refreshed.pricing_plan_id == plan.id
    assert (refreshed.credit, refreshed.credit_used) == (10, 3)
    assert ctx.sink.kinds() == [SUBSCRIPTION_EXPIRED]

    with ctx.factory() as session:
        expired = session.get(PricingPlanHistory, subscription.id)
        assert expired.status == PricingHistoryStatus.EXPIRED
        assert expired.end_date is not None

    assert ctx.manager.run_renewal_sweep(now=day_31 + timedelta(days=1)).due == 0


def test_transient_failures_back_off_then_expire() -> None:
    ctx = _BillingContext(max_renewal_attempts=3)
    plan, user = _seed(ctx)
    subscription = ctx.manager.subscribe(user.id, plan.id, now=T0)
    ctx.gateway.queue(
        PaymentGatewayError("gateway timeout"),
        PaymentGatewayError("gateway timeout"),
        PaymentGatewayError("gateway timeout"),
    )

    first_try = T0 + timedelta(days=30)
    outcome = ctx.manager.renew(user.id, now=first_try)
    assert outcome.status == RENEWAL_RETRY_SCHEDULED
    assert outcome.next_attempt_at == first_try + timedelta(seconds=900)

    waiting = ctx.manager.renew(user.id, now=first_try + timedelta(seconds=60))
    assert waiting.status == RENEWAL_BACKOFF
    assert len(ctx.gateway.calls) == 2

    second_try = first_try + timedelta(seconds=900)
    outcome = ctx.manager.renew(user.id, now=second_try)
    assert outcome.status == RENEWAL_RETRY_SCHEDULED
    assert outcome.next_attempt_at == second_try + timedelta(seconds=1800)

    third_try = second_try + timedelta(seconds=1800)
    outcome = ctx.manager.renew(user.id, now=third_try)
    assert outcome.status == RENEWAL_EXPIRED

    assert ctx.gateway.idempotency_keys[1:] == [
        f"renew:{subscription.id}:1",
        f"renew:{subscription.id}:2",
        f"renew:{subscription.id}:3",
    ]
    assert ctx.sink.kinds() == [RENEWAL_FAILED, RENEWAL_FAILED, SUBSCRIPTION_EXPIRED]
    assert ctx.manager.subscription_state(user.id, now=third_try) == SubscriptionState.EXPIRED


def test_interrupted_renewal_is_resent_with_same_idempotency_key() -> None:
    ctx = _BillingContext()
    plan, user = _seed(ctx)
    subscription = ctx.manager.subscribe(user.id, plan.id, now=T0)
    ctx.gateway.queue(RuntimeError("connection reset during charge"))

    due_at = T0 + timedelta(days=30)
    with pytest.raises(RuntimeError):
        ctx.manager.renew(user.id, now=due_at)

    in_flight = ctx.manager.renew(user.id, now=due_at + timedelta(seconds=60))
    assert in_flight.status == RENEWAL_IN_PROGRESS
    assert len(ctx.gateway.calls) == 2

    outcome = ctx.manager.renew(user.id, now=due_at + timedelta(seconds=601))

    assert outcome.status == RENEWAL_RENEWED
    assert ctx.gateway.idempotency_keys[1:] == [f"renew:{subscription.id}:1", f"renew:{subscription.id}:1"]
    attempts = ctx.attempts(subscription.id)
    assert len(attempts) == 1
    assert attempts[0].status == "succeeded"


def test_cancel_is_refused_while_renewal_charge_is_out() -> None:
    ctx = _BillingContext(with_locks=False)
    plan, user = _seed(ctx)
    ctx.manager.subscribe(user.id, plan.id, now=T0)
    due_at = T0 + timedelta(days=30)
    refused = []

    def cancel_during_charge() -> None:
        with pytest.raises(BillingOperationInProgress) as excinfo:
            ctx.manager.cancel(user.id, now=due_at + timedelta(seconds=30))
        refused.append(excinfo.value)

    ctx.gateway.on_charge = cancel_during_charge
    outcome = ctx.manager.renew(user.id, now=due_at)

    assert outcome.status == RENEWAL_RENEWED
    assert len(refused) == 1
    assert ctx.user(user.id).pricing_plan_id == plan.id
    assert ctx.manager.subscription_state(user.id, now=due_at) == SubscriptionState.ACTIVE


def test_renewal_does_not_revive_subscription_cancelled_mid_charge() -> None:
    ctx = _BillingContext(with_locks=False)
    plan, user = _seed(ctx)
    subscription = ctx.manager.subscribe(user.id, plan.id, now=T0)
    due_at = T0 + timedelta(days=30)
    after_lease = due_at + timedelta(seconds=601)

    def cancel_during_charge() -> None:
        ctx.gateway.on_charge = None
        ctx.manager.cancel(user.id, now=after_lease)

    ctx.gateway.on_charge = cancel_during_charge
    outcome = ctx.manager.renew(user.id, now=due_at)

    assert outcome.status == RENEWAL_SUPERSEDED
    assert ctx.manager.current_subscription(user.id) is None
    assert ctx.user(user.id).pricing_plan_id is None
    assert ctx.manager.subscription_state(user.id, now=after_lease) == SubscriptionState.CANCELLED
    assert [history.id for history in ctx.manager.history(user.id)] == [subscription.id]
    attempts = ctx.attempts(subscription.id)
    assert [attempt.status for attempt in attempts] == ["succeeded"]
    assert attempts[0].transaction_id == "txn-2"


def test_declined_renewal_leaves_cancelled_history_untouched() -> None:
    ctx = _BillingContext(with_locks=False)
    plan, user = _seed(ctx)
    subscription = ctx.manager.subscribe(user.id, plan.id, now=T0)
    due_at = T0 + timedelta(days=30)
    cancelled_at = due_at + timedelta(seconds=601)
    ctx.gateway.queue(PaymentDeclinedError("card_expired"))

    def cancel_during_charge() -> None:
        ctx.gateway.on_charge = None
        ctx.manager.cancel(user.id, now=cancelled_at)

    ctx.gateway.on_charge = cancel_during_charge
    outcome = ctx.manager.renew(user.id, now=due_at)

    assert outcome.status == RENEWAL_SUPERSEDED
    assert ctx.sink.kinds() == []
    with ctx.factory() as session:
        history = session.get(PricingPlanHistory, subscription.id)
        assert history.status == PricingHistoryStatus.SUCCESS
        assert ensure_utc(history.end_date) == cancelled_at
    assert ctx.manager.subscription_state(user.id, now=cancelled_at) == SubscriptionState.CANCELLED


def test_renewal_sweep_skips_locked_user() -> None:
    ctx = _BillingContext()
    plan, user = _seed(ctx)
    ctx.manager.subscribe(user.id, plan.id, now=T0)
    ctx.locks.acquire(BILLING_SCOPE, user.id)

    result = ctx.manager.run_renewal_sweep(now=T0 + timedelta(days=30))

    assert result.due == 1
    assert result.skipped == 1
    assert result.outcomes[0].status == RENEWAL_SKIPPED_LOCKED
    assert len(ctx.gateway.calls) == 1


def test_cancel_clears_plan_and_ends_history() -> None:
    ctx = _BillingContext()
    plan, user = _seed(ctx)
    ctx.manager.subscribe(user.id, plan.id, now=T0)

    cancelled = ctx.manager.cancel(user.id, now=T0 + timedelta(days=2))

    assert cancelled.end_date is not None
    assert ctx.user(user.id).pricing_plan_id is None
    assert ctx.manager.current_subscription(user.id) is None
    assert ctx.manager.subscription_state(user.id, now=T0 + timedelta(days=2)) == SubscriptionState.CANCELLED
    assert ctx.manager.run_renewal_sweep(now=T0 + timedelta(days=30)).due == 0

    with pytest.raises(NoActiveSubscription):
        ctx.manager.cancel(user.id)


def test_cancel_after_expiry_drops_retained_plan() -> None:
    ctx = _BillingContext()
    plan, user = _seed(ctx)
    ctx.manager.subscribe(user.id, plan.id, now=T0)
    ctx.gateway.queue(PaymentDeclinedError("card_expired"))
    ctx.manager.renew(user.id, now=T0 + timedelta(days=30))

    ctx.manager.cancel(user.id, now=T0 + timedelta(days=31))

    assert ctx.manager.subscription_state(user.id) == SubscriptionState.CANCELLED
    assert ctx.user(user.id).pricing_plan_id is None


def test_history_keeps_price_paid_after_plan_reprice() -> None:
    ctx = _BillingContext()
    plan, user = _seed(ctx, price=200000)
    subscription = ctx.manager.subscribe(user.id, plan.id, now=T0)

    with ctx.factory() as session:
        session.get(PricingPlan, plan.id).price = 350000
        session.commit()

    with ctx.factory() as session:
        history = session.get(PricingPlanHistory, subscription.id)
        assert (history.price, history.currency) == (200000, "VND")

    outcome = ctx.manager.renew(user.id, now=T0 + timedelta(days=30))
    assert outcome.status == RENEWAL_RENEWED
    assert ctx.gateway.calls[-1]["amount"] == 350000
    with ctx.factory() as session:
        assert session.get(PricingPlanHistory, subscription.id).price == 200000
        assert session.get(PricingPlanHistory, outcome.history_id).price == 350000


def test_cancel_without_subscription_raises() -> None:
    ctx = _BillingContext()
    _, user = _seed(ctx)

    with pytest.raises(NoActiveSubscription):
        ctx.manager.cancel(user.id)


def test_usage_refresh_rolls_yearly_plan_every_thirty_days() -> None:
    ctx = _BillingContext()
    plan, user = _seed(ctx, name="pro_year", billing_cycle=BillingCycle.YEARLY, credit=10)
    ctx.manager.subscribe(user.id, plan.id, now=T0)
    ctx.spend(user.id, 9)

    early = ctx.manager.refresh_usage_cycles(now=T0 + timedelta(days=29))
    assert early.due == 0

    result = ctx.manager.refresh_usage_cycles(now=T0 + timedelta(days=30))
    assert result.refreshed == 1
    assert result.user_ids == [user.id]
    refreshed = ctx.user(user.id)
    assert refreshed.credit_used == 0
    assert refreshed.credit == 10

    assert ctx.manager.refresh_usage_cycles(now=T0 + timedelta(days=31)).due == 0
    assert ctx.manager.run_renewal_sweep(now=T0 + timedelta(days=31)).due == 0
    assert ctx.gateway.calls[-1]["idempotency_key"].startswith("subscribe:")
