"""Subscription lifecycle: subscribe, renew, expire, cancel and the periodic sweeps.

A user's subscription state is derived from persisted rows:

- NO_PLAN: no SUCCESS/EXPIRED history.
- PENDING_ACTIVATION: only inside `subscribe`, between plan validation and the
  gateway answer; nothing is persisted in this state.
- ACTIVE: a current history (`end_date IS NULL AND status = SUCCESS`) not yet due.
- RENEWING: the current history is due; a `pending` renewal attempt marks a
  charge in flight, a `failed` one with `next_attempt_at` marks a retry.
- EXPIRED: the last history was closed as EXPIRED; the plan reference and the
  remaining balance are kept as grace.
- CANCELLED: closed by the user; the plan reference is cleared.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, Iterator, List, Optional
import uuid

from sqlalchemy.orm import Session, sessionmaker

from contentpilot.billing.gateway import (
    ChargeResult,
    PaymentDeclinedError,
    PaymentGateway,
    PaymentGatewayError,
)
from contentpilot.core.errors import (
    BillingOperationInProgress,
    NoActiveSubscription,
    PaymentRejected,
    PlanUnavailable,
)
from contentpilot.core.logger import get_logger
from contentpilot.core.metrics import record_renewal, record_subscription
from contentpilot.core.observability import capture_exception, sentry_scope
from contentpilot.core.timeutil import ensure_utc, utc_now
from contentpilot.domain.enums import (
    RENEWAL_ATTEMPT_FAILED,
    RENEWAL_ATTEMPT_PENDING,
    RENEWAL_ATTEMPT_SUCCEEDED,
    BillingCycle,
    PricingHistoryStatus,
    Status,
    SubscriptionState,
)
from contentpilot.notifications.sink import (
    RENEWAL_FAILED,
    SUBSCRIPTION_EXPIRED,
    LogNotificationSink,
    NotificationEvent,
    NotificationSink,
    safe_notify,
)
from contentpilot.orchestrator.locks import BILLING_SCOPE, ResourceLockManager
from contentpilot.orchestrator.pool import map_bounded
from contentpilot.quota.ledger import QuotaLedger, QuotaLimits
from contentpilot.storage.models import BillingRenewalAttempt, PricingPlan, PricingPlanHistory
from contentpilot.storage.repositories import (
    BillingRenewalAttemptRepository,
    PricingPlanHistoryRepository,
    PricingPlanRepository,
    UserRepository,
)


logger = get_logger("contentpilot.billing.cycle")

RENEWAL_RENEWED = "renewed"
RENEWAL_EXPIRED = "expired"
RENEWAL_RETRY_SCHEDULED = "retry_scheduled"
RENEWAL_BACKOFF = "backoff"
RENEWAL_IN_PROGRESS = "in_progress"
RENEWAL_NOT_DUE = "not_due"
RENEWAL_NO_SUBSCRIPTION = "no_subscription"
RENEWAL_SKIPPED_LOCKED = "skipped_locked"
RENEWAL_FAILED_INTERNAL = "failed"
RENEWAL_SUPERSEDED = "superseded"


@dataclass(frozen=True)
class RenewalOutcome:
    user_id: str
    status: str
    history_id: Optional[str] = None
    attempt_number: Optional[int] = None
    next_attempt_at: Optional[datetime] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class BillingSweepResult:
    due: int
    renewed: int
    expired: int
    retry_scheduled: int
    skipped: int
    failed: int
    outcomes: List[RenewalOutcome] = field(default_factory=list)


@dataclass(frozen=True)
class UsageRefreshResult:
    due: int
    refreshed: int
    skipped: int
    failed: int
    user_ids: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class _PendingCharge:
    user_id: str
    history_id: str
    plan_id: str
    attempt_id: str
    attempt_number: int
    idempotency_key: str
    amount: int
    currency: str
    payment_ref: Optional[str]


def _superseded(history: Optional[PricingPlanHistory]) -> bool:
    """True when the history was closed (cancelled or replaced) while its renewal charge was out."""
    return history is None or history.end_date is not None or history.status != PricingHistoryStatus.SUCCESS


class BillingCycleManager:
    def __init__(
        self,
        *,
        session_factory: sessionmaker,
        payment_gateway: PaymentGateway,
        lock_manager: ResourceLockManager | None = None,
        notification_sink: NotificationSink | None = None,
        monthly_cycle_days: int = 30,
        yearly_cycle_days: int = 365,
        usage_reset_interval_days: int = 30,
        max_renewal_attempts: int = 3,
        retry_base_seconds: int = 900,
        renewal_lease_seconds: int = 600,
        max_workers: int = 4,
        batch_limit: int | None = 200,
    ) -> None:
        if max_renewal_attempts <= 0:
            raise ValueError("max_renewal_attempts must be positive")
        self._session_factory = session_factory
        self._gateway = payment_gateway
        self._lock_manager = lock_manager
        self._sink = notification_sink or LogNotificationSink()
        self._cycle_intervals: Dict[BillingCycle, timedelta] = {
            BillingCycle.MONTHLY: timedelta(days=monthly_cycle_days),
            BillingCycle.YEARLY: timedelta(days=yearly_cycle_days),
        }
        self._usage_interval = timedelta(days=usage_reset_interval_days)
        self._max_attempts = max_renewal_attempts
        self._retry_base_seconds = retry_base_seconds
        self._lease = timedelta(seconds=renewal_lease_seconds)
        self._max_workers = max_workers
        self._batch_limit = batch_limit

    def cycle_interval(self, billing_cycle: BillingCycle) -> timedelta:
        return self._cycle_intervals[BillingCycle(billing_cycle)]

    def retry_delay(self, attempt_number: int) -> timedelta:
        return timedelta(seconds=self._retry_base_seconds * (2 ** max(attempt_number - 1, 0)))

    @contextmanager
    def _user_lock(self, user_id: str) -> Iterator[None]:
        if self._lock_manager is None:
            yield
            return
        handle = self._lock_manager.acquire(BILLING_SCOPE, user_id)
        if handle is None:
            raise BillingOperationInProgress(
                f"Another billing operation is running for user {user_id}",
                details={"user_id": user_id},
            )
        try:
            yield
        finally:
            handle.release()

    def subscribe(
        self,
        user_id: str,
        plan_id: str,
        payment_ref: Optional[str] = None,
        *,
        payment_method: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> PricingPlanHistory:
        timestamp = ensure_utc(now) or utc_now()
        with self._user_lock(user_id):
            with self._session_factory() as session:
                UserRepository(session).require(user_id)
                plan = PricingPlanRepository(session).require(plan_id)
                if plan.status != Status.ACTIVE:
                    raise PlanUnavailable(
                        f"Plan {plan.name} ({plan.billing_cycle.value}) accepts no new subscribers",
                        details={"plan_id": plan.id},
                    )

                idempotency_key = f"subscribe:{user_id}:{plan.id}:{payment_ref or uuid.uuid4()}"
                try:
                    charge = self._charge(
                        user_id=user_id,
                        plan=plan,
                        payment_ref=payment_ref,
                        idempotency_key=idempotency_key,
                    )
                except (PaymentDeclinedError, PaymentGatewayError) as exc:
                    history_id = self._record_failed_subscription(
                        session,
                        user_id=user_id,
                        plan=plan,
                        reason=str(exc),
                        payment_method=payment_method,
                        timestamp=timestamp,
                    )
                    record_subscription(outcome="rejected")
                    logger.warning(
                        "subscription_payment_rejected",
                        user_id=user_id,
                        plan_id=plan.id,
                        history_id=history_id,
                        error=str(exc),
                    )
                    raise PaymentRejected(str(exc) or "payment_rejected", history_id=history_id) from exc

                try:
                    history = self._activate(
                        session,
                        user_id=user_id,
                        plan=plan,
                        payment_method=payment_method,
                        transaction_id=charge.transaction_id if charge else None,
                        timestamp=timestamp,
                    )
                    session.commit()
                except Exception:
                    session.rollback()
                    raise

        record_subscription(outcome="activated")
        logger.info(
            "subscription_activated",
            user_id=user_id,
            plan_id=plan_id,
            history_id=history.id,
            expire_at=ensure_utc(history.expire_at).isoformat(),
        )
        return history

    def cancel(self, user_id: str, *, now: Optional[datetime] = None) -> PricingPlanHistory:
        timestamp = ensure_utc(now) or utc_now()
        with self._user_lock(user_id):
            with self._session_factory() as session:
                user = UserRepository(session).require(user_id)
                histories = PricingPlanHistoryRepository(session)
                current = histories.current_for_user(user_id)
                if current is None:
                    # Cancelling after an expiry only drops the retained plan reference.
                    latest = histories.latest_settled_for_user(user_id)
                    if user.pricing_plan_id is None or latest is None:
                        raise NoActiveSubscription(f"User {user_id} has no subscription to cancel")
                    current = latest
                else:
                    attempts = BillingRenewalAttemptRepository(session).list_for_history(current.id)
                    if attempts and self._charge_in_flight(attempts[-1], timestamp):
                        raise BillingOperationInProgress(
                            f"A renewal charge is in flight for user {user_id}",
                            details={"user_id": user_id, "history_id": current.id},
                        )
                    current.end_date = timestamp
                user.pricing_plan_id = None
                try:
                    session.commit()
                except Exception:
                    session.rollback()
                    raise

        logger.info("subscription_cancelled", user_id=user_id, history_id=current.id)
        return current

    def renew(self, user_id: str, *, now: Optional[datetime] = None) -> RenewalOutcome:
        """Attempt one renewal charge for a due subscription.

        Safe to call repeatedly: a charge in flight is not repeated within its lease,
        and a stale in-flight attempt is re-sent with its original idempotency key.
        """

        timestamp = ensure_utc(now) or utc_now()
        with self._user_lock(user_id):
            pending = self._begin_renewal(user_id, timestamp)
            if isinstance(pending, RenewalOutcome):
                return pending

            try:
                charge = self._gateway_charge(pending)
            except PaymentDeclinedError as exc:
                return self._expire_subscription(pending, reason=str(exc), timestamp=timestamp)
            except PaymentGatewayError as exc:
                return self._record_transient_failure(pending, error=str(exc), timestamp=timestamp)

            return self._complete_renewal(pending, charge=charge, timestamp=timestamp)

    def run_renewal_sweep(self, *, now: Optional[datetime] = None) -> BillingSweepResult:
        timestamp = ensure_utc(now) or utc_now()
        with self._session_factory() as session:
            due_user_ids = PricingPlanHistoryRepository(session).list_due_user_ids(
                now=timestamp,
                limit=self._batch_limit,
            )

        def _process(user_id: str) -> RenewalOutcome:
            try:
                with sentry_scope(user_id=user_id, sweep="billing_renewal"):
                    return self.renew(user_id, now=timestamp)
            except BillingOperationInProgress:
                logger.info("billing_renewal_skipped_locked", user_id=user_id)
                return RenewalOutcome(user_id=user_id, status=RENEWAL_SKIPPED_LOCKED)
            except Exception as exc:
                capture_exception(exc)
                logger.error("billing_renewal_failed", user_id=user_id, error=str(exc))
                return RenewalOutcome(user_id=user_id, status=RENEWAL_FAILED_INTERNAL, error=str(exc))

        outcomes = map_bounded(_process, due_user_ids, max_workers=self._max_workers)
        counts: Dict[str, int] = {}
        for outcome in outcomes:
            counts[outcome.status] = counts.get(outcome.status, 0) + 1

        result = BillingSweepResult(
            due=len(due_user_ids),
            renewed=counts.get(RENEWAL_RENEWED, 0),
            expired=counts.get(RENEWAL_EXPIRED, 0),
            retry_scheduled=counts.get(RENEWAL_RETRY_SCHEDULED, 0),
            skipped=sum(
                counts.get(status, 0)
                for status in (
                    RENEWAL_BACKOFF,
                    RENEWAL_IN_PROGRESS,
                    RENEWAL_NOT_DUE,
                    RENEWAL_SKIPPED_LOCKED,
                    RENEWAL_SUPERSEDED,
                )
            ),
            failed=counts.get(RENEWAL_FAILED_INTERNAL, 0),
            outcomes=outcomes,
        )
        logger.info(
            "billing_renewal_sweep_completed",
            due=result.due,
            renewed=result.renewed,
            expired=result.expired,
            retry_scheduled=result.retry_scheduled,
            skipped=result.skipped,
            failed=result.failed,
        )
        return result

    def refresh_usage_cycles(self, *, now: Optional[datetime] = None) -> UsageRefreshResult:
        """Roll over usage for live subscriptions every usage window, independent of billing renewal."""

        timestamp = ensure_utc(now) or utc_now()
        cutoff = timestamp - self._usage_interval
        with self._session_factory() as session:
            due_user_ids = UserRepository(session).list_due_for_usage_refresh(
                cutoff=cutoff,
                now=timestamp,
                limit=self._batch_limit,
            )

        def _process(user_id: str) -> str:
            try:
                with sentry_scope(user_id=user_id, sweep="usage_refresh"):
                    with self._user_lock(user_id):
                        return self._refresh_user(user_id, cutoff=cutoff, timestamp=timestamp)
            except BillingOperationInProgress:
                return "skipped"
            except Exception as exc:
                capture_exception(exc)
                logger.error("usage_refresh_failed", user_id=user_id, error=str(exc))
                return "failed"

        statuses = map_bounded(_process, due_user_ids, max_workers=self._max_workers)
        refreshed = [user_id for user_id, status in zip(due_user_ids, statuses) if status == "refreshed"]
        result = UsageRefreshResult(
            due=len(due_user_ids),
            refreshed=len(refreshed),
            skipped=statuses.count("skipped"),
            failed=statuses.count("failed"),
            user_ids=refreshed,
        )
        logger.info(
            "usage_refresh_completed",
            due=result.due,
            refreshed=result.refreshed,
            skipped=result.skipped,
            failed=result.failed,
        )
        return result

    def subscription_state(self, user_id: str, *, now: Optional[datetime] = None) -> SubscriptionState:
        timestamp = ensure_utc(now) or utc_now()
        with self._session_factory() as session:
            user = UserRepository(session).require(user_id)
            histories = PricingPlanHistoryRepository(session)
            current = histories.current_for_user(user_id)
            if current is not None:
                expire_at = ensure_utc(current.expire_at)
                if expire_at is not None and expire_at <= timestamp:
                    return SubscriptionState.RENEWING
                return SubscriptionState.ACTIVE
            if histories.latest_settled_for_user(user_id) is None:
                return SubscriptionState.NO_PLAN
            if user.pricing_plan_id is not None:
                return SubscriptionState.EXPIRED
            return SubscriptionState.CANCELLED

    def current_subscription(self, user_id: str) -> Optional[PricingPlanHistory]:
        with self._session_factory() as session:
            UserRepository(session).require(user_id)
            return PricingPlanHistoryRepository(session).current_for_user(user_id)

    def history(self, user_id: str) -> List[PricingPlanHistory]:
        with self._session_factory() as session:
            UserRepository(session).require(user_id)
            return PricingPlanHistoryRepository(session).list_for_user(user_id)

    def _charge(
        self,
        *,
        user_id: str,
        plan: PricingPlan,
        payment_ref: Optional[str],
        idempotency_key: str,
    ) -> Optional[ChargeResult]:
        if plan.price <= 0:
            return None
        return self._gateway.charge(
            user_id=user_id,
            plan_id=plan.id,
            amount=plan.price,
            currency=plan.currency,
            payment_ref=payment_ref,
            idempotency_key=idempotency_key,
        )

    def _gateway_charge(self, pending: _PendingCharge) -> Optional[ChargeResult]:
        if pending.amount <= 0:
            return None
        return self._gateway.charge(
            user_id=pending.user_id,
            plan_id=pending.plan_id,
            amount=pending.amount,
            currency=pending.currency,
            payment_ref=pending.payment_ref,
            idempotency_key=pending.idempotency_key,
        )

    def _record_failed_subscription(
        self,
        session: Session,
        *,
        user_id: str,
        plan: PricingPlan,
        reason: str,
        payment_method: Optional[str],
        timestamp: datetime,
    ) -> str:
        history = PricingPlanHistory(
            user_id=user_id,
            plan_id=plan.id,
            price=plan.price,
            currency=plan.currency,
            status=PricingHistoryStatus.FAILED,
            error_message=(reason or "payment_rejected")[:255],
            start_date=timestamp,
            end_date=timestamp,
            payment_method=payment_method,
            created_at=timestamp,
        )
        try:
            PricingPlanHistoryRepository(session).add(history)
            session.commit()
        except Exception:
            session.rollback()
            raise
        return history.id

    def _activate(
        self,
        session: Session,
        *,
        user_id: str,
        plan: PricingPlan,
        payment_method: Optional[str],
        transaction_id: Optional[str],
        timestamp: datetime,
    ) -> PricingPlanHistory:
        user = UserRepository(session).require(user_id)
        histories = PricingPlanHistoryRepository(session)
        current = histories.current_for_user(user_id)
        if current is not None:
            current.end_date = timestamp
            session.flush()

        history = histories.add(
            PricingPlanHistory(
                user_id=user_id,
                plan_id=plan.id,
                price=plan.price,
                currency=plan.currency,
                status=PricingHistoryStatus.SUCCESS,
                start_date=timestamp,
                expire_at=timestamp + self.cycle_interval(plan.billing_cycle),
                payment_method=payment_method,
                transaction_id=transaction_id,
                created_at=timestamp,
            )
        )
        QuotaLedger(session).reset_cycle(
            user_id,
            QuotaLimits(credit=plan.credit, capacity=plan.capacity),
            now=timestamp,
        )
        user.pricing_plan_id = plan.id
        session.flush()
        return history

    def _charge_in_flight(self, attempt: BillingRenewalAttempt, timestamp: datetime) -> bool:
        return (
            attempt.status == RENEWAL_ATTEMPT_PENDING
            and ensure_utc(attempt.updated_at) + self._lease > timestamp
        )

    def _begin_renewal(self, user_id: str, timestamp: datetime) -> _PendingCharge | RenewalOutcome:
        """Persist the RENEWING marker (a pending attempt) before any charge is sent."""

        with self._session_factory() as session:
            current = PricingPlanHistoryRepository(session).current_for_user(user_id)
            if current is None:
                return RenewalOutcome(user_id=user_id, status=RENEWAL_NO_SUBSCRIPTION)
            expire_at = ensure_utc(current.expire_at)
            if expire_at is None or expire_at > timestamp:
                return RenewalOutcome(user_id=user_id, status=RENEWAL_NOT_DUE, history_id=current.id)

            attempts_repo = BillingRenewalAttemptRepository(session)
            attempts = attempts_repo.list_for_history(current.id)
            last = attempts[-1] if attempts else None

            if last is not None and last.status == RENEWAL_ATTEMPT_PENDING:
                if self._charge_in_flight(last, timestamp):
                    return RenewalOutcome(
                        user_id=user_id,
                        status=RENEWAL_IN_PROGRESS,
                        history_id=current.id,
                        attempt_number=last.attempt_number,
                    )
                attempt = last
                attempt.updated_at = timestamp
                logger.warning(
                    "billing_renewal_reentered",
                    user_id=user_id,
                    history_id=current.id,
                    attempt_number=attempt.attempt_number,
                    idempotency_key=attempt.idempotency_key,
                )
            elif (
                last is not None
                and last.status == RENEWAL_ATTEMPT_FAILED
                and last.next_attempt_at is not None
                and ensure_utc(last.next_attempt_at) > timestamp
            ):
                return RenewalOutcome(
                    user_id=user_id,
                    status=RENEWAL_BACKOFF,
                    history_id=current.id,
                    attempt_number=last.attempt_number,
                    next_attempt_at=ensure_utc(last.next_attempt_at),
                )
            else:
                attempt_number = len(attempts) + 1
                attempt = attempts_repo.add(
                    BillingRenewalAttempt(
                        history_id=current.id,
                        user_id=user_id,
                        plan_id=current.plan_id,
                        attempt_number=attempt_number,
                        idempotency_key=f"renew:{current.id}:{attempt_number}",
                        status=RENEWAL_ATTEMPT_PENDING,
                        created_at=timestamp,
                        updated_at=timestamp,
                    )
                )

            plan = PricingPlanRepository(session).require(current.plan_id)
            pending = _PendingCharge(
                user_id=user_id,
                history_id=current.id,
                plan_id=plan.id,
                attempt_id=attempt.id,
                attempt_number=attempt.attempt_number,
                idempotency_key=attempt.idempotency_key,
                amount=plan.price,
                currency=plan.currency,
                payment_ref=current.payment_method,
            )
            try:
                session.commit()
            except Exception:
                session.rollback()
                raise
        return pending

    def _complete_renewal(
        self,
        pending: _PendingCharge,
        *,
        charge: Optional[ChargeResult],
        timestamp: datetime,
    ) -> RenewalOutcome:
        with self._session_factory() as session:
            try:
                attempt = session.get(BillingRenewalAttempt, pending.attempt_id)
                attempt.status = RENEWAL_ATTEMPT_SUCCEEDED
                attempt.transaction_id = charge.transaction_id if charge else None
                attempt.updated_at = timestamp

                prior = session.get(PricingPlanHistory, pending.history_id)
                if _superseded(prior):
                    # The charge stays on the attempt for reconciliation.
                    session.commit()
                    return self._superseded_outcome(pending, transaction_id=attempt.transaction_id)
                plan = PricingPlanRepository(session).require(pending.plan_id)
                history = self._activate(
                    session,
                    user_id=pending.user_id,
                    plan=plan,
                    payment_method=prior.payment_method if prior else None,
                    transaction_id=charge.transaction_id if charge else None,
                    timestamp=timestamp,
                )
                session.commit()
            except Exception:
                session.rollback()
                raise

        record_renewal(outcome=RENEWAL_RENEWED)
        logger.info(
            "subscription_renewed",
            user_id=pending.user_id,
            previous_history_id=pending.history_id,
            history_id=history.id,
            attempt_number=pending.attempt_number,
        )
        return RenewalOutcome(
            user_id=pending.user_id,
            status=RENEWAL_RENEWED,
            history_id=history.id,
            attempt_number=pending.attempt_number,
        )

    def _expire_subscription(self, pending: _PendingCharge, *, reason: str, timestamp: datetime) -> RenewalOutcome:
        with self._session_factory() as session:
            try:
                attempt = session.get(BillingRenewalAttempt, pending.attempt_id)
                attempt.status = RENEWAL_ATTEMPT_FAILED
                attempt.error_message = (reason or "renewal_failed")[:255]
                attempt.next_attempt_at = None
                attempt.updated_at = timestamp

                prior = session.get(PricingPlanHistory, pending.history_id)
                if _superseded(prior):
                    session.commit()
                    return self._superseded_outcome(pending, transaction_id=None)
                prior.status = PricingHistoryStatus.EXPIRED
                prior.end_date = timestamp
                # Quotas are left at their last values.
                session.commit()
            except Exception:
                session.rollback()
                raise

        record_renewal(outcome=RENEWAL_EXPIRED)
        logger.warning(
            "subscription_expired",
            user_id=pending.user_id,
            history_id=pending.history_id,
            attempt_number=pending.attempt_number,
            reason=reason,
        )
        safe_notify(
            self._sink,
            NotificationEvent(
                kind=SUBSCRIPTION_EXPIRED,
                user_id=pending.user_id,
                payload={
                    "history_id": pending.history_id,
                    "plan_id": pending.plan_id,
                    "attempts": pending.attempt_number,
                    "reason": reason,
                },
                occurred_at=timestamp,
            ),
        )
        return RenewalOutcome(
            user_id=pending.user_id,
            status=RENEWAL_EXPIRED,
            history_id=pending.history_id,
            attempt_number=pending.attempt_number,
            error=reason,
        )

    def _superseded_outcome(self, pending: _PendingCharge, *, transaction_id: Optional[str]) -> RenewalOutcome:
        logger.warning(
            "billing_renewal_superseded",
            user_id=pending.user_id,
            history_id=pending.history_id,
            attempt_number=pending.attempt_number,
            transaction_id=transaction_id,
        )
        return RenewalOutcome(
            user_id=pending.user_id,
            status=RENEWAL_SUPERSEDED,
            history_id=pending.history_id,
            attempt_number=pending.attempt_number,
        )

    def _record_transient_failure(self, pending: _PendingCharge, *, error: str, timestamp: datetime) -> RenewalOutcome:
        if pending.attempt_number >= self._max_attempts:
            return self._expire_subscription(
                pending,
                reason=f"renewal_attempts_exhausted: {error}",
                timestamp=timestamp,
            )

        next_attempt_at = timestamp + self.retry_delay(pending.attempt_number)
        with self._session_factory() as session:
            try:
                attempt = session.get(BillingRenewalAttempt, pending.attempt_id)
                attempt.status = RENEWAL_ATTEMPT_FAILED
                attempt.error_message = (error or "payment_gateway_error")[:255]
                attempt.next_attempt_at = next_attempt_at
                attempt.updated_at = timestamp
                session.commit()
            except Exception:
                session.rollback()
                raise

        record_renewal(outcome=RENEWAL_RETRY_SCHEDULED)
        logger.warning(
            "billing_renewal_retry_scheduled",
            user_id=pending.user_id,
            history_id=pending.history_id,
            attempt_number=pending.attempt_number,
            next_attempt_at=next_attempt_at.isoformat(),
            error=error,
        )
        safe_notify(
            self._sink,
            NotificationEvent(
                kind=RENEWAL_FAILED,
                user_id=pending.user_id,
                payload={
                    "history_id": pending.history_id,
                    "attempt_number": pending.attempt_number,
                    "next_attempt_at": next_attempt_at.isoformat(),
                    "error": error,
                },
                occurred_at=timestamp,
            ),
        )
        return RenewalOutcome(
            user_id=pending.user_id,
            status=RENEWAL_RETRY_SCHEDULED,
            history_id=pending.history_id,
            attempt_number=pending.attempt_number,
            next_attempt_at=next_attempt_at,
            error=error,
        )

    def _refresh_user(self, user_id: str, *, cutoff: datetime, timestamp: datetime) -> str:
        with self._session_factory() as session:
            user = UserRepository(session).require(user_id)
            last_reset = ensure_utc(user.last_reset_date)
            if last_reset is not None and last_reset > cutoff:
                return "skipped"
            if PricingPlanHistoryRepository(session).current_for_user(user_id) is None:
                return "skipped"
            plan = PricingPlanRepository(session).plan_for_user(user)
            if plan is None:
                return "skipped"
            try:
                QuotaLedger(session).reset_cycle(
                    user_id,
                    QuotaLimits(credit=plan.credit, capacity=plan.capacity),
                    now=timestamp,
                )
                session.commit()
            except Exception:
                session.rollback()
                raise
        logger.info("usage_cycle_refreshed", user_id=user_id, plan_id=plan.id)
        return "refreshed"
