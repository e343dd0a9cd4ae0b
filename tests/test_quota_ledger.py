from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

import pytest
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from contentpilot.core.errors import InsufficientQuota, QuotaInvariantViolation, UserNotFound
from contentpilot.domain.enums import QuotaDimension
from contentpilot.quota.ledger import QuotaLedger, QuotaLimits
from contentpilot.storage.models import QuotaReservation, User
from tests.conftest import T0, build_file_session_factory, build_session_factory, create_user


def test_reserve_rejects_request_that_would_exceed_limit() -> None:
    factory = build_session_factory()
    with factory() as session:
        user = create_user(session, credit=10)
        ledger = QuotaLedger(session)

        handle = ledger.reserve(user.id, QuotaDimension.CREDIT, 8)
        session.commit()
        assert handle.amount == 8

        with pytest.raises(InsufficientQuota) as exc_info:
            ledger.reserve(user.id, QuotaDimension.CREDIT, 5)
        session.rollback()

        assert exc_info.value.requested == 5
        assert exc_info.value.used == 8
        assert exc_info.value.limit == 10
        assert exc_info.value.details["remaining"] == 2

        balance = ledger.balance(user.id)
        assert balance.credit_used == 8
        assert balance.credit_remaining == 2


def test_reserve_exact_remaining_balance_succeeds() -> None:
    factory = build_session_factory()
    with factory() as session:
        user = create_user(session, credit=10, credit_used=7)
        ledger = QuotaLedger(session)

        ledger.reserve(user.id, "credit", 3)
        session.commit()

        assert ledger.balance(user.id).credit_used == 10
        with pytest.raises(InsufficientQuota):
            ledger.reserve(user.id, "credit", 1)
        session.rollback()


def test_reserve_validates_amount_and_user() -> None:
    factory = build_session_factory()
    with factory() as session:
        user = create_user(session, credit=10)
        ledger = QuotaLedger(session)

        with pytest.raises(ValueError):
            ledger.reserve(user.id, QuotaDimension.CREDIT, 0)
        with pytest.raises(UserNotFound):
            ledger.reserve("missing-user", QuotaDimension.CREDIT, 1)


def test_release_refunds_once() -> None:
    factory = build_session_factory()
    with factory() as session:
        user = create_user(session, credit=10)
        ledger = QuotaLedger(session)
        handle = ledger.reserve(user.id, QuotaDimension.CREDIT, 4)
        session.commit()

        assert ledger.release(handle, now=T0) is True
        session.commit()
        assert ledger.release(handle, now=T0) is False
        session.commit()

        assert ledger.balance(user.id).credit_used == 0
        reservation = session.get(QuotaReservation, handle.id, populate_existing=True)
        assert reservation.released_at is not None


def test_release_after_cycle_reset_does_not_refund_new_cycle() -> None:
    factory = build_session_factory()
    with factory() as session:
        user = create_user(session, credit=10)
        ledger = QuotaLedger(session)
        handle = ledger.reserve(user.id, QuotaDimension.CREDIT, 6)
        session.commit()

        reset = ledger.reset_cycle(user.id, QuotaLimits(credit=10, capacity=50), now=T0)
        session.commit()
        assert reset.quota_cycle == handle.quota_cycle + 1
        assert reset.credit_used == 0

        second = ledger.reserve(user.id, QuotaDimension.CREDIT, 2)
        session.commit()

        assert ledger.release(handle, now=T0) is True
        session.commit()
        assert ledger.balance(user.id).credit_used == 2

        assert ledger.release(second, now=T0) is True
        session.commit()
        assert ledger.balance(user.id).credit_used == 0


def test_release_raises_when_usage_would_go_negative() -> None:
    factory = build_session_factory()
    with factory() as session:
        user = create_user(session, credit=10)
        ledger = QuotaLedger(session)
        handle = ledger.reserve(user.id, QuotaDimension.CREDIT, 5)
        session.commit()

        session.execute(update(User).where(User.id == user.id).values(credit_used=1))
        session.commit()

        with pytest.raises(QuotaInvariantViolation):
            ledger.release(handle, now=T0)
        session.rollback()
        assert ledger.balance(user.id).credit_used == 1


def test_reset_cycle_and_grant_update_limits() -> None:
    factory = build_session_factory()
    with factory() as session:
        user = create_user(session, credit=10, credit_used=9, capacity=20, capacity_used=15)
        ledger = QuotaLedger(session)

        balance = ledger.reset_cycle(user.id, QuotaLimits(credit=200, capacity=20), now=T0)
        session.commit()
        assert balance.credit == 200
        assert balance.credit_used == 0
        assert balance.capacity_used == 0
        assert balance.last_reset_date == T0

        granted = ledger.grant(user.id, QuotaDimension.CAPACITY, 30)
        session.commit()
        assert granted.capacity == 50
        assert granted.credit == 200

        with pytest.raises(UserNotFound):
            ledger.reset_cycle("missing-user", QuotaLimits(credit=1, capacity=1))


def test_capacity_is_metered_independently_of_credit() -> None:
    factory = build_session_factory()
    with factory() as session:
        user = create_user(session, credit=5, capacity=100)
        ledger = QuotaLedger(session)

        ledger.reserve(user.id, QuotaDimension.CAPACITY, 60)
        session.commit()
        with pytest.raises(InsufficientQuota) as exc_info:
            ledger.reserve(user.id, QuotaDimension.CAPACITY, 41)
        session.rollback()

        assert exc_info.value.dimension == "capacity"
        balance = ledger.balance(user.id)
        assert balance.capacity_used == 60
        assert balance.credit_used == 0


def test_database_rejects_usage_above_limit() -> None:
    factory = build_session_factory()
    with factory() as session:
        user = create_user(session, credit=10)

        with pytest.raises(IntegrityError):
            session.execute(update(User).where(User.id == user.id).values(credit_used=11))
            session.commit()
        session.rollback()


def test_concurrent_reservations_never_overdraw(tmp_path) -> None:
    factory = build_file_session_factory(tmp_path / "ledger.sqlite")
    with factory() as session:
        user_id = create_user(session, credit=10).id

    def _reserve_one(_: int) -> bool:
        with factory() as session:
            try:
                QuotaLedger(session).reserve(user_id, QuotaDimension.CREDIT, 1)
                session.commit()
                return True
            except InsufficientQuota:
                session.rollback()
                return False

    with ThreadPoolExecutor(max_workers=8) as executor:
        results = list(executor.map(_reserve_one, range(25)))

    assert results.count(True) == 10
    assert results.count(False) == 15
    with factory() as session:
        assert QuotaLedger(session).balance(user_id).credit_used == 10
        reservations = session.scalars(select(QuotaReservation).where(QuotaReservation.user_id == user_id)).all()
        assert len(reservations) == 10
