"""Atomic credit/capacity accounting on the user row.

Every mutation is a single conditional UPDATE; the ledger never reads a
counter and writes it back. The caller owns the transaction.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Union

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from contentpilot.core.errors import InsufficientQuota, QuotaInvariantViolation, UserNotFound
from contentpilot.core.logger import get_logger
from contentpilot.core.metrics import record_quota_reservation
from contentpilot.core.timeutil import ensure_utc, utc_now
from contentpilot.domain.enums import QuotaDimension
from contentpilot.storage.models import QuotaReservation, User


logger = get_logger("contentpilot.quota")


@dataclass(frozen=True)
class ReservationHandle:
    id: str
    user_id: str
    dimension: QuotaDimension
    amount: int
    quota_cycle: int


@dataclass(frozen=True)
class QuotaLimits:
    credit: int
    capacity: int


@dataclass(frozen=True)
class QuotaBalance:
    user_id: str
    credit: int
    credit_used: int
    capacity: int
    capacity_used: int
    last_reset_date: Optional[datetime]
    quota_cycle: int

    @property
    def credit_remaining(self) -> int:
        return self.credit - self.credit_used

    @property
    def capacity_remaining(self) -> int:
        return self.capacity - self.capacity_used


def _columns(dimension: Union[QuotaDimension, str]):
    normalized = QuotaDimension(dimension)
    if normalized is QuotaDimension.CREDIT:
        return normalized, User.credit, User.credit_used
    return normalized, User.capacity, User.capacity_used


class QuotaLedger:
    def __init__(self, session: Session) -> None:
        self._session = session

    def reserve(self, user_id: str, dimension: Union[QuotaDimension, str], amount: int) -> ReservationHandle:
        if amount <= 0:
            raise ValueError("Reservation amount must be positive")
        dimension, limit_column, used_column = _columns(dimension)

        result = self._session.execute(
            update(User)
            .where(User.id == user_id, used_column + amount <= limit_column)
            .values({used_column: used_column + amount})
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            row = self._session.execute(
                select(used_column, limit_column).where(User.id == user_id)
            ).one_or_none()
            if row is None:
                raise UserNotFound(f"User not found: {user_id}")
            used, limit = int(row[0]), int(row[1])
            record_quota_reservation(dimension=dimension.value, outcome="rejected")
            logger.info(
                "quota_reservation_rejected",
                user_id=user_id,
                dimension=dimension.value,
                requested=amount,
                used=used,
                limit=limit,
            )
            raise InsufficientQuota(
                user_id=user_id,
                dimension=dimension.value,
                requested=amount,
                used=used,
                limit=limit,
            )

        # The row stays write-locked until commit, so the cycle read here is the one debited.
        quota_cycle = int(self._session.scalar(select(User.quota_cycle).where(User.id == user_id)))
        reservation = QuotaReservation(
            user_id=user_id,
            dimension=dimension.value,
            amount=amount,
            quota_cycle=quota_cycle,
            created_at=utc_now(),
        )
        self._session.add(reservation)
        self._session.flush()
        record_quota_reservation(dimension=dimension.value, outcome="reserved")
        return ReservationHandle(
            id=reservation.id,
            user_id=user_id,
            dimension=dimension,
            amount=amount,
            quota_cycle=quota_cycle,
        )

    def handle_for(self, reservation_id: str) -> Optional[ReservationHandle]:
        reservation = self._session.get(QuotaReservation, reservation_id)
        if reservation is None:
            return None
        return ReservationHandle(
            id=reservation.id,
            user_id=reservation.user_id,
            dimension=QuotaDimension(reservation.dimension),
            amount=int(reservation.amount),
            quota_cycle=int(reservation.quota_cycle),
        )

    def release(self, handle: ReservationHandle, *, now: Optional[datetime] = None) -> bool:
        """Refund a reservation. Returns False when it was already released."""

        timestamp = ensure_utc(now) or utc_now()
        marked = self._session.execute(
            update(QuotaReservation)
            .where(QuotaReservation.id == handle.id, QuotaReservation.released_at.is_(None))
            .values(released_at=timestamp)
            .execution_options(synchronize_session=False)
        )
        if marked.rowcount != 1:
            return False

        dimension, _, used_column = _columns(handle.dimension)
        refunded = self._session.execute(
            update(User)
            .where(
                User.id == handle.user_id,
                User.quota_cycle == handle.quota_cycle,
                used_column >= handle.amount,
            )
            .values({used_column: used_column - handle.amount})
            .execution_options(synchronize_session=False)
        )
        if refunded.rowcount == 1:
            record_quota_reservation(dimension=dimension.value, outcome="released")
            return True

        current_cycle = self._session.scalar(select(User.quota_cycle).where(User.id == handle.user_id))
        if current_cycle is None:
            raise UserNotFound(f"User not found: {handle.user_id}")
        if int(current_cycle) != handle.quota_cycle:
            # A reset already zeroed the counter this reservation was debited from.
            logger.info(
                "quota_release_stale_cycle",
                user_id=handle.user_id,
                reservation_id=handle.id,
                reservation_cycle=handle.quota_cycle,
                current_cycle=int(current_cycle),
            )
            return True
        raise QuotaInvariantViolation(
            f"Releasing {handle.amount} {dimension.value} would drive usage below zero",
            details={"user_id": handle.user_id, "reservation_id": handle.id},
        )

    def reset_cycle(self, user_id: str, limits: QuotaLimits, *, now: Optional[datetime] = None) -> QuotaBalance:
        if limits.credit < 0 or limits.capacity < 0:
            raise ValueError("Quota limits must be zero or positive")
        timestamp = ensure_utc(now) or utc_now()
        result = self._session.execute(
            update(User)
            .where(User.id == user_id)
            .values(
                credit=limits.credit,
                credit_used=0,
                capacity=limits.capacity,
                capacity_used=0,
                last_reset_date=timestamp,
                quota_cycle=User.quota_cycle + 1,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise UserNotFound(f"User not found: {user_id}")
        logger.info(
            "quota_cycle_reset",
            user_id=user_id,
            credit=limits.credit,
            capacity=limits.capacity,
        )
        return self.balance(user_id)

    def grant(self, user_id: str, dimension: Union[QuotaDimension, str], amount: int) -> QuotaBalance:
        """Raise a limit without touching usage (top-ups, extra storage)."""

        if amount <= 0:
            raise ValueError("Grant amount must be positive")
        dimension, limit_column, _ = _columns(dimension)
        result = self._session.execute(
            update(User)
            .where(User.id == user_id)
            .values({limit_column: limit_column + amount})
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise UserNotFound(f"User not found: {user_id}")
        logger.info("quota_granted", user_id=user_id, dimension=dimension.value, amount=amount)
        return self.balance(user_id)

    def balance(self, user_id: str) -> QuotaBalance:
        row = self._session.execute(
            select(
                User.credit,
                User.credit_used,
                User.capacity,
                User.capacity_used,
                User.last_reset_date,
                User.quota_cycle,
            ).where(User.id == user_id)
        ).one_or_none()
        if row is None:
            raise UserNotFound(f"User not found: {user_id}")
        return QuotaBalance(
            user_id=user_id,
            credit=int(row.credit),
            credit_used=int(row.credit_used),
            capacity=int(row.capacity),
            capacity_used=int(row.capacity_used),
            last_reset_date=ensure_utc(row.last_reset_date),
            quota_cycle=int(row.quota_cycle),
        )
