"""Authorize and settle billable AI generations against the credit quota."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import sessionmaker

from contentpilot.core.errors import AlreadySettled, GenerationNotFound, InsufficientQuota
from contentpilot.core.logger import get_logger
from contentpilot.core.metrics import record_generation_settled
from contentpilot.core.timeutil import ensure_utc, utc_now
from contentpilot.domain.enums import GenerateStatus, QuotaDimension
from contentpilot.notifications.sink import (
    QUOTA_EXHAUSTED,
    LogNotificationSink,
    NotificationEvent,
    NotificationSink,
    safe_notify,
)
from contentpilot.quota.ledger import QuotaBalance, QuotaLedger
from contentpilot.storage.models import GenerateHistory
from contentpilot.storage.repositories import GenerateHistoryRepository, GenerationStats, UserRepository


logger = get_logger("contentpilot.usage")


@dataclass(frozen=True)
class Authorization:
    history_id: str
    user_id: str
    reservation_id: str
    credit: int
    credit_used: int
    credit_limit: int


@dataclass(frozen=True)
class GenerationOutcome:
    succeeded: bool
    output: Optional[str] = None
    error_message: Optional[str] = None

    @classmethod
    def success(cls, output: str) -> "GenerationOutcome":
        return cls(succeeded=True, output=output)

    @classmethod
    def failure(cls, error_message: str) -> "GenerationOutcome":
        return cls(succeeded=False, error_message=error_message)


class UsageMeter:
    def __init__(
        self,
        *,
        session_factory: sessionmaker,
        notification_sink: NotificationSink | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._sink = notification_sink or LogNotificationSink()

    def authorize(self, user_id: str, estimated_cost: int, *, input_payload: str = "") -> Authorization:
        """Reserve credit before any generation work starts.

        Raises InsufficientQuota when the balance cannot cover `estimated_cost`;
        nothing is written in that case.
        """

        if estimated_cost <= 0:
            raise ValueError("Estimated cost must be positive")

        with self._session_factory() as session:
            try:
                ledger = QuotaLedger(session)
                handle = ledger.reserve(user_id, QuotaDimension.CREDIT, estimated_cost)
                history = GenerateHistoryRepository(session).add(
                    GenerateHistory(
                        user_id=user_id,
                        input=input_payload,
                        credit=estimated_cost,
                        reservation_id=handle.id,
                        created_at=utc_now(),
                    )
                )
                balance = ledger.balance(user_id)
                session.commit()
            except InsufficientQuota as exc:
                session.rollback()
                safe_notify(
                    self._sink,
                    NotificationEvent(
                        kind=QUOTA_EXHAUSTED,
                        user_id=user_id,
                        payload={
                            "dimension": exc.dimension,
                            "requested": exc.requested,
                            "used": exc.used,
                            "limit": exc.limit,
                        },
                    ),
                )
                raise
            except Exception:
                session.rollback()
                raise

        logger.info(
            "generation_authorized",
            user_id=user_id,
            history_id=history.id,
            credit=estimated_cost,
            credit_used=balance.credit_used,
        )
        return Authorization(
            history_id=history.id,
            user_id=user_id,
            reservation_id=handle.id,
            credit=estimated_cost,
            credit_used=balance.credit_used,
            credit_limit=balance.credit,
        )

    def settle(
        self,
        history_id: str,
        outcome: GenerationOutcome,
        *,
        user_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> GenerateHistory:
        """Finalize an authorized generation exactly once; failures refund the reservation."""

        timestamp = ensure_utc(now) or utc_now()
        status = GenerateStatus.SUCCESS if outcome.succeeded else GenerateStatus.FAILED
        with self._session_factory() as session:
            histories = GenerateHistoryRepository(session)
            history = histories.require(history_id)
            if user_id is not None and history.user_id != user_id:
                # Another user's generation is reported as missing.
                raise GenerationNotFound(f"Generate history not found: {history_id}")
            try:
                updated = histories.mark_settled(
                    history_id,
                    status=status,
                    output=outcome.output if outcome.succeeded else None,
                    error_message=None if outcome.succeeded else (outcome.error_message or "generation_failed")[:255],
                    settled_at=timestamp,
                )
                if not updated:
                    session.rollback()
                    logger.warning(
                        "generation_already_settled",
                        history_id=history_id,
                        user_id=history.user_id,
                        requested_status=status.value,
                    )
                    raise AlreadySettled(
                        f"Generate history {history_id} is already settled",
                        details={"history_id": history_id},
                    )

                if not outcome.succeeded and history.reservation_id:
                    ledger = QuotaLedger(session)
                    handle = ledger.handle_for(history.reservation_id)
                    if handle is not None:
                        ledger.release(handle, now=timestamp)
                session.commit()
            except AlreadySettled:
                raise
            except Exception:
                session.rollback()
                raise
            settled = histories.require(history_id)

        record_generation_settled(status=status.value)
        logger.info(
            "generation_settled",
            history_id=history_id,
            user_id=settled.user_id,
            status=status.value,
            credit=settled.credit,
        )
        return settled

    def list_history(
        self,
        user_id: str,
        *,
        status: Optional[GenerateStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[GenerateHistory]:
        with self._session_factory() as session:
            UserRepository(session).require(user_id)
            return GenerateHistoryRepository(session).list_for_user(
                user_id,
                status=status,
                limit=limit,
                offset=offset,
            )

    def stats(self, user_id: str) -> GenerationStats:
        with self._session_factory() as session:
            UserRepository(session).require(user_id)
            return GenerateHistoryRepository(session).stats_for_user(user_id)

    def balance(self, user_id: str) -> QuotaBalance:
        with self._session_factory() as session:
            return QuotaLedger(session).balance(user_id)
