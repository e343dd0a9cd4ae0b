"""Typed repositories, one per persisted entity.

Each repository wraps a caller-owned `Session`; none of them commit.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.orm import Session

from contentpilot.core.errors import (
    GenerationNotFound,
    PlanInUse,
    PlanNotFound,
    PostNotFound,
    UserNotFound,
)
from contentpilot.core.timeutil import utc_now
from contentpilot.domain.enums import (
    DELIVERY_STATUS_PENDING,
    BillingCycle,
    GenerateStatus,
    PostStatus,
    PricingHistoryStatus,
    Status,
)
from contentpilot.storage.models import (
    BillingRenewalAttempt,
    Channel,
    GenerateHistory,
    Post,
    PostChannelDelivery,
    PricingPlan,
    PricingPlanHistory,
    User,
)


class UserRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def get(self, user_id: str) -> Optional[User]:
        return self._session.get(User, user_id, populate_existing=True)

    def require(self, user_id: str) -> User:
        user = self.get(user_id)
        if user is None:
            raise UserNotFound(f"User not found: {user_id}")
        return user

    def get_by_email(self, email: str) -> Optional[User]:
        return self._session.scalar(select(User).where(User.email == email))

    def add(self, user: User) -> User:
        self._session.add(user)
        self._session.flush()
        return user

    def list_due_for_usage_refresh(
        self,
        *,
        cutoff: datetime,
        now: datetime,
        limit: Optional[int] = None,
    ) -> List[str]:
        """Users on a live, not-yet-due subscription whose last quota rollover is at or before `cutoff`.

        Subscriptions already due for renewal are left to the renewal sweep.
        """

        statement = (
            select(User.id)
            .join(
                PricingPlanHistory,
                and_(
                    PricingPlanHistory.user_id == User.id,
                    PricingPlanHistory.end_date.is_(None),
                    PricingPlanHistory.status == PricingHistoryStatus.SUCCESS,
                ),
            )
            .where(
                User.pricing_plan_id.is_not(None),
                or_(PricingPlanHistory.expire_at.is_(None), PricingPlanHistory.expire_at > now),
                or_(User.last_reset_date.is_(None), User.last_reset_date <= cutoff),
            )
            .order_by(User.id.asc())
        )
        if limit is not None:
            statement = statement.limit(max(1, limit))
        return [str(user_id) for user_id in self._session.scalars(statement).all()]


class PricingPlanRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def get(self, plan_id: str) -> Optional[PricingPlan]:
        return self._session.get(PricingPlan, plan_id)

    def require(self, plan_id: str) -> PricingPlan:
        plan = self.get(plan_id)
        if plan is None:
            raise PlanNotFound(f"Plan not found: {plan_id}")
        return plan

    def get_by_name(self, name: str, billing_cycle: BillingCycle) -> Optional[PricingPlan]:
        return self._session.scalar(
            select(PricingPlan).where(
                PricingPlan.name == name,
                PricingPlan.billing_cycle == billing_cycle,
            )
        )

    def get_free_plan(self) -> Optional[PricingPlan]:
        return self.get_by_name("free", BillingCycle.MONTHLY)

    def list_active(self) -> List[PricingPlan]:
        statement = (
            select(PricingPlan)
            .where(PricingPlan.status == Status.ACTIVE)
            .order_by(PricingPlan.price.asc(), PricingPlan.name.asc())
        )
        return list(self._session.scalars(statement).all())

    def plan_for_user(self, user: User) -> Optional[PricingPlan]:
        if user.pricing_plan_id is None:
            return None
        return self.get(user.pricing_plan_id)

    def add(self, plan: PricingPlan) -> PricingPlan:
        self._session.add(plan)
        self._session.flush()
        return plan

    def delete(self, plan_id: str) -> None:
        """Delete a plan; refused while any user or history row refers to it."""

        plan = self.require(plan_id)
        user_refs = self._session.scalar(
            select(func.count()).select_from(User).where(User.pricing_plan_id == plan_id)
        )
        history_refs = self._session.scalar(
            select(func.count()).select_from(PricingPlanHistory).where(PricingPlanHistory.plan_id == plan_id)
        )
        if user_refs or history_refs:
            raise PlanInUse(
                f"Plan {plan.name} ({plan.billing_cycle.value}) is still referenced",
                details={"users": int(user_refs or 0), "histories": int(history_refs or 0)},
            )
        self._session.delete(plan)
        self._session.flush()


class PricingPlanHistoryRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def get(self, history_id: str) -> Optional[PricingPlanHistory]:
        return self._session.get(PricingPlanHistory, history_id)

    def add(self, history: PricingPlanHistory) -> PricingPlanHistory:
        self._session.add(history)
        self._session.flush()
        return history

    def current_for_user(self, user_id: str) -> Optional[PricingPlanHistory]:
        return self._session.scalar(
            select(PricingPlanHistory).where(
                PricingPlanHistory.user_id == user_id,
                PricingPlanHistory.end_date.is_(None),
                PricingPlanHistory.status == PricingHistoryStatus.SUCCESS,
            )
        )

    def latest_settled_for_user(self, user_id: str) -> Optional[PricingPlanHistory]:
        """Most recent SUCCESS/EXPIRED row; FAILED purchase attempts never held a subscription."""

        return self._session.scalar(
            select(PricingPlanHistory)
            .where(
                PricingPlanHistory.user_id == user_id,
                PricingPlanHistory.status != PricingHistoryStatus.FAILED,
            )
            .order_by(PricingPlanHistory.created_at.desc(), PricingPlanHistory.start_date.desc())
            .limit(1)
        )

    def list_for_user(self, user_id: str) -> List[PricingPlanHistory]:
        statement = (
            select(PricingPlanHistory)
            .where(PricingPlanHistory.user_id == user_id)
            .order_by(PricingPlanHistory.created_at.desc(), PricingPlanHistory.start_date.desc())
        )
        return list(self._session.scalars(statement).all())

    def list_due_user_ids(self, *, now: datetime, limit: Optional[int] = None) -> List[str]:
        statement = (
            select(PricingPlanHistory.user_id)
            .where(
                PricingPlanHistory.end_date.is_(None),
                PricingPlanHistory.status == PricingHistoryStatus.SUCCESS,
                PricingPlanHistory.expire_at.is_not(None),
                PricingPlanHistory.expire_at <= now,
            )
            .order_by(PricingPlanHistory.expire_at.asc(), PricingPlanHistory.user_id.asc())
        )
        if limit is not None:
            statement = statement.limit(max(1, limit))
        return [str(user_id) for user_id in self._session.scalars(statement).all()]


class BillingRenewalAttemptRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def add(self, attempt: BillingRenewalAttempt) -> BillingRenewalAttempt:
        self._session.add(attempt)
        self._session.flush()
        return attempt

    def list_for_history(self, history_id: str) -> List[BillingRenewalAttempt]:
        statement = (
            select(BillingRenewalAttempt)
            .where(BillingRenewalAttempt.history_id == history_id)
            .order_by(BillingRenewalAttempt.attempt_number.asc())
        )
        return list(self._session.scalars(statement).all())


@dataclass(frozen=True)
class GenerationStats:
    total: int
    successful: int
    failed: int
    pending: int
    credits_used: int


class GenerateHistoryRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def get(self, history_id: str) -> Optional[GenerateHistory]:
        return self._session.get(GenerateHistory, history_id, populate_existing=True)

    def require(self, history_id: str) -> GenerateHistory:
        history = self.get(history_id)
        if history is None:
            raise GenerationNotFound(f"Generate history not found: {history_id}")
        return history

    def add(self, history: GenerateHistory) -> GenerateHistory:
        self._session.add(history)
        self._session.flush()
        return history

    def mark_settled(
        self,
        history_id: str,
        *,
        status: GenerateStatus,
        output: Optional[str],
        error_message: Optional[str],
        settled_at: datetime,
    ) -> bool:
        """Flip a pending row to its final status. Returns False when it was already settled."""

        values = {"status": status, "settled_at": settled_at, "error_message": error_message}
        if output is not None:
            values["output"] = output
        result = self._session.execute(
            update(GenerateHistory)
            .where(GenerateHistory.id == history_id, GenerateHistory.status.is_(None))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def list_for_user(
        self,
        user_id: str,
        *,
        status: Optional[GenerateStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[GenerateHistory]:
        statement = select(GenerateHistory).where(GenerateHistory.user_id == user_id)
        if status is not None:
            statement = statement.where(GenerateHistory.status == status)
        statement = (
            statement.order_by(GenerateHistory.created_at.desc(), GenerateHistory.id.desc())
            .limit(max(1, limit))
            .offset(max(0, offset))
        )
        return list(self._session.scalars(statement).all())

    def stats_for_user(self, user_id: str) -> GenerationStats:
        rows = self._session.execute(
            select(GenerateHistory.status, func.count(), func.coalesce(func.sum(GenerateHistory.credit), 0))
            .where(GenerateHistory.user_id == user_id)
            .group_by(GenerateHistory.status)
        ).all()
        counts = {status: (int(count), int(credits)) for status, count, credits in rows}
        successful = counts.get(GenerateStatus.SUCCESS, (0, 0))
        failed = counts.get(GenerateStatus.FAILED, (0, 0))
        pending = counts.get(None, (0, 0))
        return GenerationStats(
            total=successful[0] + failed[0] + pending[0],
            successful=successful[0],
            failed=failed[0],
            pending=pending[0],
            # Failed generations are refunded, pending ones are still reserved.
            credits_used=successful[1] + pending[1],
        )


class ChannelRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def get(self, channel_id: str) -> Optional[Channel]:
        return self._session.get(Channel, channel_id)

    def list_active_for_user(self, user_id: str, *, platforms: Optional[Iterable[str]] = None) -> List[Channel]:
        statement = select(Channel).where(Channel.user_id == user_id, Channel.status == Status.ACTIVE)
        if platforms is not None:
            statement = statement.where(Channel.platform.in_(list(platforms)))
        statement = statement.order_by(Channel.platform.asc(), Channel.created_at.asc(), Channel.id.asc())
        return list(self._session.scalars(statement).all())

    def upsert(
        self,
        *,
        user_id: str,
        platform: str,
        channel_id: str,
        channel_name: str,
        channel_image: Optional[str] = None,
        access_token: Optional[str] = None,
        refresh_token: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> Channel:
        channel = self._session.scalar(
            select(Channel).where(
                Channel.user_id == user_id,
                Channel.platform == platform,
                Channel.channel_id == channel_id,
            )
        )
        if channel is None:
            channel = Channel(user_id=user_id, platform=platform, channel_id=channel_id, channel_name=channel_name)
            self._session.add(channel)
        channel.channel_name = channel_name
        channel.channel_image = channel_image
        channel.access_token = access_token
        channel.refresh_token = refresh_token
        channel.expires_at = expires_at
        channel.status = Status.ACTIVE
        self._session.flush()
        return channel


class PostRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def get(self, post_id: str) -> Optional[Post]:
        return self._session.get(Post, post_id, populate_existing=True)

    def require(self, post_id: str) -> Post:
        post = self.get(post_id)
        if post is None:
            raise PostNotFound(f"Post not found: {post_id}")
        return post

    def add(self, post: Post) -> Post:
        self._session.add(post)
        self._session.flush()
        return post

    def list_sweep_candidates(self, *, now: datetime, limit: Optional[int] = None) -> List[Post]:
        """Due scheduled posts plus posts left in processing, by scheduled_at then id.

        Processing posts re-enter even when soft-deleted; in-flight work is finished, not dropped.
        """

        due = and_(
            Post.status == Status.ACTIVE,
            Post.process_status == PostStatus.SCHEDULED,
            Post.scheduled_at <= now,
        )
        statement = (
            select(Post)
            .where(or_(due, Post.process_status == PostStatus.PROCESSING))
            .order_by(Post.scheduled_at.asc(), Post.id.asc())
        )
        if limit is not None:
            statement = statement.limit(max(1, limit))
        return list(self._session.scalars(statement).all())

    def compare_and_set_status(
        self,
        post_id: str,
        *,
        expected: Sequence[PostStatus],
        target: PostStatus,
        now: datetime,
        extra: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Move a post to `target` only if it is still in one of `expected`."""

        values: Dict[str, Any] = {"process_status": target, "updated_at": now}
        if extra:
            values.update(extra)
        result = self._session.execute(
            update(Post)
            .where(Post.id == post_id, Post.process_status.in_(list(expected)))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def update_engagement(self, post_id: str, *, views: int, likes: int, comments: int) -> Post:
        post = self.require(post_id)
        post.views = views
        post.likes = likes
        post.comments = comments
        post.updated_at = utc_now()
        self._session.flush()
        return post


class PostChannelDeliveryRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def list_for_post(self, post_id: str) -> List[PostChannelDelivery]:
        statement = (
            select(PostChannelDelivery)
            .where(PostChannelDelivery.post_id == post_id)
            .order_by(PostChannelDelivery.platform.asc(), PostChannelDelivery.channel_id.asc())
        )
        return list(self._session.scalars(statement).all())

    def create_for_channels(self, post_id: str, channels: Iterable[Channel], *, now: datetime) -> List[PostChannelDelivery]:
        deliveries = [
            PostChannelDelivery(
                post_id=post_id,
                channel_id=channel.id,
                platform=channel.platform,
                status=DELIVERY_STATUS_PENDING,
                attempts=0,
                created_at=now,
                updated_at=now,
            )
            for channel in channels
        ]
        self._session.add_all(deliveries)
        self._session.flush()
        return deliveries
