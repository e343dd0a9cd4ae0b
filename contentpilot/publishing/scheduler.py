"""Publish sweep: moves due posts through processing and fans them out to channel publishers."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy.orm import Session, sessionmaker

from contentpilot.channels.base import ChannelPublisher
from contentpilot.core.errors import PermanentChannelError, RetryableChannelError
from contentpilot.core.logger import get_logger
from contentpilot.core.metrics import record_channel_delivery, record_post_published
from contentpilot.core.observability import capture_exception, sentry_scope
from contentpilot.core.timeutil import ensure_utc, utc_now
from contentpilot.domain.enums import (
    DELIVERY_STATUS_FAILED,
    DELIVERY_STATUS_PENDING,
    DELIVERY_STATUS_PUBLISHED,
    DELIVERY_STATUS_PUBLISHING,
    FINAL_DELIVERY_STATUSES,
    PostStatus,
    Status,
)
from contentpilot.notifications.sink import (
    PUBLISH_FAILED,
    LogNotificationSink,
    NotificationEvent,
    NotificationSink,
    safe_notify,
)
from contentpilot.orchestrator.locks import PUBLISH_SCOPE, ResourceLockManager
from contentpilot.orchestrator.pool import map_bounded
from contentpilot.storage.models import Channel, Post, PostChannelDelivery
from contentpilot.storage.repositories import (
    ChannelRepository,
    PostChannelDeliveryRepository,
    PostRepository,
)


logger = get_logger("contentpilot.publishing.scheduler")

RUN_PUBLISHED = "published"
RUN_IN_PROGRESS = "processing"
RUN_SKIPPED = "skipped"
RUN_SKIPPED_LOCKED = "skipped_locked"
RUN_FAILED = "failed"


@dataclass(frozen=True)
class PostRunSummary:
    post_id: str
    status: str
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PublishSweepResult:
    total_due: int
    published: int
    in_progress: int
    skipped: int
    skipped_locked: int
    failed: int
    runs: List[PostRunSummary]


class PublishScheduler:
    """Drive due posts scheduled -> processing -> published with bounded per-channel retries."""

    def __init__(
        self,
        *,
        session_factory: sessionmaker,
        publishers: Mapping[str, ChannelPublisher],
        lock_manager: ResourceLockManager | None = None,
        notification_sink: NotificationSink | None = None,
        max_channel_attempts: int = 3,
        delivery_lease_seconds: int = 900,
        max_workers: int = 5,
        batch_limit: int | None = 100,
    ) -> None:
        if max_channel_attempts <= 0:
            raise ValueError("max_channel_attempts must be positive")
        if delivery_lease_seconds <= 0:
            raise ValueError("delivery_lease_seconds must be positive")
        self._session_factory = session_factory
        self._publishers = dict(publishers)
        self._lock_manager = lock_manager
        self._sink = notification_sink or LogNotificationSink()
        self._max_channel_attempts = max_channel_attempts
        self._delivery_lease = timedelta(seconds=delivery_lease_seconds)
        self._max_workers = max_workers
        self._batch_limit = batch_limit

    def list_due_post_ids(self, *, now: datetime) -> List[str]:
        with self._session_factory() as session:
            posts = PostRepository(session).list_sweep_candidates(now=now, limit=self._batch_limit)
            return [post.id for post in posts]

    def run_once(self, *, now: Optional[datetime] = None) -> PublishSweepResult:
        timestamp = ensure_utc(now) or utc_now()
        post_ids = self.list_due_post_ids(now=timestamp)

        def _process(post_id: str) -> PostRunSummary:
            lock = None
            if self._lock_manager is not None:
                lock = self._lock_manager.acquire(PUBLISH_SCOPE, post_id)
                if lock is None:
                    logger.info("publish_sweep_skipped_locked", post_id=post_id)
                    return PostRunSummary(post_id=post_id, status=RUN_SKIPPED_LOCKED)
            try:
                with sentry_scope(sweep="publish"):
                    return self.process_post(post_id, now=timestamp)
            except Exception as exc:
                capture_exception(exc)
                logger.error("publish_sweep_post_failed", post_id=post_id, error=str(exc))
                return PostRunSummary(post_id=post_id, status=RUN_FAILED, details={"error": str(exc)})
            finally:
                if lock is not None:
                    lock.release()

        runs = map_bounded(_process, post_ids, max_workers=self._max_workers)
        statuses = [run.status for run in runs]
        result = PublishSweepResult(
            total_due=len(post_ids),
            published=statuses.count(RUN_PUBLISHED),
            in_progress=statuses.count(RUN_IN_PROGRESS),
            skipped=statuses.count(RUN_SKIPPED),
            skipped_locked=statuses.count(RUN_SKIPPED_LOCKED),
            failed=statuses.count(RUN_FAILED),
            runs=runs,
        )
        logger.info(
            "publish_sweep_completed",
            total_due=result.total_due,
            published=result.published,
            in_progress=result.in_progress,
            skipped=result.skipped,
            skipped_locked=result.skipped_locked,
            failed=result.failed,
        )
        return result

    def process_post(self, post_id: str, *, now: Optional[datetime] = None) -> PostRunSummary:
        timestamp = ensure_utc(now) or utc_now()
        with self._session_factory() as session:
            posts = PostRepository(session)
            post = posts.get(post_id)
            if post is None:
                return PostRunSummary(post_id=post_id, status=RUN_SKIPPED, details={"reason": "post_missing"})
            if post.status != Status.ACTIVE and post.process_status != PostStatus.PROCESSING:
                return PostRunSummary(post_id=post_id, status=RUN_SKIPPED, details={"reason": "post_inactive"})

            if post.process_status == PostStatus.SCHEDULED:
                skipped = self._enter_processing(session, post, timestamp)
                if skipped is not None:
                    return skipped
            elif post.process_status != PostStatus.PROCESSING:
                return PostRunSummary(
                    post_id=post_id,
                    status=RUN_SKIPPED,
                    details={"reason": "not_due", "process_status": post.process_status.value},
                )

            deliveries = PostChannelDeliveryRepository(session).list_for_post(post_id)
            for delivery in deliveries:
                if delivery.status in FINAL_DELIVERY_STATUSES:
                    continue
                if delivery.status == DELIVERY_STATUS_PUBLISHING:
                    self._resolve_in_flight(session, post, delivery, timestamp)
                    continue
                self._attempt_delivery(session, post, delivery, timestamp)

            counts = {
                DELIVERY_STATUS_PUBLISHED: 0,
                DELIVERY_STATUS_FAILED: 0,
                DELIVERY_STATUS_PENDING: 0,
                DELIVERY_STATUS_PUBLISHING: 0,
            }
            for delivery in deliveries:
                counts[delivery.status] = counts.get(delivery.status, 0) + 1
            details: Dict[str, Any] = {
                "channels": len(deliveries),
                "published_channels": counts[DELIVERY_STATUS_PUBLISHED],
                "failed_channels": counts[DELIVERY_STATUS_FAILED],
                "pending_channels": counts[DELIVERY_STATUS_PENDING],
                "in_flight_channels": counts[DELIVERY_STATUS_PUBLISHING],
            }
            if counts[DELIVERY_STATUS_PENDING] or counts[DELIVERY_STATUS_PUBLISHING]:
                return PostRunSummary(post_id=post_id, status=RUN_IN_PROGRESS, details=details)

            return self._finish(session, post_id, timestamp, details)

    def _enter_processing(self, session: Session, post: Post, timestamp: datetime) -> Optional[PostRunSummary]:
        """Snapshot the post's delivery targets and commit `processing` before any external call."""

        posts = PostRepository(session)
        scheduled_at = ensure_utc(post.scheduled_at)
        if scheduled_at is None or scheduled_at > timestamp:
            return PostRunSummary(post_id=post.id, status=RUN_SKIPPED, details={"reason": "not_due"})

        if not (post.video_url or "").strip():
            try:
                posts.compare_and_set_status(
                    post.id,
                    expected=[PostStatus.SCHEDULED],
                    target=PostStatus.DRAFT,
                    now=timestamp,
                )
                session.commit()
            except Exception:
                session.rollback()
                raise
            logger.warning("publish_post_reverted_to_draft", post_id=post.id, reason="no_media")
            return PostRunSummary(post_id=post.id, status=RUN_SKIPPED, details={"reason": "no_media"})

        channels = self._eligible_channels(session, post)
        if not channels:
            logger.info("publish_post_without_channels", post_id=post.id, user_id=post.user_id)
            return PostRunSummary(post_id=post.id, status=RUN_SKIPPED, details={"reason": "no_eligible_channels"})

        try:
            moved = posts.compare_and_set_status(
                post.id,
                expected=[PostStatus.SCHEDULED],
                target=PostStatus.PROCESSING,
                now=timestamp,
            )
            if not moved:
                session.rollback()
                return PostRunSummary(post_id=post.id, status=RUN_SKIPPED, details={"reason": "state_changed"})
            PostChannelDeliveryRepository(session).create_for_channels(post.id, channels, now=timestamp)
            session.commit()
        except Exception:
            session.rollback()
            raise

        logger.info(
            "publish_post_processing",
            post_id=post.id,
            channels=[channel.platform for channel in channels],
        )
        return None

    def _eligible_channels(self, session: Session, post: Post) -> List[Channel]:
        channels = ChannelRepository(session).list_active_for_user(post.user_id, platforms=self._publishers.keys())
        if post.channel_id is not None:
            channels = [channel for channel in channels if channel.id == post.channel_id]
        return channels

    def _attempt_delivery(
        self,
        session: Session,
        post: Post,
        delivery: PostChannelDelivery,
        timestamp: datetime,
    ) -> None:
        channel = session.get(Channel, delivery.channel_id) if delivery.channel_id else None
        publisher = self._publishers.get(delivery.platform)
        if channel is None or publisher is None or channel.status != Status.ACTIVE:
            self._fail_delivery(
                session,
                post,
                delivery,
                error="channel_unavailable",
                permanent=True,
                timestamp=timestamp,
            )
            return

        # Committed before calling out; a crash after this point is never re-published.
        delivery.status = DELIVERY_STATUS_PUBLISHING
        delivery.started_at = timestamp
        delivery.attempts = int(delivery.attempts or 0) + 1
        delivery.updated_at = timestamp
        try:
            session.commit()
        except Exception:
            session.rollback()
            raise

        try:
            result = publisher.publish(post, channel)
        except PermanentChannelError as exc:
            self._fail_delivery(session, post, delivery, error=str(exc), permanent=True, timestamp=timestamp)
            return
        except Exception as exc:
            if not isinstance(exc, RetryableChannelError):
                capture_exception(exc)
            if delivery.attempts >= self._max_channel_attempts:
                self._fail_delivery(
                    session,
                    post,
                    delivery,
                    error=str(exc),
                    permanent=False,
                    timestamp=timestamp,
                )
                return
            delivery.status = DELIVERY_STATUS_PENDING
            delivery.started_at = None
            delivery.last_error = str(exc)[:255]
            delivery.updated_at = timestamp
            try:
                session.commit()
            except Exception:
                session.rollback()
                raise
            record_channel_delivery(platform=delivery.platform, status="retry")
            logger.warning(
                "publish_channel_retry_scheduled",
                post_id=post.id,
                channel_id=delivery.channel_id,
                platform=delivery.platform,
                attempts=delivery.attempts,
                max_attempts=self._max_channel_attempts,
                error=str(exc),
            )
            return

        delivery.status = DELIVERY_STATUS_PUBLISHED
        delivery.external_id = result.external_id
        delivery.last_error = None
        delivery.updated_at = timestamp
        try:
            session.commit()
        except Exception:
            session.rollback()
            raise
        record_channel_delivery(platform=delivery.platform, status=DELIVERY_STATUS_PUBLISHED)
        logger.info(
            "publish_channel_published",
            post_id=post.id,
            channel_id=delivery.channel_id,
            platform=delivery.platform,
            external_id=result.external_id,
        )

    def _resolve_in_flight(
        self,
        session: Session,
        post: Post,
        delivery: PostChannelDelivery,
        timestamp: datetime,
    ) -> None:
        """An interrupted publish may already be live on the platform, so it is never re-sent."""

        started_at = ensure_utc(delivery.started_at)
        if started_at is not None and started_at + self._delivery_lease > timestamp:
            logger.info(
                "publish_channel_in_flight",
                post_id=post.id,
                channel_id=delivery.channel_id,
                platform=delivery.platform,
            )
            return

        logger.warning(
            "publish_channel_outcome_unknown",
            post_id=post.id,
            channel_id=delivery.channel_id,
            platform=delivery.platform,
            started_at=started_at.isoformat() if started_at else None,
        )
        self._fail_delivery(
            session,
            post,
            delivery,
            error="publish_outcome_unknown",
            permanent=False,
            timestamp=timestamp,
        )

    def _fail_delivery(
        self,
        session: Session,
        post: Post,
        delivery: PostChannelDelivery,
        *,
        error: str,
        permanent: bool,
        timestamp: datetime,
    ) -> None:
        delivery.status = DELIVERY_STATUS_FAILED
        delivery.permanent_failure = permanent
        delivery.last_error = (error or "publish_failed")[:255]
        delivery.updated_at = timestamp
        try:
            session.commit()
        except Exception:
            session.rollback()
            raise

        record_channel_delivery(platform=delivery.platform, status=DELIVERY_STATUS_FAILED)
        logger.warning(
            "publish_channel_failed",
            post_id=post.id,
            channel_id=delivery.channel_id,
            platform=delivery.platform,
            attempts=delivery.attempts,
            permanent=permanent,
            error=error,
        )
        safe_notify(
            self._sink,
            NotificationEvent(
                kind=PUBLISH_FAILED,
                user_id=post.user_id,
                payload={
                    "post_id": post.id,
                    "channel_id": delivery.channel_id,
                    "platform": delivery.platform,
                    "attempts": delivery.attempts,
                    "permanent": permanent,
                    "error": error,
                },
                occurred_at=timestamp,
            ),
        )

    def _finish(self, session: Session, post_id: str, timestamp: datetime, details: Dict[str, Any]) -> PostRunSummary:
        try:
            moved = PostRepository(session).compare_and_set_status(
                post_id,
                expected=[PostStatus.PROCESSING],
                target=PostStatus.PUBLISHED,
                now=timestamp,
                extra={"published_at": timestamp},
            )
            session.commit()
        except Exception:
            session.rollback()
            raise
        if not moved:
            return PostRunSummary(post_id=post_id, status=RUN_SKIPPED, details={"reason": "state_changed"})

        record_post_published()
        logger.info("publish_post_published", post_id=post_id, **details)
        return PostRunSummary(post_id=post_id, status=RUN_PUBLISHED, details=details)
