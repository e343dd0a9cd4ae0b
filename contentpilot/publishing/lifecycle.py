"""Owner-initiated post transitions: schedule, cancel, engagement updates."""

from __future__ import annotations

from datetime import datetime
from typing import Dict, FrozenSet, Optional

from sqlalchemy.orm import Session

from contentpilot.core.errors import InvalidPostTransition, PostNotFound, PublicationInFlight
from contentpilot.core.logger import get_logger
from contentpilot.core.timeutil import ensure_utc, utc_now
from contentpilot.domain.enums import PostStatus, Status
from contentpilot.storage.models import Post
from contentpilot.storage.repositories import PostRepository


logger = get_logger("contentpilot.publishing.lifecycle")

# processing -> published is reserved for the scheduler.
ALLOWED_TRANSITIONS: Dict[PostStatus, FrozenSet[PostStatus]] = {
    PostStatus.DRAFT: frozenset({PostStatus.DRAFT, PostStatus.SCHEDULED}),
    PostStatus.SCHEDULED: frozenset({PostStatus.SCHEDULED, PostStatus.PROCESSING, PostStatus.DRAFT}),
    PostStatus.PROCESSING: frozenset({PostStatus.PUBLISHED}),
    PostStatus.PUBLISHED: frozenset(),
}


def can_transition(current: PostStatus, target: PostStatus) -> bool:
    return PostStatus(target) in ALLOWED_TRANSITIONS[PostStatus(current)]


def _owned_post(repository: PostRepository, post_id: str, user_id: Optional[str]) -> Post:
    post = repository.require(post_id)
    if user_id is not None and post.user_id != user_id:
        raise PostNotFound(f"Post not found: {post_id}")
    return post


def _refused(post: Post, target: PostStatus) -> InvalidPostTransition:
    details = {"post_id": post.id, "from": post.process_status.value, "to": target.value}
    if post.process_status == PostStatus.PROCESSING:
        return PublicationInFlight(f"Post {post.id} is being published", details=details)
    return InvalidPostTransition(
        f"Post {post.id} cannot move from {post.process_status.value} to {target.value}",
        details=details,
    )


def schedule_post(
    session: Session,
    *,
    post_id: str,
    scheduled_at: datetime,
    user_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Post:
    timestamp = ensure_utc(now) or utc_now()
    repository = PostRepository(session)
    post = _owned_post(repository, post_id, user_id)
    if post.status != Status.ACTIVE:
        raise InvalidPostTransition(f"Post {post_id} is inactive", details={"post_id": post_id})

    try:
        moved = repository.compare_and_set_status(
            post_id,
            expected=[PostStatus.DRAFT, PostStatus.SCHEDULED],
            target=PostStatus.SCHEDULED,
            now=timestamp,
            extra={"scheduled_at": ensure_utc(scheduled_at)},
        )
        if not moved:
            session.rollback()
            raise _refused(repository.require(post_id), PostStatus.SCHEDULED)
        session.commit()
    except InvalidPostTransition:
        raise
    except Exception:
        session.rollback()
        raise

    logger.info("post_scheduled", post_id=post_id, scheduled_at=ensure_utc(scheduled_at).isoformat())
    return repository.require(post_id)


def cancel_post(
    session: Session,
    *,
    post_id: str,
    user_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Post:
    """Return a draft or scheduled post to draft. In-flight or published posts are refused."""

    timestamp = ensure_utc(now) or utc_now()
    repository = PostRepository(session)
    _owned_post(repository, post_id, user_id)

    try:
        moved = repository.compare_and_set_status(
            post_id,
            expected=[PostStatus.DRAFT, PostStatus.SCHEDULED],
            target=PostStatus.DRAFT,
            now=timestamp,
            extra={"scheduled_at": None},
        )
        if not moved:
            session.rollback()
            raise _refused(repository.require(post_id), PostStatus.DRAFT)
        session.commit()
    except InvalidPostTransition:
        raise
    except Exception:
        session.rollback()
        raise

    logger.info("post_schedule_cancelled", post_id=post_id)
    return repository.require(post_id)


def record_engagement(session: Session, *, post_id: str, views: int, likes: int, comments: int) -> Post:
    if min(views, likes, comments) < 0:
        raise ValueError("Engagement counters must be zero or positive")
    repository = PostRepository(session)
    try:
        post = repository.update_engagement(post_id, views=views, likes=likes, comments=comments)
        session.commit()
    except Exception:
        session.rollback()
        raise
    return post
