"""Post scheduling API routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from contentpilot.auth.dependencies import require_caller
from contentpilot.auth.jwt import AuthContext
from contentpilot.publishing.lifecycle import cancel_post, schedule_post
from contentpilot.schemas.publishing import PostResponse, SchedulePostRequest
from contentpilot.storage.db import get_session


router = APIRouter(prefix="/posts", tags=["posts"])


@router.post("/{post_id}/schedule", response_model=PostResponse)
def schedule(
    post_id: str,
    payload: SchedulePostRequest,
    auth: AuthContext = Depends(require_caller),
    session: Session = Depends(get_session),
) -> PostResponse:
    post = schedule_post(session, post_id=post_id, scheduled_at=payload.scheduled_at, user_id=auth.user_id)
    return PostResponse.model_validate(post)


@router.post("/{post_id}/cancel", response_model=PostResponse)
def cancel(
    post_id: str,
    auth: AuthContext = Depends(require_caller),
    session: Session = Depends(get_session),
) -> PostResponse:
    post = cancel_post(session, post_id=post_id, user_id=auth.user_id)
    return PostResponse.model_validate(post)
