"""Pydantic schemas for post scheduling endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict

from contentpilot.domain.enums import PostStatus, VideoType


class SchedulePostRequest(BaseModel):
    scheduled_at: datetime


class PostResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    title: str
    video_type: Optional[VideoType] = None
    process_status: PostStatus
    scheduled_at: Optional[datetime] = None
    published_at: Optional[datetime] = None
    tags: List[str]
