"""Shared channel publisher contracts."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

from contentpilot.core.timeutil import ensure_utc
from contentpilot.storage.models import Channel, Post


@dataclass(frozen=True)
class ChannelPayload:
    """Platform-ready rendering of a post."""

    platform: str
    title: str
    description: str
    tags: List[str] = field(default_factory=list)
    video_url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ChannelPublishResult:
    platform: str
    external_id: Optional[str]
    message: str
    payload: Dict[str, Any] = field(default_factory=dict)


class ChannelPublisher(Protocol):
    """Publishes one post to one linked channel.

    Returns a result on success; raises RetryableChannelError for transient
    failures and PermanentChannelError for failures a retry cannot fix.
    """

    platform: str

    def publish(self, post: Post, channel: Channel) -> ChannelPublishResult:
        raise NotImplementedError


def token_expired(channel: Channel, *, now: datetime) -> bool:
    expires_at = ensure_utc(channel.expires_at)
    return expires_at is not None and expires_at <= now
