"""YouTube publisher backed by the YouTube Data API integration."""

from __future__ import annotations

from datetime import datetime
from typing import Callable, Optional
from urllib.parse import parse_qs, urlparse

from contentpilot.channels.base import ChannelPublishResult, token_expired
from contentpilot.channels.youtube.formatter import YouTubeFormatter
from contentpilot.core.config import get_settings
from contentpilot.core.errors import PermanentChannelError, RetryableChannelError
from contentpilot.core.timeutil import utc_now
from contentpilot.integrations.youtube import YouTubeApiError, YouTubeClient, get_youtube_client
from contentpilot.storage.models import Channel, Post


YOUTUBE_HOSTS = ("youtube.com", "youtu.be")


def youtube_video_id(video_url: str) -> Optional[str]:
    """Return the video id when `video_url` already points at YouTube, else None."""

    parsed = urlparse(video_url.strip())
    host = (parsed.hostname or "").lower()
    if not any(host == name or host.endswith(f".{name}") for name in YOUTUBE_HOSTS):
        return None
    if host.endswith("youtu.be"):
        return parsed.path.strip("/") or ""
    if parsed.path.startswith("/shorts/"):
        return parsed.path[len("/shorts/"):].strip("/")
    return (parse_qs(parsed.query).get("v") or [""])[0]


class YouTubePublisher:
    platform = "youtube"

    def __init__(
        self,
        *,
        client: Optional[YouTubeClient] = None,
        formatter: Optional[YouTubeFormatter] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._client = client
        self._formatter = formatter or YouTubeFormatter(category_id=get_settings().youtube_category_id)
        self._clock = clock

    def _resolve_client(self) -> YouTubeClient:
        if self._client is not None:
            return self._client
        return get_youtube_client()

    def publish(self, post: Post, channel: Channel) -> ChannelPublishResult:
        payload = self._formatter.format(post)
        if not payload.video_url:
            raise PermanentChannelError("youtube_video_url_missing")

        existing_id = youtube_video_id(payload.video_url)
        if existing_id is not None:
            return ChannelPublishResult(
                platform=self.platform,
                external_id=existing_id or None,
                message="youtube_video_already_hosted",
                payload={"video_url": payload.video_url},
            )

        if not (channel.access_token or "").strip():
            raise PermanentChannelError("youtube_access_token_missing")
        if token_expired(channel, now=self._clock()):
            # Token refresh belongs to the identity collaborator; try again next sweep.
            raise RetryableChannelError("youtube_access_token_expired")

        client = self._resolve_client()
        try:
            content, content_type = client.download_video(payload.video_url)
            response = client.upload_video(
                access_token=channel.access_token,
                metadata=payload.metadata,
                content=content,
                content_type=content_type,
            )
        except YouTubeApiError as exc:
            if exc.retryable:
                raise RetryableChannelError(str(exc), details={"status_code": exc.status_code}) from exc
            raise PermanentChannelError(str(exc), details={"status_code": exc.status_code}) from exc

        video_id = str(response.get("id") or "").strip()
        if not video_id:
            raise RetryableChannelError("youtube_upload_missing_video_id")
        return ChannelPublishResult(
            platform=self.platform,
            external_id=video_id,
            message="YouTube published",
            payload={"video_url": f"https://www.youtube.com/watch?v={video_id}"},
        )
