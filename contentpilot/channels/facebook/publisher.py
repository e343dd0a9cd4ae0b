"""Facebook page publisher backed by Meta Graph API integration."""

from __future__ import annotations

from datetime import datetime
from typing import Callable, Optional

from contentpilot.channels.base import ChannelPublishResult, token_expired
from contentpilot.channels.facebook.formatter import FacebookFormatter
from contentpilot.core.errors import PermanentChannelError, RetryableChannelError
from contentpilot.core.timeutil import utc_now
from contentpilot.integrations.facebook import (
    FacebookGraphClient,
    FacebookGraphError,
    get_facebook_graph_client,
)
from contentpilot.storage.models import Channel, Post


class FacebookPublisher:
    platform = "facebook"

    def __init__(
        self,
        *,
        graph_client: Optional[FacebookGraphClient] = None,
        formatter: Optional[FacebookFormatter] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._graph_client = graph_client
        self._formatter = formatter or FacebookFormatter()
        self._clock = clock

    def _resolve_client(self) -> FacebookGraphClient:
        if self._graph_client is not None:
            return self._graph_client
        return get_facebook_graph_client()

    def publish(self, post: Post, channel: Channel) -> ChannelPublishResult:
        payload = self._formatter.format(post)
        if not payload.video_url:
            raise PermanentChannelError("facebook_video_url_missing")
        if not (channel.access_token or "").strip():
            raise PermanentChannelError("facebook_access_token_missing")
        if token_expired(channel, now=self._clock()):
            raise RetryableChannelError("facebook_access_token_expired")

        try:
            response = self._resolve_client().publish_video(
                page_id=channel.channel_id,
                access_token=channel.access_token,
                file_url=payload.video_url,
                title=payload.title,
                description=payload.description,
            )
        except FacebookGraphError as exc:
            if exc.retryable:
                raise RetryableChannelError(str(exc), details={"status_code": exc.status_code}) from exc
            raise PermanentChannelError(str(exc), details={"status_code": exc.status_code}) from exc

        external_id = str(response.get("id") or "").strip() or None
        return ChannelPublishResult(
            platform=self.platform,
            external_id=external_id,
            message="Facebook published",
            payload=response,
        )
