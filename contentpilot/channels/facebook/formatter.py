"""Facebook formatter (page video description with hashtags)."""

from __future__ import annotations

from contentpilot.channels.base import ChannelPayload
from contentpilot.storage.models import Post


class FacebookFormatter:
    platform = "facebook"

    def format(self, post: Post) -> ChannelPayload:
        description = (post.description or "").strip()
        tags = list(post.tags or [])
        hashtags = [f"#{str(tag).strip().lstrip('#').replace(' ', '')}" for tag in tags if str(tag).strip()]
        if hashtags:
            description = f"{description}\n\n{' '.join(hashtags)}".strip()
        return ChannelPayload(
            platform=self.platform,
            title=post.title,
            description=description,
            tags=tags,
            video_url=(post.video_url or "").strip() or None,
            thumbnail_url=post.thumbnail_url,
        )
