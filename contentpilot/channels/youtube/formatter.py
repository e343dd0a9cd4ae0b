"""YouTube formatter (upload metadata)."""

from __future__ import annotations

from contentpilot.channels.base import ChannelPayload
from contentpilot.domain.enums import VideoType
from contentpilot.storage.models import Post


SHORTS_TAG = "Shorts"
SHORTS_HASHTAG = "#Shorts"


class YouTubeFormatter:
    platform = "youtube"

    def __init__(self, *, category_id: str = "22") -> None:
        self._category_id = category_id

    def format(self, post: Post) -> ChannelPayload:
        description = post.description or ""
        tags = list(post.tags or [])
        if post.video_type == VideoType.SHORTS:
            if SHORTS_TAG not in tags:
                tags.append(SHORTS_TAG)
            if SHORTS_HASHTAG not in description:
                description = f"{description}\n\n{SHORTS_HASHTAG}"
        return ChannelPayload(
            platform=self.platform,
            title=post.title,
            description=description,
            tags=tags,
            video_url=(post.video_url or "").strip() or None,
            thumbnail_url=post.thumbnail_url,
            metadata={
                "snippet": {
                    "title": post.title,
                    "description": description,
                    "tags": tags,
                    "categoryId": self._category_id,
                },
                "status": {
                    "privacyStatus": "public",
                    "selfDeclaredMadeForKids": False,
                },
            },
        )
