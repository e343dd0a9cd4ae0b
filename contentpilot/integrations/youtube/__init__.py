"""YouTube Data API integrations."""

from contentpilot.integrations.youtube.client import YouTubeApiError, YouTubeClient, get_youtube_client

__all__ = [
    "YouTubeApiError",
    "YouTubeClient",
    "get_youtube_client",
]
