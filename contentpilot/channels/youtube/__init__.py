"""YouTube channel adapter."""

from contentpilot.channels.youtube.formatter import YouTubeFormatter
from contentpilot.channels.youtube.publisher import YouTubePublisher

__all__ = ["YouTubeFormatter", "YouTubePublisher"]
