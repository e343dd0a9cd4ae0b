"""Facebook channel adapter."""

from contentpilot.channels.facebook.formatter import FacebookFormatter
from contentpilot.channels.facebook.publisher import FacebookPublisher

__all__ = ["FacebookFormatter", "FacebookPublisher"]
