"""Channel publishers and payload contracts."""

from contentpilot.channels.base import ChannelPayload, ChannelPublisher, ChannelPublishResult

__all__ = ["ChannelPayload", "ChannelPublisher", "ChannelPublishResult", "default_publishers"]


def default_publishers():
    """Publisher registry keyed by `Channel.platform`."""

    from contentpilot.channels.facebook import FacebookPublisher
    from contentpilot.channels.youtube import YouTubePublisher

    return {
        YouTubePublisher.platform: YouTubePublisher(),
        FacebookPublisher.platform: FacebookPublisher(),
    }
