"""Facebook Graph API integrations."""

from contentpilot.integrations.facebook.graph_client import (
    FacebookGraphClient,
    FacebookGraphError,
    get_facebook_graph_client,
)

__all__ = [
    "FacebookGraphClient",
    "FacebookGraphError",
    "get_facebook_graph_client",
]
