"""Outbound notification events. Delivery itself belongs to an external consumer."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Protocol

from contentpilot.core.logger import get_logger
from contentpilot.core.timeutil import utc_now


RENEWAL_FAILED = "renewal_failed"
SUBSCRIPTION_EXPIRED = "subscription_expired"
PUBLISH_FAILED = "publish_failed"
QUOTA_EXHAUSTED = "quota_exhausted"


@dataclass(frozen=True)
class NotificationEvent:
    kind: str
    user_id: str
    payload: Dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=utc_now)


class NotificationSink(Protocol):
    def notify(self, event: NotificationEvent) -> None:
        raise NotImplementedError


class LogNotificationSink:
    """Writes events to the structured log for a downstream shipper to pick up."""

    def __init__(self) -> None:
        self._logger = get_logger("contentpilot.notifications")

    def notify(self, event: NotificationEvent) -> None:
        self._logger.info(
            "notification_emitted",
            kind=event.kind,
            user_id=event.user_id,
            occurred_at=event.occurred_at.isoformat(),
            payload=event.payload,
        )


class RecordingNotificationSink:
    """Keeps events in memory; used by tests and local runs."""

    def __init__(self) -> None:
        self.events: List[NotificationEvent] = []

    def notify(self, event: NotificationEvent) -> None:
        self.events.append(event)

    def kinds(self) -> List[str]:
        return [event.kind for event in self.events]


def safe_notify(sink: NotificationSink, event: NotificationEvent) -> None:
    """Notify without letting a sink failure undo the state change that raised the event."""

    try:
        sink.notify(event)
    except Exception as exc:
        get_logger("contentpilot.notifications").warning(
            "notification_failed",
            kind=event.kind,
            user_id=event.user_id,
            error=str(exc),
        )
