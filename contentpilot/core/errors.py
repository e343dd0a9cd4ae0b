"""Domain error taxonomy shared by quota, billing, usage and publishing."""

from __future__ import annotations

from typing import Any, Dict, Optional


class ContentPilotError(RuntimeError):
    """Base error. `code` is stable for API clients, `status_code` maps to HTTP."""

    code = "contentpilot_error"
    status_code = 400

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None) -> None:
        self.message = message
        self.details = dict(details or {})
        super().__init__(message)


class UserNotFound(ContentPilotError, LookupError):
    code = "user_not_found"
    status_code = 404


class InsufficientQuota(ContentPilotError):
    """Raised when a reservation would push a used counter past its limit."""

    code = "insufficient_quota"
    status_code = 402

    def __init__(self, *, user_id: str, dimension: str, requested: int, used: int, limit: int) -> None:
        self.user_id = user_id
        self.dimension = dimension
        self.requested = requested
        self.used = used
        self.limit = limit
        super().__init__(
            f"Insufficient {dimension} for user={user_id} (used={used}, requested={requested}, limit={limit})",
            details={
                "dimension": dimension,
                "requested": requested,
                "used": used,
                "limit": limit,
                "remaining": max(limit - used, 0),
            },
        )


class QuotaInvariantViolation(ContentPilotError):
    code = "quota_invariant_violation"
    status_code = 409


class PlanNotFound(ContentPilotError, LookupError):
    code = "plan_not_found"
    status_code = 404


class PlanUnavailable(ContentPilotError):
    """Inactive plans accept no new subscribers."""

    code = "plan_unavailable"
    status_code = 409


class PlanInUse(ContentPilotError):
    code = "plan_in_use"
    status_code = 409


class PaymentRejected(ContentPilotError):
    code = "payment_rejected"
    status_code = 402

    def __init__(self, message: str, *, history_id: Optional[str] = None) -> None:
        self.history_id = history_id
        super().__init__(message, details={"history_id": history_id})


class NoActiveSubscription(ContentPilotError, LookupError):
    code = "no_active_subscription"
    status_code = 404


class BillingOperationInProgress(ContentPilotError):
    code = "billing_operation_in_progress"
    status_code = 409


class GenerationNotFound(ContentPilotError, LookupError):
    code = "generation_not_found"
    status_code = 404


class AlreadySettled(ContentPilotError):
    code = "already_settled"
    status_code = 409


class PostNotFound(ContentPilotError, LookupError):
    code = "post_not_found"
    status_code = 404


class InvalidPostTransition(ContentPilotError):
    code = "invalid_post_transition"
    status_code = 409


class PublicationInFlight(InvalidPostTransition):
    """Cancellation is refused once a post is being published."""

    code = "publication_in_flight"
    status_code = 409


class ChannelPublishError(ContentPilotError):
    code = "channel_publish_error"
    status_code = 502


class RetryableChannelError(ChannelPublishError):
    code = "retryable_channel_error"


class PermanentChannelError(ChannelPublishError):
    code = "permanent_channel_error"
