"""Closed value sets persisted as their literal string values."""

from __future__ import annotations

import enum


class Status(str, enum.Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"


class PostStatus(str, enum.Enum):
    DRAFT = "draft"
    SCHEDULED = "scheduled"
    PROCESSING = "processing"
    PUBLISHED = "published"


class PricingHistoryStatus(str, enum.Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    EXPIRED = "EXPIRED"


class GenerateStatus(str, enum.Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class BillingCycle(str, enum.Enum):
    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"


class VideoType(str, enum.Enum):
    VIDEO = "video"
    SHORTS = "shorts"


class QuotaDimension(str, enum.Enum):
    CREDIT = "credit"
    CAPACITY = "capacity"


class SubscriptionState(str, enum.Enum):
    NO_PLAN = "NO_PLAN"
    PENDING_ACTIVATION = "PENDING_ACTIVATION"
    ACTIVE = "ACTIVE"
    RENEWING = "RENEWING"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


DELIVERY_STATUS_PENDING = "pending"
DELIVERY_STATUS_PUBLISHING = "publishing"
DELIVERY_STATUS_PUBLISHED = "published"
DELIVERY_STATUS_FAILED = "failed"
FINAL_DELIVERY_STATUSES = {DELIVERY_STATUS_PUBLISHED, DELIVERY_STATUS_FAILED}

RENEWAL_ATTEMPT_PENDING = "pending"
RENEWAL_ATTEMPT_SUCCEEDED = "succeeded"
RENEWAL_ATTEMPT_FAILED = "failed"
