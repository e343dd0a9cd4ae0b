"""Wiring for the billing manager, usage meter and publish scheduler from settings."""

from __future__ import annotations

from contentpilot.billing.cycle import BillingCycleManager
from contentpilot.billing.gateway import get_payment_gateway
from contentpilot.channels import default_publishers
from contentpilot.core.config import get_settings
from contentpilot.notifications.sink import LogNotificationSink
from contentpilot.orchestrator.locks import ResourceLockManager
from contentpilot.publishing.scheduler import PublishScheduler
from contentpilot.storage.db import get_session_factory, load_models
from contentpilot.storage.redis_client import get_lock_store
from contentpilot.usage.meter import UsageMeter


def build_billing_manager() -> BillingCycleManager:
    settings = get_settings()
    load_models()
    return BillingCycleManager(
        session_factory=get_session_factory(),
        payment_gateway=get_payment_gateway(),
        lock_manager=ResourceLockManager(get_lock_store(), ttl_seconds=settings.billing_lock_ttl_seconds),
        notification_sink=LogNotificationSink(),
        monthly_cycle_days=settings.monthly_cycle_days,
        yearly_cycle_days=settings.yearly_cycle_days,
        usage_reset_interval_days=settings.usage_reset_interval_days,
        max_renewal_attempts=settings.billing_max_renewal_attempts,
        retry_base_seconds=settings.billing_retry_base_seconds,
        renewal_lease_seconds=settings.billing_renewal_lease_seconds,
        max_workers=settings.billing_sweep_workers,
        batch_limit=settings.billing_sweep_batch_limit,
    )


def build_usage_meter() -> UsageMeter:
    load_models()
    return UsageMeter(session_factory=get_session_factory(), notification_sink=LogNotificationSink())


def build_publish_scheduler() -> PublishScheduler:
    settings = get_settings()
    load_models()
    return PublishScheduler(
        session_factory=get_session_factory(),
        publishers=default_publishers(),
        lock_manager=ResourceLockManager(get_lock_store(), ttl_seconds=settings.publish_lock_ttl_seconds),
        notification_sink=LogNotificationSink(),
        max_channel_attempts=settings.publish_max_channel_attempts,
        delivery_lease_seconds=settings.publish_delivery_lease_seconds,
        max_workers=settings.publish_sweep_workers,
        batch_limit=settings.publish_sweep_batch_limit,
    )
