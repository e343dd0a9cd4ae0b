"""Service providers for request handlers; overridden in tests."""

from __future__ import annotations

from functools import lru_cache

from contentpilot.billing.cycle import BillingCycleManager
from contentpilot.orchestrator.manager import build_billing_manager, build_usage_meter
from contentpilot.usage.meter import UsageMeter


@lru_cache(maxsize=1)
def _billing_manager() -> BillingCycleManager:
    return build_billing_manager()


@lru_cache(maxsize=1)
def _usage_meter() -> UsageMeter:
    return build_usage_meter()


def get_billing_manager() -> BillingCycleManager:
    return _billing_manager()


def get_usage_meter() -> UsageMeter:
    return _usage_meter()
