"""Pydantic schemas for billing endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from contentpilot.domain.enums import BillingCycle, PricingHistoryStatus, Status, SubscriptionState


class PricingPlanResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    description: Optional[str] = None
    price: int
    currency: str
    billing_cycle: BillingCycle
    credit: int
    capacity: int
    features: List[str]
    status: Status


class SubscribeRequest(BaseModel):
    plan_id: str = Field(min_length=1)
    payment_ref: Optional[str] = None
    payment_method: Optional[str] = Field(default=None, max_length=64)


class PricingPlanHistoryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    plan_id: str
    price: int
    currency: str
    status: PricingHistoryStatus
    error_message: Optional[str] = None
    start_date: datetime
    end_date: Optional[datetime] = None
    expire_at: Optional[datetime] = None
    payment_method: Optional[str] = None
    transaction_id: Optional[str] = None


class SubscriptionResponse(BaseModel):
    user_id: str
    state: SubscriptionState
    plan: Optional[PricingPlanResponse] = None
    current: Optional[PricingPlanHistoryResponse] = None


class PlanSyncResponse(BaseModel):
    created: int
    updated: int
