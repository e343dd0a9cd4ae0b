"""Pydantic schemas for usage metering endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from contentpilot.domain.enums import GenerateStatus


class AuthorizeRequest(BaseModel):
    estimated_cost: int = Field(gt=0)
    input: str = ""


class AuthorizeResponse(BaseModel):
    history_id: str
    credit: int
    credit_used: int
    credit_limit: int


class SettleRequest(BaseModel):
    success: bool
    output: Optional[str] = None
    error_message: Optional[str] = Field(default=None, max_length=255)

    @model_validator(mode="after")
    def _require_output_or_error(self) -> "SettleRequest":
        if self.success and self.output is None:
            raise ValueError("output is required when success=true")
        return self


class GenerateHistoryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    input: str
    output: Optional[str] = None
    credit: int
    status: Optional[GenerateStatus] = None
    error_message: Optional[str] = None
    created_at: datetime
    settled_at: Optional[datetime] = None


class UsageStatsResponse(BaseModel):
    total: int
    successful: int
    failed: int
    pending: int
    credits_used: int


class QuotaBalanceResponse(BaseModel):
    credit: int
    credit_used: int
    credit_remaining: int
    capacity: int
    capacity_used: int
    capacity_remaining: int
    last_reset_date: Optional[datetime] = None
