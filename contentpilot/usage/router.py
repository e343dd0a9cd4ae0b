"""Usage metering API routes."""

from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from contentpilot.api.dependencies import get_usage_meter
from contentpilot.auth.dependencies import require_caller
from contentpilot.auth.jwt import AuthContext
from contentpilot.domain.enums import GenerateStatus
from contentpilot.schemas.usage import (
    AuthorizeRequest,
    AuthorizeResponse,
    GenerateHistoryResponse,
    QuotaBalanceResponse,
    SettleRequest,
    UsageStatsResponse,
)
from contentpilot.usage.meter import GenerationOutcome, UsageMeter


router = APIRouter(prefix="/usage", tags=["usage"])


@router.post("/authorize", response_model=AuthorizeResponse)
def authorize(
    payload: AuthorizeRequest,
    auth: AuthContext = Depends(require_caller),
    meter: UsageMeter = Depends(get_usage_meter),
) -> AuthorizeResponse:
    authorization = meter.authorize(auth.user_id, payload.estimated_cost, input_payload=payload.input)
    return AuthorizeResponse(
        history_id=authorization.history_id,
        credit=authorization.credit,
        credit_used=authorization.credit_used,
        credit_limit=authorization.credit_limit,
    )


@router.post("/{history_id}/settle", response_model=GenerateHistoryResponse)
def settle(
    history_id: str,
    payload: SettleRequest,
    auth: AuthContext = Depends(require_caller),
    meter: UsageMeter = Depends(get_usage_meter),
) -> GenerateHistoryResponse:
    if payload.success:
        outcome = GenerationOutcome.success(payload.output or "")
    else:
        outcome = GenerationOutcome.failure(payload.error_message or "generation_failed")
    history = meter.settle(history_id, outcome, user_id=auth.user_id)
    return GenerateHistoryResponse.model_validate(history)


@router.get("/history", response_model=List[GenerateHistoryResponse])
def list_history(
    status: Optional[GenerateStatus] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    auth: AuthContext = Depends(require_caller),
    meter: UsageMeter = Depends(get_usage_meter),
) -> List[GenerateHistoryResponse]:
    rows = meter.list_history(auth.user_id, status=status, limit=limit, offset=offset)
    return [GenerateHistoryResponse.model_validate(row) for row in rows]


@router.get("/stats", response_model=UsageStatsResponse)
def stats(
    auth: AuthContext = Depends(require_caller),
    meter: UsageMeter = Depends(get_usage_meter),
) -> UsageStatsResponse:
    result = meter.stats(auth.user_id)
    return UsageStatsResponse(
        total=result.total,
        successful=result.successful,
        failed=result.failed,
        pending=result.pending,
        credits_used=result.credits_used,
    )


@router.get("/balance", response_model=QuotaBalanceResponse)
def balance(
    auth: AuthContext = Depends(require_caller),
    meter: UsageMeter = Depends(get_usage_meter),
) -> QuotaBalanceResponse:
    result = meter.balance(auth.user_id)
    return QuotaBalanceResponse(
        credit=result.credit,
        credit_used=result.credit_used,
        credit_remaining=result.credit_remaining,
        capacity=result.capacity,
        capacity_used=result.capacity_used,
        capacity_remaining=result.capacity_remaining,
        last_reset_date=result.last_reset_date,
    )
