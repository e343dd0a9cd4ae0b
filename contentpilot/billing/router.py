"""Billing API routes."""

from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, Response, status
from sqlalchemy.orm import Session

from contentpilot.api.dependencies import get_billing_manager
from contentpilot.auth.dependencies import require_admin, require_caller
from contentpilot.auth.jwt import AuthContext
from contentpilot.billing.cycle import BillingCycleManager
from contentpilot.billing.plans import delete_plan, list_active_plans, sync_plan_catalog
from contentpilot.schemas.billing import (
    PlanSyncResponse,
    PricingPlanHistoryResponse,
    PricingPlanResponse,
    SubscribeRequest,
    SubscriptionResponse,
)
from contentpilot.storage.db import get_session
from contentpilot.storage.repositories import PricingPlanRepository, UserRepository


router = APIRouter(prefix="/billing", tags=["billing"])


@router.get("/plans", response_model=List[PricingPlanResponse])
def list_plans(session: Session = Depends(get_session)) -> List[PricingPlanResponse]:
    return [PricingPlanResponse.model_validate(plan) for plan in list_active_plans(session)]


@router.post("/plans/sync", response_model=PlanSyncResponse)
def sync_plans(
    auth: AuthContext = Depends(require_admin),
    session: Session = Depends(get_session),
) -> PlanSyncResponse:
    result = sync_plan_catalog(session)
    return PlanSyncResponse(created=result.created, updated=result.updated)


@router.delete("/plans/{plan_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_plan(
    plan_id: str,
    auth: AuthContext = Depends(require_admin),
    session: Session = Depends(get_session),
) -> Response:
    delete_plan(session, plan_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/subscribe", response_model=PricingPlanHistoryResponse, status_code=status.HTTP_201_CREATED)
def subscribe(
    payload: SubscribeRequest,
    auth: AuthContext = Depends(require_caller),
    manager: BillingCycleManager = Depends(get_billing_manager),
) -> PricingPlanHistoryResponse:
    history = manager.subscribe(
        auth.user_id,
        payload.plan_id,
        payload.payment_ref,
        payment_method=payload.payment_method,
    )
    return PricingPlanHistoryResponse.model_validate(history)


@router.post("/cancel", response_model=PricingPlanHistoryResponse)
def cancel(
    auth: AuthContext = Depends(require_caller),
    manager: BillingCycleManager = Depends(get_billing_manager),
) -> PricingPlanHistoryResponse:
    return PricingPlanHistoryResponse.model_validate(manager.cancel(auth.user_id))


@router.get("/subscription", response_model=SubscriptionResponse)
def get_subscription(
    auth: AuthContext = Depends(require_caller),
    manager: BillingCycleManager = Depends(get_billing_manager),
    session: Session = Depends(get_session),
) -> SubscriptionResponse:
    state = manager.subscription_state(auth.user_id)
    current = manager.current_subscription(auth.user_id)
    user = UserRepository(session).require(auth.user_id)
    plan = PricingPlanRepository(session).plan_for_user(user)
    return SubscriptionResponse(
        user_id=auth.user_id,
        state=state,
        plan=PricingPlanResponse.model_validate(plan) if plan is not None else None,
        current=PricingPlanHistoryResponse.model_validate(current) if current is not None else None,
    )


@router.get("/history", response_model=List[PricingPlanHistoryResponse])
def list_history(
    auth: AuthContext = Depends(require_caller),
    manager: BillingCycleManager = Depends(get_billing_manager),
) -> List[PricingPlanHistoryResponse]:
    return [PricingPlanHistoryResponse.model_validate(row) for row in manager.history(auth.user_id)]
