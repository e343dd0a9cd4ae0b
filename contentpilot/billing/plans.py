"""Pricing plan catalog loading and plan lookups."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import List, Optional, Sequence

import yaml
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from contentpilot.core.config import get_settings
from contentpilot.core.logger import get_logger
from contentpilot.domain.enums import BillingCycle, Status
from contentpilot.storage.models import PricingPlan
from contentpilot.storage.repositories import PricingPlanRepository


logger = get_logger("contentpilot.billing.plans")


class PlanDefinition(BaseModel):
    name: str = Field(min_length=1, max_length=64)
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
    price: int = Field(default=0, ge=0)
    currency: str = "VND"
    credit: int = Field(default=0, ge=0)
    capacity: int = Field(default=0, ge=0)
    description: Optional[str] = None
    features: List[str] = Field(default_factory=list)
    status: Status = Status.ACTIVE


@dataclass(frozen=True)
class PlanSyncResult:
    created: int
    updated: int


def _resolve_plan_path() -> Path:
    settings = get_settings()
    configured = Path(settings.plans_file_path)
    if configured.is_absolute():
        return configured
    return Path.cwd() / configured


def parse_plan_catalog(content: object) -> List[PlanDefinition]:
    if isinstance(content, dict):
        content = content.get("plans", [])
    if not isinstance(content, list):
        raise ValueError("Invalid plans file format")
    definitions = [PlanDefinition.model_validate(entry) for entry in content]

    seen = set()
    for definition in definitions:
        key = (definition.name, definition.billing_cycle)
        if key in seen:
            raise ValueError(f"Duplicate plan in catalog: {definition.name} ({definition.billing_cycle.value})")
        seen.add(key)
    return definitions


@lru_cache(maxsize=1)
def load_plan_catalog() -> tuple[PlanDefinition, ...]:
    plan_path = _resolve_plan_path()
    with plan_path.open("r", encoding="utf-8") as file:
        content = yaml.safe_load(file) or []
    return tuple(parse_plan_catalog(content))


def sync_plan_catalog(session: Session, definitions: Optional[Sequence[PlanDefinition]] = None) -> PlanSyncResult:
    """Upsert catalog plans by (name, billing_cycle) and commit."""

    catalog = list(definitions) if definitions is not None else list(load_plan_catalog())
    plans = PricingPlanRepository(session)
    created = 0
    updated = 0
    try:
        for definition in catalog:
            plan = plans.get_by_name(definition.name, definition.billing_cycle)
            if plan is None:
                plan = PricingPlan(name=definition.name, billing_cycle=definition.billing_cycle)
                session.add(plan)
                created += 1
            else:
                updated += 1
            # Existing history rows keep their own price/currency snapshot.
            plan.price = definition.price
            plan.currency = definition.currency
            plan.credit = definition.credit
            plan.capacity = definition.capacity
            plan.description = definition.description
            plan.features = list(definition.features)
            plan.status = definition.status
        session.commit()
    except Exception:
        session.rollback()
        raise

    logger.info("plan_catalog_synced", created=created, updated=updated)
    return PlanSyncResult(created=created, updated=updated)


def list_active_plans(session: Session) -> List[PricingPlan]:
    return PricingPlanRepository(session).list_active()


def get_free_plan(session: Session) -> Optional[PricingPlan]:
    return PricingPlanRepository(session).get_free_plan()


def delete_plan(session: Session, plan_id: str) -> None:
    try:
        PricingPlanRepository(session).delete(plan_id)
        session.commit()
    except Exception:
        session.rollback()
        raise
    logger.info("plan_deleted", plan_id=plan_id)
