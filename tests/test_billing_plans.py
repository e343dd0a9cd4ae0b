from __future__ import annotations

from pathlib import Path

import pytest

from contentpilot.billing.plans import (
    PlanDefinition,
    delete_plan,
    get_free_plan,
    list_active_plans,
    load_plan_catalog,
    parse_plan_catalog,
    sync_plan_catalog,
)
from contentpilot.core.config import get_settings
from contentpilot.core.errors import PlanInUse, PlanNotFound
from contentpilot.domain.enums import BillingCycle, Status
from contentpilot.storage.models import PricingPlan
from tests.conftest import build_session_factory, create_plan, create_user


PLANS_FILE = Path(__file__).resolve().parents[1] / "config" / "plans.yaml"


def _use_catalog(monkeypatch, path: Path = PLANS_FILE) -> None:
    monkeypatch.setenv("PLANS_FILE_PATH", str(path))
    get_settings.cache_clear()
    load_plan_catalog.cache_clear()


def test_load_plan_catalog_contains_expected_defaults(monkeypatch) -> None:
    _use_catalog(monkeypatch)
    catalog = {(plan.name, plan.billing_cycle): plan for plan in load_plan_catalog()}

    assert catalog[("free", BillingCycle.MONTHLY)].price == 0
    assert catalog[("free", BillingCycle.MONTHLY)].credit == 200
    assert catalog[("pro", BillingCycle.MONTHLY)].credit == 2000
    assert catalog[("pro_year", BillingCycle.YEARLY)].price == 1920000
    assert catalog[("ultra_year", BillingCycle.YEARLY)].capacity == 5000
    assert all(plan.currency == "VND" for plan in catalog.values())

    load_plan_catalog.cache_clear()
    get_settings.cache_clear()


def test_sync_plan_catalog_is_idempotent(monkeypatch) -> None:
    _use_catalog(monkeypatch)
    factory = build_session_factory()
    with factory() as session:
        first = sync_plan_catalog(session)
        second = sync_plan_catalog(session)

        assert (first.created, first.updated) == (5, 0)
        assert (second.created, second.updated) == (0, 5)
        assert session.query(PricingPlan).count() == 5
        assert get_free_plan(session).credit == 200

    load_plan_catalog.cache_clear()
    get_settings.cache_clear()


def test_sync_updates_allowances_in_place() -> None:
    factory = build_session_factory()
    with factory() as session:
        sync_plan_catalog(session, [PlanDefinition(name="pro", price=200000, credit=2000, capacity=1000)])
        sync_plan_catalog(session, [PlanDefinition(name="pro", price=250000, credit=2500, capacity=1000)])

        plans = list_active_plans(session)
        assert len(plans) == 1
        assert plans[0].price == 250000
        assert plans[0].credit == 2500


def test_list_active_plans_orders_by_price_and_skips_inactive() -> None:
    factory = build_session_factory()
    with factory() as session:
        create_plan(session, name="ultra", price=500000)
        create_plan(session, name="free", price=0)
        create_plan(session, name="pro", price=200000)
        create_plan(session, name="legacy", price=100000, status=Status.INACTIVE)

        assert [plan.name for plan in list_active_plans(session)] == ["free", "pro", "ultra"]


def test_parse_plan_catalog_rejects_duplicates_and_bad_values() -> None:
    with pytest.raises(ValueError, match="Duplicate plan"):
        parse_plan_catalog(
            {
                "plans": [
                    {"name": "pro", "billing_cycle": "MONTHLY"},
                    {"name": "pro", "billing_cycle": "MONTHLY"},
                ]
            }
        )
    with pytest.raises(ValueError):
        parse_plan_catalog([{"name": "pro", "price": -1}])
    with pytest.raises(ValueError):
        parse_plan_catalog("plans: nope")

    parsed = parse_plan_catalog(
        [
            {"name": "pro", "billing_cycle": "MONTHLY"},
            {"name": "pro", "billing_cycle": "YEARLY"},
        ]
    )
    assert [plan.billing_cycle for plan in parsed] == [BillingCycle.MONTHLY, BillingCycle.YEARLY]


def test_delete_plan_refused_while_referenced() -> None:
    factory = build_session_factory()
    with factory() as session:
        plan = create_plan(session)
        unused = create_plan(session, name="unused")
        user = create_user(session)
        user.pricing_plan_id = plan.id
        session.commit()

        with pytest.raises(PlanInUse) as exc_info:
            delete_plan(session, plan.id)
        assert exc_info.value.details["users"] == 1

        delete_plan(session, unused.id)
        with pytest.raises(PlanNotFound):
            delete_plan(session, unused.id)
