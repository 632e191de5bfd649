from __future__ import annotations

import json

import pytest

from usage_entitlements.catalog import PlanCatalog, parse_plans_config, seed_plans
from usage_entitlements.errors import PlanNotFoundError
from usage_entitlements.features import Feature
from usage_entitlements.schema import Plan


def test_catalog_loads_bundled_plans(catalog):
    assert set(catalog.plans()) == {"trial", "pro", "pro-year", "expired"}
    assert catalog.grace_period_days == 3
    assert catalog.trial_plan == "trial"
    assert catalog.expired_plan == "expired"

    pro = catalog.get_plan("pro")
    assert pro.price_cents == 4900
    assert catalog.get_limit(pro, Feature.IMAGE_GENERATION) == 50
    assert catalog.get_limit(pro, "productExporter") == -1


def test_unknown_plan_and_feature_fail_closed(catalog):
    assert catalog.find_plan("enterprise") is None
    assert catalog.get_limit(None, Feature.IMAGE_GENERATION) == 0
    assert catalog.get_limit(catalog.get_plan("pro"), "teleportation") == 0
    with pytest.raises(PlanNotFoundError):
        catalog.get_plan("enterprise")


def test_parse_strips_keys_and_keeps_policy():
    config = parse_plans_config({
        "grace_period_days": 5,
        "plans": {" basic ": {"limits": {" imageGeneration ": 4}}},
    })
    assert config.grace_period_days == 5
    assert config.plans["basic"].limits == {"imageGeneration": 4}


@pytest.mark.parametrize(
    "limits",
    [
        {"imageGeneration": -2},
        {"imageGeneration": True},
        {"imageGeneration": "5"},
        {"": 3},
    ],
)
def test_parse_rejects_invalid_limits(limits):
    with pytest.raises(ValueError):
        parse_plans_config({"plans": {"basic": {"limits": limits}}})


def test_parse_rejects_empty_catalog():
    with pytest.raises(ValueError):
        parse_plans_config({"plans": {}})
    with pytest.raises(ValueError):
        parse_plans_config({"plans": []})


def test_reload_picks_up_file_changes(tmp_path):
    config_file = tmp_path / "plans.json"
    config_file.write_text(json.dumps({"plans": {"basic": {"limits": {"imageGeneration": 1}}}}), encoding="utf-8")
    catalog = PlanCatalog.from_file(str(config_file))
    assert catalog.get_limit(catalog.find_plan("basic"), "imageGeneration") == 1

    config_file.write_text(json.dumps({"plans": {"basic": {"limits": {"imageGeneration": 9}}}}), encoding="utf-8")
    catalog.reload()
    assert catalog.get_limit(catalog.find_plan("basic"), "imageGeneration") == 9


def test_seed_plans_round_trips_through_tables(catalog, session_factory):
    session = session_factory()
    try:
        assert seed_plans(session, catalog) == 4
        session.commit()
    finally:
        session.close()

    from_db = PlanCatalog.from_session(session_factory)
    assert set(from_db.plans()) == set(catalog.plans())
    assert dict(from_db.get_plan("pro").limits) == dict(catalog.get_plan("pro").limits)


def test_seed_plans_updates_and_removes_limits(session_factory):
    first = PlanCatalog(parse_plans_config({"plans": {"basic": {"limits": {"imageGeneration": 1, "shopTracker": 2}}}}))
    second = PlanCatalog(parse_plans_config({"plans": {"basic": {"title": "Basic", "limits": {"imageGeneration": 7}}}}))

    session = session_factory()
    try:
        seed_plans(session, first)
        session.commit()
        seed_plans(session, second)
        session.commit()
        row = session.get(Plan, "basic")
        assert row.title == "Basic"
        assert {limit.feature_key: limit.limit_value for limit in row.limits} == {"imageGeneration": 7}
    finally:
        session.close()
