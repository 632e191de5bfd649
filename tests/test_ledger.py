from __future__ import annotations

import pytest

from usage_entitlements.ledger import UsageLedger, balances_for_plan, counted_features_for_plan
from usage_entitlements.models import CommitStatus, UserRecord

from tests.conftest import T0


@pytest.fixture
def ledger(memory_store, catalog):
    return UsageLedger(memory_store, catalog)


def test_missing_balance_reads_as_zero(ledger):
    assert ledger.get_balance("u1", "imageGeneration") == 0


def test_set_balance_rejects_negative_and_non_integers(ledger):
    for bad in (-1, 1.5, True, "3"):
        with pytest.raises(ValueError):
            ledger.set_balance("u1", "imageGeneration", bad)
    ledger.set_balance("u1", "imageGeneration", 0)
    assert ledger.get_balance("u1", "imageGeneration") == 0


def test_balances_for_plan_stores_unlimited_as_zero(catalog):
    balances = balances_for_plan(catalog.get_plan("pro"))
    assert balances["imageGeneration"] == 50
    assert balances["productExporter"] == 0


def test_reset_to_plan_limit_overwrites_everything(ledger, catalog):
    ledger.set_balance("u1", "imageGeneration", 3)
    ledger.set_balance("u1", "generateProduct", 0)

    assert ledger.reset_to_plan_limit("u1", catalog.get_plan("pro")) is True

    assert ledger.get_balance("u1", "imageGeneration") == 50
    assert ledger.get_balance("u1", "generateProduct") == 20
    assert ledger.get_balance("u1", "shopTracker") == 50


def test_reset_with_key_applies_once(ledger, catalog):
    pro = catalog.get_plan("pro")
    assert ledger.reset_to_plan_limit("u1", pro, "renewal:inv_1") is True
    ledger.debit("u1", "imageGeneration", 10, "use-1")
    assert ledger.reset_to_plan_limit("u1", pro, "renewal:inv_1") is False
    assert ledger.get_balance("u1", "imageGeneration") == 40


def test_initialize_user_seeds_trial_balances(ledger, memory_store):
    ledger.initialize_user(UserRecord(id="u1", created_at=T0))

    assert memory_store.get_user("u1") is not None
    assert ledger.get_balances("u1") == {
        "generateProduct": 1,
        "videoGeneration": 0,
        "imageGeneration": 2,
        "productExporter": 5,
        "shopExporter": 0,
        "importTheme": 1,
        "shopTracker": 3,
    }


def test_debit_validates_inputs(ledger):
    with pytest.raises(ValueError):
        ledger.debit("u1", "imageGeneration", 0, "k1")
    with pytest.raises(ValueError):
        ledger.debit("u1", "imageGeneration", 1, "  ")
    with pytest.raises(ValueError):
        ledger.debit("", "imageGeneration", 1, "k1")
    with pytest.raises(ValueError):
        ledger.debit("u1", " ", 1, "k1")


def test_release_rejects_negative_limit(ledger):
    with pytest.raises(ValueError):
        ledger.release("u1", "shopTracker", 1, "k1", limit=-1)


def test_debit_passes_through_store_outcome(ledger):
    ledger.set_balance("u1", "imageGeneration", 1)
    assert ledger.debit("u1", "imageGeneration", 1, "k1") == (CommitStatus.COMMITTED, 0)
    assert ledger.debit("u1", "imageGeneration", 1, "k2") == (CommitStatus.REJECTED, 0)


def test_counted_features_for_plan(catalog):
    assert counted_features_for_plan(catalog.get_plan("pro")) == frozenset({"shopTracker"})
    assert counted_features_for_plan(catalog.get_plan("expired")) == frozenset({"shopTracker"})


def test_reset_subtracts_tracked_shops_from_counted_limit(ledger, catalog):
    ledger.initialize_user(UserRecord(id="u1", created_at=T0))
    ledger.debit("u1", "shopTracker", 3, "track-trial", counted=True)
    assert ledger.get_balance("u1", "shopTracker") == 0

    # Trial to pro upgrade: 3 shops already tracked count against the 50.
    ledger.reset_to_plan_limit("u1", catalog.get_plan("pro"), "checkout:cs_1")

    assert ledger.get_in_use("u1", "shopTracker") == 3
    assert ledger.get_balance("u1", "shopTracker") == 47
    assert ledger.get_balance("u1", "imageGeneration") == 50
