from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy.exc import InvalidRequestError

from usage_entitlements.db import create_db_engine, create_session_factory
from usage_entitlements.errors import StorageUnavailableError
from usage_entitlements.models import CommitStatus, LedgerEventKind, SubscriptionStatus, UserRecord
from usage_entitlements.storage import InMemoryUsageStore, SqlAlchemyUsageStore

from tests.conftest import T0, make_subscription


@pytest.fixture(params=["sql", "memory"])
def store(request, sql_store):
    backend = sql_store if request.param == "sql" else InMemoryUsageStore()
    backend.save_user(UserRecord(id="u1", created_at=T0))
    return backend


def test_user_round_trip_keeps_utc(store):
    store.save_user(UserRecord(id="u1", created_at=T0, email="a@example.com", trial_ends_at=T0 + timedelta(days=7)))
    user = store.get_user("u1")
    assert user.email == "a@example.com"
    assert user.created_at == T0
    assert user.trial_ends_at == T0 + timedelta(days=7)
    assert user.trial_ends_at.tzinfo is not None
    assert store.get_user("missing") is None


def test_subscriptions_listed_newest_first(store):
    store.save_user(UserRecord(id="u1", created_at=T0))
    store.save_subscription(make_subscription("u1", "pro", SubscriptionStatus.CANCELED, sub_id="old",
                                              external_id="sub_old", created_at=T0))
    store.save_subscription(make_subscription("u1", "pro-year", sub_id="new", external_id="sub_new",
                                              created_at=T0 + timedelta(days=30)))

    subs = store.list_subscriptions("u1")
    assert [s.id for s in subs] == ["new", "old"]
    assert store.find_subscription_by_external_id("sub_old").status == SubscriptionStatus.CANCELED
    assert store.find_subscription_by_external_id("sub_unknown") is None


def test_debit_decrements_and_records_event(store):
    store.set_balance("u1", "imageGeneration", 2)

    status, balance = store.debit("u1", "imageGeneration", 1, "k1")

    assert status == CommitStatus.COMMITTED
    assert balance == 1
    assert store.get_balance("u1", "imageGeneration") == 1
    event = store.get_event("k1")
    assert event.kind == LedgerEventKind.DEBIT
    assert event.quantity == 1


def test_debit_replay_is_already_committed(store):
    store.set_balance("u1", "imageGeneration", 5)
    store.debit("u1", "imageGeneration", 2, "k1")

    status, balance = store.debit("u1", "imageGeneration", 2, "k1")

    assert status == CommitStatus.ALREADY_COMMITTED
    assert balance == 3
    assert len(store.list_events("u1")) == 1


def test_debit_never_crosses_zero(store):
    store.set_balance("u1", "imageGeneration", 1)

    status, balance = store.debit("u1", "imageGeneration", 2, "k1")

    assert status == CommitStatus.REJECTED
    assert balance == 1
    assert store.get_event("k1") is None


def test_debit_without_balance_row_is_rejected(store):
    status, balance = store.debit("u1", "imageGeneration", 1, "k1")
    assert status == CommitStatus.REJECTED
    assert balance is None


def test_credit_creates_row(store):
    status, balance = store.credit("u1", "imageGeneration", 15, "purchase:cs_1")
    assert status == CommitStatus.COMMITTED
    assert balance == 15
    assert store.get_event("purchase:cs_1").kind == LedgerEventKind.CREDIT


def test_counted_debit_tracks_slots_in_use(store):
    store.apply_reset("u1", {"shopTracker": 3}, counted=frozenset({"shopTracker"}))

    store.debit("u1", "shopTracker", 2, "track-1", counted=True)
    store.debit("u1", "imageGeneration", 1, "img-1")

    assert store.get_in_use("u1", "shopTracker") == 2
    assert store.get_balance("u1", "shopTracker") == 1
    assert store.get_in_use("u1", "imageGeneration") == 0


def test_release_frees_slots_and_recomputes_balance(store):
    store.apply_reset("u1", {"shopTracker": 3}, counted=frozenset({"shopTracker"}))
    store.debit("u1", "shopTracker", 3, "track-1", counted=True)

    status, balance = store.release("u1", "shopTracker", 1, "untrack-1", limit=3)
    assert status == CommitStatus.COMMITTED
    assert balance == 1
    assert store.get_in_use("u1", "shopTracker") == 2
    assert store.get_event("untrack-1").kind == LedgerEventKind.RELEASE

    status, balance = store.release("u1", "shopTracker", 5, "untrack-2", limit=3)
    assert balance == 3
    assert store.get_in_use("u1", "shopTracker") == 0

    status, balance = store.release("u1", "shopTracker", 1, "untrack-2", limit=3)
    assert status == CommitStatus.ALREADY_COMMITTED
    assert balance == 3


def test_release_without_balance_row_is_rejected(store):
    status, balance = store.release("u1", "shopTracker", 1, "untrack-1", limit=3)
    assert status == CommitStatus.REJECTED
    assert balance is None
    assert store.get_event("untrack-1") is None


def test_counted_reset_keeps_slots_in_use(store):
    counted = frozenset({"shopTracker"})
    store.apply_reset("u1", {"shopTracker": 50, "imageGeneration": 50}, "renewal:1", counted=counted)
    for i in range(50):
        store.debit("u1", "shopTracker", 1, f"track-{i}", counted=True)
    store.debit("u1", "imageGeneration", 30, "img-batch")

    assert store.apply_reset("u1", {"shopTracker": 50, "imageGeneration": 50}, "renewal:2", counted=counted)

    assert store.get_balance("u1", "shopTracker") == 0
    assert store.get_balance("u1", "imageGeneration") == 50
    assert store.debit("u1", "shopTracker", 1, "track-51", counted=True)[0] == CommitStatus.REJECTED

    # A smaller plan never goes negative.
    store.apply_reset("u1", {"shopTracker": 3}, "downgrade:1", counted=counted)
    assert store.get_balance("u1", "shopTracker") == 0
    assert store.get_in_use("u1", "shopTracker") == 50


def test_credit_replay_is_already_committed(store):
    store.credit("u1", "imageGeneration", 15, "purchase:cs_1")
    status, balance = store.credit("u1", "imageGeneration", 15, "purchase:cs_1")
    assert status == CommitStatus.ALREADY_COMMITTED
    assert balance == 15


def test_reset_overwrites_balances_once_per_key(store):
    store.set_balance("u1", "imageGeneration", 40)
    assert store.apply_reset("u1", {"imageGeneration": 2, "shopTracker": 3}, "renewal:inv_1") is True
    assert store.get_balances("u1") == {"imageGeneration": 2, "shopTracker": 3}

    store.set_balance("u1", "imageGeneration", 0)
    assert store.apply_reset("u1", {"imageGeneration": 2}, "renewal:inv_1") is False
    assert store.get_balance("u1", "imageGeneration") == 0


def test_reset_without_key_always_applies(store):
    assert store.apply_reset("u1", {"imageGeneration": 2}) is True
    assert store.apply_reset("u1", {"imageGeneration": 4}) is True
    assert store.get_balance("u1", "imageGeneration") == 4


def test_record_unmetered_is_idempotent(store):
    assert store.record_unmetered("u1", "productExporter", 1, "k1") == CommitStatus.COMMITTED
    assert store.record_unmetered("u1", "productExporter", 1, "k1") == CommitStatus.ALREADY_COMMITTED
    assert store.get_balance("u1", "productExporter") is None


def test_users_due_for_renewal(store):
    store.save_user(UserRecord(id="due", created_at=T0, next_credit_renewal_at=T0))
    store.save_user(UserRecord(id="later", created_at=T0, next_credit_renewal_at=T0 + timedelta(days=3)))
    store.save_user(UserRecord(id="never", created_at=T0))

    due = store.list_users_due_for_renewal(T0 + timedelta(hours=1))
    assert [user.id for user in due] == ["due"]

    store.set_next_renewal("due", T0 + timedelta(days=30))
    assert store.list_users_due_for_renewal(T0 + timedelta(hours=1)) == []


def test_sql_store_fails_closed_when_tables_missing():
    engine = create_db_engine("sqlite://")
    store = SqlAlchemyUsageStore(create_session_factory(engine))

    with pytest.raises(StorageUnavailableError) as exc_info:
        store.get_balance("u1", "imageGeneration")
    assert exc_info.value.to_dict()["error"] == "STORAGE_UNAVAILABLE"

    with pytest.raises(StorageUnavailableError):
        store.debit("u1", "imageGeneration", 1, "k1")

    with pytest.raises(StorageUnavailableError):
        store.release("u1", "shopTracker", 1, "k2", limit=3)


def test_sqlite_engine_enforces_foreign_keys(sql_engine):
    with sql_engine.connect() as conn:
        assert conn.exec_driver_sql("PRAGMA foreign_keys").scalar() == 1


def test_credit_for_unknown_user_is_not_a_replay(sql_store):
    # FK violation on usage_balances must not be mistaken for a duplicate key.
    with pytest.raises(StorageUnavailableError) as exc_info:
        sql_store.credit("ghost", "imageGeneration", 15, "purchase:cs_ghost")

    assert exc_info.value.operation == "credit"
    assert sql_store.get_event("purchase:cs_ghost") is None
    assert sql_store.get_balance("ghost", "imageGeneration") is None


def test_reset_for_unknown_user_is_not_a_replay(sql_store):
    with pytest.raises(StorageUnavailableError):
        sql_store.apply_reset("ghost", {"imageGeneration": 50}, "checkout:cs_ghost")
    assert sql_store.get_event("checkout:cs_ghost") is None

    # Once the account exists the same key applies.
    sql_store.save_user(UserRecord(id="ghost", created_at=T0))
    assert sql_store.apply_reset("ghost", {"imageGeneration": 50}, "checkout:cs_ghost") is True
    assert sql_store.get_balance("ghost", "imageGeneration") == 50


def test_replay_still_detected_after_foreign_keys_enabled(sql_store):
    sql_store.save_user(UserRecord(id="u1", created_at=T0))
    assert sql_store.credit("u1", "imageGeneration", 15, "purchase:cs_1")[0] == CommitStatus.COMMITTED
    assert sql_store.credit("u1", "imageGeneration", 15, "purchase:cs_1") == (CommitStatus.ALREADY_COMMITTED, 15)
    assert sql_store.apply_reset("u1", {"imageGeneration": 2}, "renewal:1") is True
    assert sql_store.apply_reset("u1", {"imageGeneration": 2}, "renewal:1") is False


class _BrokenSession:
    """Session whose ORM calls fail without ever reaching the DBAPI."""

    def add(self, instance):
        raise InvalidRequestError("session is in an invalid state")

    def rollback(self):
        pass

    def close(self):
        pass


@pytest.mark.parametrize("write", [
    lambda s: s.debit("u1", "imageGeneration", 1, "k1"),
    lambda s: s.credit("u1", "imageGeneration", 1, "k1"),
    lambda s: s.release("u1", "shopTracker", 1, "k1", limit=3),
    lambda s: s.record_unmetered("u1", "productExporter", 1, "k1"),
    lambda s: s.apply_reset("u1", {"imageGeneration": 2}, "k1"),
])
def test_ledger_writes_fail_closed_on_any_sqlalchemy_error(write):
    store = SqlAlchemyUsageStore(_BrokenSession)

    with pytest.raises(StorageUnavailableError) as exc_info:
        write(store)
    assert isinstance(exc_info.value.__cause__, InvalidRequestError)
