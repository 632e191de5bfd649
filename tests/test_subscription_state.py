from __future__ import annotations

from datetime import timedelta

import httpx
import pytest

from usage_entitlements.billing import StripeBillingClient
from usage_entitlements.cache import BillingDetailsCache
from usage_entitlements.errors import UserNotFoundError
from usage_entitlements.models import SubscriptionStatus, UserRecord
from usage_entitlements.subscription_state import SubscriptionStateReader

from tests.conftest import T0, make_subscription


@pytest.fixture
def reader(memory_store, catalog, clock):
    memory_store.save_user(UserRecord(id="u1", created_at=T0))
    return SubscriptionStateReader(memory_store, catalog, clock=clock)


def test_unknown_user_raises(reader):
    with pytest.raises(UserNotFoundError):
        reader.get_effective_state("ghost")


def test_new_user_is_on_trial(reader):
    state = reader.get_effective_state("u1")
    assert state.status == SubscriptionStatus.TRIALING
    assert state.plan_identifier == "trial"
    assert state.is_trialing is True
    assert state.trial_days_remaining == 7
    assert state.has_subscription_history is False


def test_trial_ends_after_168_hours(reader):
    assert reader.get_effective_state("u1", T0 + timedelta(hours=167)).plan_identifier == "trial"

    state = reader.get_effective_state("u1", T0 + timedelta(hours=168))
    assert state.status == SubscriptionStatus.EXPIRED
    assert state.plan_identifier == "expired"
    assert state.is_expired is True


def test_explicit_trial_end_on_user_wins(memory_store, catalog, clock):
    memory_store.save_user(UserRecord(id="u2", created_at=T0, trial_ends_at=T0 + timedelta(days=14)))
    reader = SubscriptionStateReader(memory_store, catalog, clock=clock)
    assert reader.get_effective_state("u2", T0 + timedelta(days=10)).plan_identifier == "trial"


def test_active_subscription_governs(reader, memory_store):
    memory_store.save_subscription(make_subscription("u1", "pro"))
    state = reader.get_effective_state("u1", T0 + timedelta(days=60))
    assert state.status == SubscriptionStatus.ACTIVE
    assert state.plan_identifier == "pro"
    assert state.has_subscription_history is True


def test_newest_subscription_wins(reader, memory_store):
    memory_store.save_subscription(make_subscription("u1", "pro", sub_id="a", external_id="sub_a"))
    memory_store.save_subscription(make_subscription("u1", "pro-year", sub_id="b", external_id="sub_b",
                                                     created_at=T0 + timedelta(days=1)))
    assert reader.get_effective_state("u1").plan_identifier == "pro-year"


def test_provider_trialing_subscription_reports_days_left(reader, memory_store):
    memory_store.save_subscription(make_subscription(
        "u1", "pro", SubscriptionStatus.TRIALING, trial_end=T0 + timedelta(days=2, hours=1),
    ))
    state = reader.get_effective_state("u1")
    assert state.is_trialing is True
    assert state.trial_days_remaining == 3
    assert state.plan_identifier == "pro"


def test_past_due_keeps_plan_through_grace_period(reader, memory_store):
    period_end = T0 + timedelta(days=30)
    memory_store.save_subscription(make_subscription(
        "u1", "pro", SubscriptionStatus.PAST_DUE, current_period_end=period_end,
    ))

    inside = reader.get_effective_state("u1", period_end + timedelta(days=3))
    assert inside.plan_identifier == "pro"
    assert inside.in_grace_period is True

    after = reader.get_effective_state("u1", period_end + timedelta(days=3, seconds=1))
    assert after.status == SubscriptionStatus.EXPIRED
    assert after.plan_identifier == "expired"
    assert after.has_subscription_history is True


def test_past_due_without_period_end_gets_no_grace(reader, memory_store, clock):
    clock.advance(days=10)
    memory_store.save_subscription(make_subscription("u1", "pro", SubscriptionStatus.PAST_DUE))
    assert reader.get_effective_state("u1").plan_identifier == "expired"


@pytest.mark.parametrize(
    "status",
    [SubscriptionStatus.CANCELED, SubscriptionStatus.INCOMPLETE, SubscriptionStatus.EXPIRED],
)
def test_ended_subscriptions_fall_back_to_trial_window(reader, memory_store, status):
    memory_store.save_subscription(make_subscription("u1", "pro", status))

    during_trial = reader.get_effective_state("u1")
    assert during_trial.plan_identifier == "trial"
    assert during_trial.has_subscription_history is True

    after_trial = reader.get_effective_state("u1", T0 + timedelta(days=8))
    assert after_trial.plan_identifier == "expired"


class _FakeRedis:
    def __init__(self):
        self.store = {}

    def get(self, key):
        return self.store.get(key)

    def setex(self, key, ttl, value):
        self.store[key] = value

    def delete(self, key):
        self.store.pop(key, None)


def _stripe_transport(calls, status_code=200):
    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        if status_code != 200:
            return httpx.Response(status_code, json={"error": {"message": "boom"}})
        return httpx.Response(200, json={
            "id": "sub_ext_1",
            "status": "active",
            "current_period_end": int((T0 + timedelta(days=31)).timestamp()),
            "items": {"data": [{"price": {"id": "price_pro"}}]},
        })

    return httpx.MockTransport(handler)


@pytest.mark.asyncio
async def test_billing_details_fetch_provider_then_cache(memory_store, catalog, clock):
    memory_store.save_user(UserRecord(id="u1", created_at=T0))
    memory_store.save_subscription(make_subscription("u1", "pro", current_period_end=T0 + timedelta(days=30)))
    calls = []
    client = StripeBillingClient("sk_test", transport=_stripe_transport(calls))
    cache = BillingDetailsCache()
    cache._redis = _FakeRedis()
    reader = SubscriptionStateReader(memory_store, catalog, clock=clock, billing_client=client, details_cache=cache)

    first = await reader.get_billing_details("u1")
    second = await reader.get_billing_details("u1")
    await client.close()

    assert first.source == "provider"
    assert first.current_period_end == T0 + timedelta(days=31)
    assert second.source == "cache"
    assert second.current_period_end == T0 + timedelta(days=31)
    assert calls == ["/v1/subscriptions/sub_ext_1"]


@pytest.mark.asyncio
async def test_billing_details_fall_back_to_local_on_provider_error(memory_store, catalog, clock):
    memory_store.save_user(UserRecord(id="u1", created_at=T0))
    memory_store.save_subscription(make_subscription("u1", "pro", current_period_end=T0 + timedelta(days=30)))
    client = StripeBillingClient("sk_test", transport=_stripe_transport([], status_code=500))
    reader = SubscriptionStateReader(memory_store, catalog, clock=clock, billing_client=client)

    details = await reader.get_billing_details("u1")
    await client.close()

    assert details.source == "local"
    assert details.plan_identifier == "pro"
    assert details.current_period_end == T0 + timedelta(days=30)
