from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from usage_entitlements.catalog import PlanCatalog
from usage_entitlements.db import create_db_engine, create_schema, create_session_factory
from usage_entitlements.models import SubscriptionSnapshot, SubscriptionStatus
from usage_entitlements.service import EntitlementService
from usage_entitlements.storage import InMemoryUsageStore, SqlAlchemyUsageStore

PLANS_PATH = Path(__file__).resolve().parents[1] / "config" / "plans.json"

T0 = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


class FrozenClock:
    def __init__(self, now: datetime = T0):
        self.current = now

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


def make_subscription(
    user_id: str,
    plan_identifier: str = "pro",
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
    *,
    sub_id: str = "sub-1",
    external_id: str = "sub_ext_1",
    created_at: datetime = T0,
    current_period_end=None,
    trial_end=None,
) -> SubscriptionSnapshot:
    return SubscriptionSnapshot(
        id=sub_id,
        user_id=user_id,
        plan_identifier=plan_identifier,
        status=status,
        created_at=created_at,
        external_id=external_id,
        current_period_end=current_period_end,
        trial_end=trial_end,
    )


@pytest.fixture
def catalog():
    return PlanCatalog.from_file(str(PLANS_PATH))


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def memory_store():
    return InMemoryUsageStore()


@pytest.fixture
def sql_engine():
    engine = create_db_engine("sqlite://")
    create_schema(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(sql_engine):
    return create_session_factory(sql_engine)


@pytest.fixture
def sql_store(session_factory):
    return SqlAlchemyUsageStore(session_factory)


@pytest.fixture
def service(memory_store, catalog, clock):
    return EntitlementService(store=memory_store, catalog=catalog, clock=clock, webhook_secret="whsec_test")


@pytest.fixture
def sql_service(sql_store, catalog, clock):
    return EntitlementService(store=sql_store, catalog=catalog, clock=clock, webhook_secret="whsec_test")
