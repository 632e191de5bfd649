from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from .audit import AuditSink, EntitlementAuditLogger
from .billing import StripeBillingClient
from .cache import BillingDetailsCache
from .catalog import PlanCatalog
from .db import create_db_engine, create_schema, create_session_factory
from .errors import UserNotFoundError
from .evaluator import EntitlementEvaluator
from .features import FeatureKey
from .ledger import UsageLedger
from .models import (
    BillingDetails,
    CommitResult,
    Decision,
    UserRecord,
    require_user_id,
    utcnow,
)
from .recorder import UsageRecorder
from .settings import EntitlementSettings
from .storage import SqlAlchemyUsageStore, UsageStore
from .subscription_state import SubscriptionStateReader
from .webhooks import BillingWebhookHandler, WebhookOutcome

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CreditsSummary:
    user_id: str
    plan_identifier: str
    status: str
    is_on_trial: bool
    trial_ends_at: Optional[datetime]
    trial_days_remaining: int
    next_credit_renewal_at: Optional[datetime]
    balances: Dict[str, int] = field(default_factory=dict)
    limits: Dict[str, int] = field(default_factory=dict)


class EntitlementService:
    """Single entry point for gating, committing and reading usage credits."""

    def __init__(
        self,
        *,
        store: UsageStore,
        catalog: PlanCatalog,
        trial_duration: timedelta = timedelta(hours=168),
        clock: Callable[[], datetime] = utcnow,
        billing_client: Optional[StripeBillingClient] = None,
        details_cache: Optional[BillingDetailsCache] = None,
        audit_sink: Optional[AuditSink] = None,
        webhook_secret: Optional[str] = None,
        purchase_credits_amount: int = 15,
        credit_renewal_interval: timedelta = timedelta(days=30),
    ) -> None:
        self.store = store
        self.catalog = catalog
        self.audit = EntitlementAuditLogger(audit_sink)
        self.reader = SubscriptionStateReader(
            store,
            catalog,
            trial_duration=trial_duration,
            clock=clock,
            billing_client=billing_client,
            details_cache=details_cache,
        )
        self.ledger = UsageLedger(store, catalog)
        self.evaluator = EntitlementEvaluator(catalog, self.reader, self.ledger, self.audit)
        self.recorder = UsageRecorder(catalog, self.reader, self.ledger, self.audit)
        self.webhooks = BillingWebhookHandler(
            store=store,
            catalog=catalog,
            ledger=self.ledger,
            recorder=self.recorder,
            webhook_secret=webhook_secret,
            purchase_credits_amount=purchase_credits_amount,
            credit_renewal_interval=credit_renewal_interval,
        )
        self.billing_client = billing_client

    def register_user(self, user_id: str, *, email: Optional[str] = None,
                      created_at: Optional[datetime] = None) -> UserRecord:
        """Create the account and seed its trial balances. Safe to call twice."""
        user_id = require_user_id(user_id)
        existing = self.store.get_user(user_id)
        if existing is not None:
            return existing
        created_at = created_at or self.reader.now()
        user = UserRecord(
            id=user_id,
            created_at=created_at,
            email=email,
            trial_ends_at=created_at + self.reader.trial_duration,
        )
        self.ledger.initialize_user(user)
        logger.info("User registered", extra={"user_id": user_id, "trial_ends_at": user.trial_ends_at.isoformat()})
        return user

    def check_and_reserve(self, user_id: str, feature: FeatureKey, quantity: int = 1) -> Decision:
        return self.evaluator.check_and_reserve(user_id, feature, quantity)

    def commit(self, user_id: str, feature: FeatureKey, quantity: int, idempotency_key: str) -> CommitResult:
        return self.recorder.commit(user_id, feature, quantity, idempotency_key)

    def credit_purchase(self, user_id: str, feature: FeatureKey, quantity: int, idempotency_key: str) -> CommitResult:
        return self.recorder.credit(user_id, feature, quantity, idempotency_key)

    def release(self, user_id: str, feature: FeatureKey, quantity: int, idempotency_key: str) -> CommitResult:
        return self.recorder.release(user_id, feature, quantity, idempotency_key)

    def get_credits_summary(self, user_id: str) -> CreditsSummary:
        user_id = require_user_id(user_id)
        user = self.store.get_user(user_id)
        if user is None:
            raise UserNotFoundError(user_id)
        state = self.reader.get_effective_state(user_id)
        plan = self.catalog.find_plan(state.plan_identifier)
        return CreditsSummary(
            user_id=user_id,
            plan_identifier=state.plan_identifier,
            status=state.status.value,
            is_on_trial=state.is_trialing,
            trial_ends_at=self.reader.trial_ends_at(user),
            trial_days_remaining=state.trial_days_remaining,
            next_credit_renewal_at=user.next_credit_renewal_at,
            balances=self.ledger.get_balances(user_id),
            limits=dict(plan.limits) if plan is not None else {},
        )

    async def get_billing_details(self, user_id: str) -> BillingDetails:
        return await self.reader.get_billing_details(user_id)

    def handle_webhook(self, payload: bytes, signature_header: Optional[str]) -> WebhookOutcome:
        event = self.webhooks.parse_event(payload, signature_header)
        return self.webhooks.handle_event(event)

    async def close(self) -> None:
        if self.billing_client is not None:
            await self.billing_client.close()


def build_service(settings: Optional[EntitlementSettings] = None, *, create_tables: bool = False) -> EntitlementService:
    """Wire an EntitlementService from settings (environment by default)."""
    settings = settings or EntitlementSettings.from_env()
    engine = create_db_engine(settings.database_url)
    if create_tables:
        create_schema(engine)
    store = SqlAlchemyUsageStore(create_session_factory(engine))
    catalog = PlanCatalog.from_file(settings.plans_config_path)

    billing_client = None
    if settings.stripe_api_key:
        billing_client = StripeBillingClient(settings.stripe_api_key)
    else:
        logger.info("STRIPE_API_KEY not set; billing details served from local state only")

    return EntitlementService(
        store=store,
        catalog=catalog,
        trial_duration=timedelta(hours=settings.trial_duration_hours),
        billing_client=billing_client,
        details_cache=BillingDetailsCache(settings.redis_url, ttl_seconds=settings.billing_cache_ttl_seconds),
        webhook_secret=settings.stripe_webhook_secret,
        purchase_credits_amount=settings.purchase_credits_amount,
        credit_renewal_interval=timedelta(days=settings.credit_renewal_interval_days),
    )
