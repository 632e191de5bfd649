"""
Plan-based usage entitlements with metered credits.

This package provides:
- PlanCatalog: plan -> per-feature limits from config/plans.json or the plans tables
- SubscriptionStateReader: effective plan from local subscriptions and the trial window
- UsageLedger: per-user, per-feature balances (never negative)
- EntitlementEvaluator: allow/deny decisions without debiting
- UsageRecorder: idempotent commit of usage after the gated action succeeds
- BillingWebhookHandler: purchase credits and renewal resets from Stripe events
- EntitlementService / build_service: wiring for applications

The FastAPI adapter lives in usage_entitlements.api.

Grace period for past_due subscriptions: 3 days (grace_period_days in plans.json)
"""

from .catalog import PlanCatalog, parse_plans_config, seed_plans
from .errors import (
    BillingProviderError,
    EntitlementError,
    PlanNotFoundError,
    StorageUnavailableError,
    UserNotFoundError,
    WebhookSignatureError,
)
from .evaluator import EntitlementEvaluator
from .features import Feature
from .ledger import UsageLedger
from .models import (
    CommitResult,
    CommitStatus,
    Decision,
    DenyReason,
    EffectiveState,
    PlanDefinition,
    SubscriptionSnapshot,
    SubscriptionStatus,
    UserRecord,
)
from .recorder import UsageRecorder
from .service import CreditsSummary, EntitlementService, build_service
from .settings import EntitlementSettings
from .storage import InMemoryUsageStore, SqlAlchemyUsageStore, UsageStore
from .subscription_state import SubscriptionStateReader
from .webhooks import BillingWebhookHandler, WebhookOutcome

__all__ = [
    "BillingProviderError",
    "BillingWebhookHandler",
    "CommitResult",
    "CommitStatus",
    "CreditsSummary",
    "Decision",
    "DenyReason",
    "EffectiveState",
    "EntitlementError",
    "EntitlementEvaluator",
    "EntitlementService",
    "EntitlementSettings",
    "Feature",
    "InMemoryUsageStore",
    "PlanCatalog",
    "PlanDefinition",
    "PlanNotFoundError",
    "SqlAlchemyUsageStore",
    "StorageUnavailableError",
    "SubscriptionSnapshot",
    "SubscriptionStatus",
    "SubscriptionStateReader",
    "UsageLedger",
    "UsageRecorder",
    "UsageStore",
    "UserNotFoundError",
    "UserRecord",
    "WebhookOutcome",
    "WebhookSignatureError",
    "build_service",
    "parse_plans_config",
    "seed_plans",
]
