"""Environment-driven settings for the entitlement core."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

DEFAULT_PLANS_PATH = "config/plans.json"


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


def _database_url() -> str:
    database_url = os.getenv("DATABASE_URL", "sqlite:///./entitlements.db")
    if database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql://", 1)
    return database_url


@dataclass(frozen=True)
class EntitlementSettings:
    database_url: str = "sqlite:///./entitlements.db"
    plans_config_path: str = DEFAULT_PLANS_PATH
    redis_url: Optional[str] = None
    stripe_api_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    trial_duration_hours: int = 168
    purchase_credits_amount: int = 15
    credit_renewal_interval_days: int = 30
    billing_cache_ttl_seconds: int = 300

    @classmethod
    def from_env(cls) -> "EntitlementSettings":
        return cls(
            database_url=_database_url(),
            plans_config_path=os.getenv("PLANS_CONFIG_PATH", DEFAULT_PLANS_PATH),
            redis_url=os.getenv("REDIS_URL") or None,
            stripe_api_key=os.getenv("STRIPE_API_KEY") or None,
            stripe_webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET") or None,
            trial_duration_hours=_int_env("TRIAL_DURATION_HOURS", 168),
            purchase_credits_amount=_int_env("PURCHASE_CREDITS_AMOUNT", 15),
            credit_renewal_interval_days=_int_env("CREDIT_RENEWAL_INTERVAL_DAYS", 30),
            billing_cache_ttl_seconds=_int_env("BILLING_CACHE_TTL_SECONDS", 300),
        )
