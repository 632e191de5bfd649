from __future__ import annotations

import json
import logging
import time
from datetime import datetime
from typing import Dict, Optional

from .billing import ProviderSubscription

logger = logging.getLogger(__name__)

CACHE_SCHEMA_VERSION = 1


class BillingDetailsCache:
    """Redis-backed cache of provider subscription details with in-memory fallback."""

    def __init__(self, redis_url: Optional[str] = None, ttl_seconds: int = 300) -> None:
        self._ttl_seconds = ttl_seconds
        self._redis = None
        self._mem: Dict[str, tuple[int, dict]] = {}

        if redis_url:
            try:
                import redis

                self._redis = redis.from_url(redis_url, decode_responses=True)
                self._redis.ping()
            except Exception as exc:
                logger.warning("Redis unavailable, using in-memory billing cache: %s", exc)
                self._redis = None

    @staticmethod
    def _require_subscription_id(subscription_id: str) -> str:
        normalized = str(subscription_id).strip()
        if not normalized:
            raise ValueError("subscription_id is required")
        return normalized

    @staticmethod
    def _key(subscription_id: str) -> str:
        return f"billing:subscription:v1:{subscription_id}"

    def get(self, subscription_id: str) -> Optional[ProviderSubscription]:
        key = self._key(self._require_subscription_id(subscription_id))

        if self._redis is not None:
            try:
                raw = self._redis.get(key)
            except Exception as exc:
                logger.warning("Billing cache get failed: %s", exc)
                return None
            if not raw:
                return None
            return _decode(json.loads(raw))

        data = self._mem.get(key)
        if not data:
            return None

        cached_at, payload = data
        if int(time.time()) - cached_at > self._ttl_seconds:
            self._mem.pop(key, None)
            return None
        return _decode(payload)

    def set(self, subscription: ProviderSubscription, *, ttl_seconds: Optional[int] = None) -> None:
        key = self._key(self._require_subscription_id(subscription.subscription_id))
        ttl = ttl_seconds or self._ttl_seconds
        payload = _encode(subscription)

        if self._redis is not None:
            try:
                self._redis.setex(key, ttl, json.dumps(payload))
            except Exception as exc:
                logger.warning("Billing cache set failed: %s", exc)
            return

        self._mem[key] = (int(time.time()), payload)

    def invalidate(self, subscription_id: str) -> None:
        key = self._key(self._require_subscription_id(subscription_id))
        if self._redis is not None:
            try:
                self._redis.delete(key)
            except Exception as exc:
                logger.warning("Billing cache delete failed: %s", exc)
        self._mem.pop(key, None)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _encode(subscription: ProviderSubscription) -> dict:
    return {
        "schema_version": CACHE_SCHEMA_VERSION,
        "subscription_id": subscription.subscription_id,
        "status": subscription.status,
        "current_period_end": _iso(subscription.current_period_end),
        "trial_end": _iso(subscription.trial_end),
        "cancel_at": _iso(subscription.cancel_at),
        "price_id": subscription.price_id,
    }


def _decode(raw: dict) -> ProviderSubscription:
    if int(raw.get("schema_version", CACHE_SCHEMA_VERSION)) != CACHE_SCHEMA_VERSION:
        raise ValueError("Unsupported billing cache schema version")
    return ProviderSubscription(
        subscription_id=raw["subscription_id"],
        status=raw["status"],
        current_period_end=_parse(raw.get("current_period_end")),
        trial_end=_parse(raw.get("trial_end")),
        cancel_at=_parse(raw.get("cancel_at")),
        price_id=raw.get("price_id"),
    )
