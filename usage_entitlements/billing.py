"""
Stripe billing client for subscription corroboration and webhook verification.

Only display paths call the provider. Entitlement decisions read the local
subscriptions table and never wait on this client.
"""

import hashlib
import hmac
import logging
import os
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx

from .errors import BillingProviderError, WebhookSignatureError

logger = logging.getLogger(__name__)

DEFAULT_SIGNATURE_TOLERANCE_SECONDS = 300


@dataclass
class ProviderSubscription:
    """Subscription as reported by Stripe."""
    subscription_id: str
    status: str
    current_period_end: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    cancel_at: Optional[datetime] = None
    price_id: Optional[str] = None


def _from_timestamp(value: Optional[Any]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


class StripeBillingClient:
    """
    Minimal Stripe REST client.

    Handles:
    - Retrieving a subscription by id
    """

    API_BASE_URL = "https://api.stripe.com"

    def __init__(
        self,
        api_key: Optional[str] = None,
        *,
        base_url: Optional[str] = None,
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key or os.getenv("STRIPE_API_KEY")
        if not self.api_key:
            raise BillingProviderError("STRIPE_API_KEY is not configured", code="not_configured")

        self._client = httpx.AsyncClient(
            base_url=base_url or self.API_BASE_URL,
            headers={"Authorization": f"Bearer {self.api_key}"},
            timeout=timeout,
            transport=transport,
        )

    async def close(self):
        await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _get(self, path: str) -> Dict[str, Any]:
        try:
            response = await self._client.get(path)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            logger.error("Stripe API HTTP error", extra={
                "path": path,
                "status_code": e.response.status_code,
                "response": e.response.text[:500],
            })
            raise BillingProviderError(
                f"Stripe API error: {e.response.status_code}",
                code=str(e.response.status_code),
            ) from e
        except httpx.RequestError as e:
            logger.error("Stripe API request error", extra={"path": path, "error": str(e)})
            raise BillingProviderError(f"Request failed: {str(e)}") from e

    async def get_subscription(self, subscription_id: str) -> ProviderSubscription:
        data = await self._get(f"/v1/subscriptions/{subscription_id}")
        items = (data.get("items") or {}).get("data") or []
        price_id = None
        if items:
            price_id = (items[0].get("price") or {}).get("id")
        return ProviderSubscription(
            subscription_id=data["id"],
            status=data.get("status", ""),
            current_period_end=_from_timestamp(data.get("current_period_end")),
            trial_end=_from_timestamp(data.get("trial_end")),
            cancel_at=_from_timestamp(data.get("cancel_at")),
            price_id=price_id,
        )


def compute_webhook_signature(payload: bytes, timestamp: int, secret: str) -> str:
    signed_payload = f"{timestamp}.".encode("utf-8") + payload
    return hmac.new(secret.encode("utf-8"), signed_payload, hashlib.sha256).hexdigest()


def verify_webhook_signature(
    payload: bytes,
    signature_header: Optional[str],
    secret: Optional[str] = None,
    *,
    tolerance_seconds: int = DEFAULT_SIGNATURE_TOLERANCE_SECONDS,
    now: Optional[float] = None,
) -> None:
    """
    Verify a Stripe-Signature header (t=<ts>,v1=<hex hmac>).

    Raises WebhookSignatureError when the header is missing, malformed,
    stale, or no v1 signature matches.
    """
    secret = secret or os.getenv("STRIPE_WEBHOOK_SECRET")
    if not secret:
        logger.error("STRIPE_WEBHOOK_SECRET not configured for webhook verification")
        raise WebhookSignatureError("Webhook secret not configured")
    if not signature_header:
        raise WebhookSignatureError("Missing signature")

    timestamp: Optional[int] = None
    signatures = []
    for part in signature_header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                raise WebhookSignatureError("Malformed signature timestamp")
        elif key == "v1":
            signatures.append(value)

    if timestamp is None or not signatures:
        raise WebhookSignatureError("Malformed signature header")

    current = time.time() if now is None else now
    if tolerance_seconds and abs(current - timestamp) > tolerance_seconds:
        raise WebhookSignatureError("Signature timestamp outside tolerance")

    expected = compute_webhook_signature(payload, timestamp, secret)
    if not any(hmac.compare_digest(expected, candidate) for candidate in signatures):
        raise WebhookSignatureError("Invalid signature")
