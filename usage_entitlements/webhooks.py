"""
Billing webhook handling for the usage ledger.

Handles the Stripe events that move balances:
- checkout.session.completed (ai_credits, paid): credit purchased units,
  keyed by the checkout session id so a redelivered event credits once
- checkout.session.completed (subscription): reset balances to the plan
- invoice.paid (subscription_cycle): reset balances at renewal

Subscription rows themselves are maintained by the billing sync outside
this package; events that only touch subscriptions are ignored here.

Events naming a user that does not exist raise UserNotFoundError so the
receiver answers non-2xx and Stripe redelivers once the account exists.
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from .billing import verify_webhook_signature
from .catalog import PlanCatalog
from .errors import UserNotFoundError
from .features import Feature
from .ledger import UsageLedger
from .models import CommitStatus, utcnow
from .recorder import UsageRecorder
from .storage import UsageStore

logger = logging.getLogger(__name__)

PURCHASE_TYPE_AI_CREDITS = "ai_credits"


@dataclass(frozen=True)
class WebhookOutcome:
    event_type: str
    action: str  # credited | reset | ignored | duplicate | skipped
    user_id: Optional[str] = None
    detail: Optional[str] = None


class BillingWebhookHandler:
    def __init__(
        self,
        *,
        store: UsageStore,
        catalog: PlanCatalog,
        ledger: UsageLedger,
        recorder: UsageRecorder,
        webhook_secret: Optional[str] = None,
        purchase_feature: str = Feature.IMAGE_GENERATION.value,
        purchase_credits_amount: int = 15,
        credit_renewal_interval: timedelta = timedelta(days=30),
    ) -> None:
        self.store = store
        self.catalog = catalog
        self.ledger = ledger
        self.recorder = recorder
        self.webhook_secret = webhook_secret
        self.purchase_feature = purchase_feature
        self.purchase_credits_amount = purchase_credits_amount
        self.credit_renewal_interval = credit_renewal_interval

    def parse_event(self, payload: bytes, signature_header: Optional[str], *, now: Optional[float] = None) -> Dict[str, Any]:
        """Verify the signature and decode the event body."""
        verify_webhook_signature(payload, signature_header, self.webhook_secret, now=now)
        event = json.loads(payload.decode("utf-8"))
        if not isinstance(event, dict) or "type" not in event:
            raise ValueError("webhook payload must be an event object")
        return event

    def handle_event(self, event: Dict[str, Any]) -> WebhookOutcome:
        event_type = event.get("type", "")
        obj = (event.get("data") or {}).get("object") or {}
        logger.info("Billing webhook received", extra={"event_type": event_type, "event_id": event.get("id")})

        if event_type == "checkout.session.completed":
            metadata = obj.get("metadata") or {}
            if metadata.get("type") == PURCHASE_TYPE_AI_CREDITS:
                return self._handle_credit_purchase(event_type, obj)
            if obj.get("mode") == "subscription" or obj.get("subscription"):
                return self._handle_subscription_checkout(event_type, obj)
            return WebhookOutcome(event_type=event_type, action="ignored", detail="unrecognised checkout")

        if event_type == "invoice.paid":
            return self._handle_invoice_paid(event_type, obj)

        logger.info("Unhandled billing webhook event", extra={"event_type": event_type})
        return WebhookOutcome(event_type=event_type, action="ignored")

    def _handle_credit_purchase(self, event_type: str, session: Dict[str, Any]) -> WebhookOutcome:
        user_id = (session.get("metadata") or {}).get("userId")
        session_id = session.get("id")
        if not user_id or not session_id:
            logger.error("Credit purchase missing user or session id", extra={"session_id": session_id})
            return WebhookOutcome(event_type=event_type, action="skipped", detail="missing user or session id")
        if session.get("payment_status") != "paid":
            logger.info(
                "Credit purchase not paid yet",
                extra={"session_id": session_id, "payment_status": session.get("payment_status")},
            )
            return WebhookOutcome(event_type=event_type, action="skipped", user_id=str(user_id), detail="unpaid")

        result = self.recorder.credit(
            str(user_id),
            self.purchase_feature,
            self.purchase_credits_amount,
            f"purchase:{session_id}",
        )
        if result.status == CommitStatus.REJECTED:
            logger.error("Credit purchase for unknown user", extra={"user_id": result.user_id, "session_id": session_id})
            raise UserNotFoundError(result.user_id)
        action = "duplicate" if result.status == CommitStatus.ALREADY_COMMITTED else "credited"
        return WebhookOutcome(event_type=event_type, action=action, user_id=result.user_id)

    def _handle_subscription_checkout(self, event_type: str, session: Dict[str, Any]) -> WebhookOutcome:
        metadata = session.get("metadata") or {}
        user_id = metadata.get("userId")
        plan_identifier = metadata.get("planIdentifier")
        session_id = session.get("id")
        if not user_id or not plan_identifier or not session_id:
            logger.error("Subscription checkout missing metadata", extra={"session_id": session_id})
            return WebhookOutcome(event_type=event_type, action="skipped", detail="missing metadata")
        return self._reset(event_type, str(user_id), plan_identifier, f"checkout:{session_id}")

    def _handle_invoice_paid(self, event_type: str, invoice: Dict[str, Any]) -> WebhookOutcome:
        if invoice.get("billing_reason") != "subscription_cycle":
            return WebhookOutcome(event_type=event_type, action="ignored", detail="not a renewal")
        external_id = invoice.get("subscription")
        invoice_id = invoice.get("id")
        if not external_id or not invoice_id:
            return WebhookOutcome(event_type=event_type, action="skipped", detail="missing subscription")

        subscription = self.store.find_subscription_by_external_id(str(external_id))
        if subscription is None:
            logger.warning("Renewal for unknown subscription", extra={"subscription_id": external_id})
            return WebhookOutcome(event_type=event_type, action="skipped", detail="unknown subscription")
        return self._reset(event_type, subscription.user_id, subscription.plan_identifier, f"renewal:{invoice_id}")

    def _reset(self, event_type: str, user_id: str, plan_identifier: str, idempotency_key: str) -> WebhookOutcome:
        plan = self.catalog.find_plan(plan_identifier)
        if plan is None:
            logger.error(
                "Cannot reset balances for unknown plan",
                extra={"user_id": user_id, "plan_identifier": plan_identifier},
            )
            return WebhookOutcome(event_type=event_type, action="skipped", user_id=user_id, detail="unknown plan")
        if self.store.get_user(user_id) is None:
            logger.error(
                "Cannot reset balances for unknown user",
                extra={"user_id": user_id, "idempotency_key": idempotency_key},
            )
            raise UserNotFoundError(user_id)

        applied = self.ledger.reset_to_plan_limit(user_id, plan, idempotency_key)
        if not applied:
            return WebhookOutcome(event_type=event_type, action="duplicate", user_id=user_id)
        self.store.set_next_renewal(user_id, self._next_renewal(utcnow()))
        return WebhookOutcome(event_type=event_type, action="reset", user_id=user_id, detail=plan.identifier)

    def _next_renewal(self, now: datetime) -> datetime:
        return now + self.credit_renewal_interval
