"""
Audit logging for entitlement enforcement.

Emits structured events for denials, rejected commits (the gated action
ran but no credit was deducted) and degraded access (past_due grace).
An optional sink receives the same payloads, e.g. to forward to an alerting
pipeline. Audit failures are logged and never block the caller.
"""

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional

from .models import CommitResult, Decision, EffectiveState

logger = logging.getLogger(__name__)

AuditSink = Callable[[str, dict], None]


class AuditAction(str, Enum):
    ENTITLEMENT_DENIED = "entitlement.denied"
    COMMIT_REJECTED = "entitlement.commit_rejected"
    COMMIT_DUPLICATE = "entitlement.commit_duplicate"
    DEGRADED_ACCESS_USED = "entitlement.degraded_access_used"


class EntitlementAuditLogger:
    def __init__(self, sink: Optional[AuditSink] = None) -> None:
        self._sink = sink

    def _emit(self, action: AuditAction, payload: dict) -> None:
        payload = dict(payload, action=action.value, occurred_at=datetime.now(timezone.utc).isoformat())
        if self._sink is None:
            return
        try:
            self._sink(action.value, payload)
        except Exception as e:
            logger.error(
                "Failed to deliver entitlement audit event",
                extra={"error": str(e), "action": action.value, "user_id": payload.get("user_id")},
            )

    def log_denied(self, decision: Decision, correlation_id: Optional[str] = None) -> None:
        payload = {
            "user_id": decision.user_id,
            "feature": decision.feature,
            "quantity": decision.quantity,
            "reason": decision.reason.value if decision.reason else None,
            "plan_identifier": decision.plan_identifier,
            "limit": decision.limit,
            "balance": decision.balance,
            "resource_type": "entitlement",
            "correlation_id": correlation_id,
        }
        logger.warning("Entitlement denied", extra=payload)
        self._emit(AuditAction.ENTITLEMENT_DENIED, payload)

    def log_commit_rejected(self, result: CommitResult) -> None:
        payload = {
            "user_id": result.user_id,
            "feature": result.feature,
            "quantity": result.quantity,
            "idempotency_key": result.idempotency_key,
            "balance": result.balance,
        }
        logger.warning(
            "Gated action succeeded but credit could not be deducted",
            extra=payload,
        )
        self._emit(AuditAction.COMMIT_REJECTED, payload)

    def log_duplicate_commit(self, result: CommitResult) -> None:
        payload = {
            "user_id": result.user_id,
            "feature": result.feature,
            "idempotency_key": result.idempotency_key,
        }
        logger.info("Usage already committed", extra=payload)
        self._emit(AuditAction.COMMIT_DUPLICATE, payload)

    def log_degraded_access(self, state: EffectiveState, feature: str) -> None:
        payload = {
            "user_id": state.user_id,
            "feature": feature,
            "billing_state": state.status.value,
            "plan_identifier": state.plan_identifier,
        }
        logger.info("Degraded access used", extra=payload)
        self._emit(AuditAction.DEGRADED_ACCESS_USED, payload)
