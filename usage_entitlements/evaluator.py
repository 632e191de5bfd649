"""
Entitlement evaluation: expiry -> plan limit -> balance.

check_and_reserve answers allow/deny without debiting; the debit happens in
UsageRecorder.commit once the gated action has succeeded.

Precedence:
- unknown user: NOT_FOUND
- expired state and the expired plan does not grant the feature:
  PLAN_EXPIRED if the user ever subscribed, else TRIAL_ENDED
- limit -1: allowed, balance not consulted
- limit 0 (or plan missing from the catalog): FEATURE_DISABLED
- balance < quantity: LIMIT_REACHED
"""

import logging
from typing import Optional

from .audit import EntitlementAuditLogger
from .catalog import PlanCatalog
from .errors import UserNotFoundError
from .features import FeatureKey, normalize_feature
from .ledger import UsageLedger, require_quantity
from .models import (
    DISABLED,
    UNLIMITED,
    Decision,
    DenyReason,
    require_user_id,
)
from .subscription_state import SubscriptionStateReader

logger = logging.getLogger(__name__)


class EntitlementEvaluator:
    def __init__(
        self,
        catalog: PlanCatalog,
        reader: SubscriptionStateReader,
        ledger: UsageLedger,
        audit: Optional[EntitlementAuditLogger] = None,
    ) -> None:
        self.catalog = catalog
        self.reader = reader
        self.ledger = ledger
        self.audit = audit or EntitlementAuditLogger()

    def check_and_reserve(self, user_id: str, feature: FeatureKey, quantity: int = 1) -> Decision:
        user_id = require_user_id(user_id)
        feature_key = normalize_feature(feature)
        quantity = require_quantity(quantity)

        decision = self._evaluate(user_id, feature_key, quantity)
        if not decision.allowed:
            self.audit.log_denied(decision)
        return decision

    def _evaluate(self, user_id: str, feature_key: str, quantity: int) -> Decision:
        try:
            state = self.reader.get_effective_state(user_id)
        except UserNotFoundError:
            return Decision.deny(DenyReason.NOT_FOUND, user_id=user_id, feature=feature_key, quantity=quantity)

        plan = self.catalog.find_plan(state.plan_identifier)
        limit = self.catalog.get_limit(plan, feature_key)
        if plan is None:
            logger.warning(
                "Effective plan missing from catalog; failing closed",
                extra={"user_id": user_id, "plan_identifier": state.plan_identifier},
            )

        deny_kwargs = dict(
            user_id=user_id,
            feature=feature_key,
            quantity=quantity,
            plan_identifier=state.plan_identifier,
            limit=limit,
        )

        if state.is_expired and limit == DISABLED:
            reason = DenyReason.PLAN_EXPIRED if state.has_subscription_history else DenyReason.TRIAL_ENDED
            return Decision.deny(reason, **deny_kwargs)

        if limit == UNLIMITED:
            if state.in_grace_period:
                self.audit.log_degraded_access(state, feature_key)
            return Decision.allow(
                user_id=user_id,
                feature=feature_key,
                quantity=quantity,
                plan_identifier=state.plan_identifier,
                limit=limit,
                balance=None,
            )

        if limit == DISABLED:
            return Decision.deny(DenyReason.FEATURE_DISABLED, **deny_kwargs)

        balance = self.ledger.get_balance(user_id, feature_key)
        if balance < quantity:
            return Decision.deny(DenyReason.LIMIT_REACHED, balance=balance, **deny_kwargs)

        if state.in_grace_period:
            self.audit.log_degraded_access(state, feature_key)
        return Decision.allow(
            user_id=user_id,
            feature=feature_key,
            quantity=quantity,
            plan_identifier=state.plan_identifier,
            limit=limit,
            balance=balance,
        )
