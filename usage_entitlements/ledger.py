"""
Usage ledger: the only writer of per-user, per-feature balances.

Balances are never negative. Debits that would cross zero are rejected by
the store's conditional update, never clamped.
"""

import logging
from typing import Dict, FrozenSet, Optional

from .catalog import PlanCatalog
from .features import COUNTED_FEATURES, FeatureKey, normalize_feature
from .models import (
    UNLIMITED,
    CommitStatus,
    PlanDefinition,
    UserRecord,
    require_user_id,
)
from .storage import LedgerWrite, UsageStore

logger = logging.getLogger(__name__)


def require_quantity(quantity: int) -> int:
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise ValueError("quantity must be a positive integer")
    return quantity


def require_idempotency_key(idempotency_key: str) -> str:
    normalized = str(idempotency_key or "").strip()
    if not normalized:
        raise ValueError("idempotency_key is required")
    return normalized


def balances_for_plan(plan: PlanDefinition) -> Dict[str, int]:
    """Balance values a plan grants. Unlimited features carry 0; their balance is never read."""
    return {
        feature: (0 if limit == UNLIMITED else limit)
        for feature, limit in plan.limits.items()
    }


def counted_features_for_plan(plan: PlanDefinition) -> FrozenSet[str]:
    """Counted features the plan meters; their reset value is reduced by the slots in use."""
    return frozenset(
        feature for feature, limit in plan.limits.items()
        if feature in COUNTED_FEATURES and limit != UNLIMITED
    )


class UsageLedger:
    def __init__(self, store: UsageStore, catalog: PlanCatalog) -> None:
        self.store = store
        self.catalog = catalog

    def get_balance(self, user_id: str, feature: FeatureKey) -> int:
        balance = self.store.get_balance(require_user_id(user_id), normalize_feature(feature))
        return balance if balance is not None else 0

    def get_balances(self, user_id: str) -> Dict[str, int]:
        return self.store.get_balances(require_user_id(user_id))

    def get_in_use(self, user_id: str, feature: FeatureKey) -> int:
        return self.store.get_in_use(require_user_id(user_id), normalize_feature(feature))

    def set_balance(self, user_id: str, feature: FeatureKey, value: int) -> None:
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise ValueError("balance must be a non-negative integer")
        self.store.set_balance(require_user_id(user_id), normalize_feature(feature), value)

    def _apply_plan(self, user_id: str, plan: PlanDefinition, idempotency_key: Optional[str]) -> bool:
        return self.store.apply_reset(
            user_id,
            balances_for_plan(plan),
            idempotency_key,
            counted=counted_features_for_plan(plan),
        )

    def reset_to_plan_limit(
        self,
        user_id: str,
        plan: PlanDefinition,
        idempotency_key: Optional[str] = None,
    ) -> bool:
        """
        Set every feature balance to the plan's limit, whatever it was before.

        Counted features (shop tracking) keep their slots in use, so their
        balance becomes max(limit - in_use, 0). Called by renewal
        collaborators only. Returns False when the reset identified by
        idempotency_key was already applied.
        """
        user_id = require_user_id(user_id)
        applied = self._apply_plan(user_id, plan, idempotency_key)
        if applied:
            logger.info(
                "Balances reset to plan limits",
                extra={"user_id": user_id, "plan_identifier": plan.identifier, "idempotency_key": idempotency_key},
            )
        else:
            logger.info(
                "Balance reset already applied",
                extra={"user_id": user_id, "plan_identifier": plan.identifier, "idempotency_key": idempotency_key},
            )
        return applied

    def initialize_user(self, user: UserRecord) -> None:
        """Seed a new account's balances from the trial plan."""
        self.store.save_user(user)
        trial = self.catalog.find_plan(self.catalog.trial_plan)
        if trial is None:
            logger.warning("Trial plan missing; user starts with no balances", extra={"user_id": user.id})
            return
        self._apply_plan(user.id, trial, f"signup:{user.id}")

    # Mutations used by the usage recorder

    def debit(
        self,
        user_id: str,
        feature: FeatureKey,
        quantity: int,
        idempotency_key: str,
        *,
        counted: bool = False,
    ) -> LedgerWrite:
        return self.store.debit(
            require_user_id(user_id),
            normalize_feature(feature),
            require_quantity(quantity),
            require_idempotency_key(idempotency_key),
            counted=counted,
        )

    def credit(self, user_id: str, feature: FeatureKey, quantity: int, idempotency_key: str) -> LedgerWrite:
        return self.store.credit(
            require_user_id(user_id),
            normalize_feature(feature),
            require_quantity(quantity),
            require_idempotency_key(idempotency_key),
        )

    def release(
        self,
        user_id: str,
        feature: FeatureKey,
        quantity: int,
        idempotency_key: str,
        *,
        limit: int,
    ) -> LedgerWrite:
        if limit < 0:
            raise ValueError("limit must be >= 0")
        return self.store.release(
            require_user_id(user_id),
            normalize_feature(feature),
            require_quantity(quantity),
            require_idempotency_key(idempotency_key),
            limit=limit,
        )

    def record_unmetered(self, user_id: str, feature: FeatureKey, quantity: int, idempotency_key: str) -> CommitStatus:
        return self.store.record_unmetered(
            require_user_id(user_id),
            normalize_feature(feature),
            require_quantity(quantity),
            require_idempotency_key(idempotency_key),
        )
