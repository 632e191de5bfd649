"""
Usage recorder: commits usage after the gated action has succeeded.

Every write is keyed by a caller-supplied idempotency key. Replaying a key
returns ALREADY_COMMITTED and leaves balances untouched. A commit that
loses the race for the last unit comes back REJECTED: the action already
happened, the shortfall is logged, and the caller must not retry the action.
"""

import logging
from typing import Optional

from .audit import EntitlementAuditLogger
from .catalog import PlanCatalog
from .errors import UserNotFoundError
from .features import FeatureKey, is_counted_feature, normalize_feature
from .ledger import UsageLedger, require_idempotency_key, require_quantity
from .models import (
    UNLIMITED,
    CommitResult,
    CommitStatus,
    require_user_id,
)
from .subscription_state import SubscriptionStateReader

logger = logging.getLogger(__name__)


class UsageRecorder:
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

    def _current_limit(self, user_id: str, feature_key: str) -> Optional[int]:
        try:
            state = self.reader.get_effective_state(user_id)
        except UserNotFoundError:
            return None
        return self.catalog.get_limit(self.catalog.find_plan(state.plan_identifier), feature_key)

    def _finish(self, result: CommitResult) -> CommitResult:
        if result.status == CommitStatus.REJECTED:
            self.audit.log_commit_rejected(result)
        elif result.status == CommitStatus.ALREADY_COMMITTED:
            self.audit.log_duplicate_commit(result)
        else:
            logger.info(
                "Usage committed",
                extra={
                    "user_id": result.user_id,
                    "feature": result.feature,
                    "quantity": result.quantity,
                    "idempotency_key": result.idempotency_key,
                    "balance": result.balance,
                },
            )
        return result

    def commit(self, user_id: str, feature: FeatureKey, quantity: int, idempotency_key: str) -> CommitResult:
        user_id = require_user_id(user_id)
        feature_key = normalize_feature(feature)
        quantity = require_quantity(quantity)
        idempotency_key = require_idempotency_key(idempotency_key)

        limit = self._current_limit(user_id, feature_key)
        if limit is None:
            return self._finish(CommitResult(
                status=CommitStatus.REJECTED,
                user_id=user_id,
                feature=feature_key,
                quantity=quantity,
                idempotency_key=idempotency_key,
            ))

        if limit == UNLIMITED:
            status = self.ledger.record_unmetered(user_id, feature_key, quantity, idempotency_key)
            balance = None
        else:
            status, balance = self.ledger.debit(
                user_id,
                feature_key,
                quantity,
                idempotency_key,
                counted=is_counted_feature(feature_key),
            )

        return self._finish(CommitResult(
            status=status,
            user_id=user_id,
            feature=feature_key,
            quantity=quantity,
            idempotency_key=idempotency_key,
            balance=balance,
        ))

    def credit(self, user_id: str, feature: FeatureKey, quantity: int, idempotency_key: str) -> CommitResult:
        """Add purchased units (one-time top-up). Not capped by the plan limit."""
        user_id = require_user_id(user_id)
        feature_key = normalize_feature(feature)
        idempotency_key = require_idempotency_key(idempotency_key)

        if self.ledger.store.get_user(user_id) is None:
            return self._finish(CommitResult(
                status=CommitStatus.REJECTED,
                user_id=user_id,
                feature=feature_key,
                quantity=quantity,
                idempotency_key=idempotency_key,
            ))
        status, balance = self.ledger.credit(user_id, feature_key, quantity, idempotency_key)
        return self._finish(CommitResult(
            status=status,
            user_id=user_id,
            feature=feature_key,
            quantity=quantity,
            idempotency_key=idempotency_key,
            balance=balance,
        ))

    def release(self, user_id: str, feature: FeatureKey, quantity: int, idempotency_key: str) -> CommitResult:
        """Return held slots of a counted feature (e.g. an untracked shop); balance is limit minus slots still held."""
        user_id = require_user_id(user_id)
        feature_key = normalize_feature(feature)
        if not is_counted_feature(feature_key):
            raise ValueError(f"{feature_key} is not a counted feature")
        idempotency_key = require_idempotency_key(idempotency_key)

        limit = self._current_limit(user_id, feature_key)
        if limit is None:
            return self._finish(CommitResult(
                status=CommitStatus.REJECTED,
                user_id=user_id,
                feature=feature_key,
                quantity=quantity,
                idempotency_key=idempotency_key,
            ))

        status, balance = self.ledger.release(
            user_id,
            feature_key,
            quantity,
            idempotency_key,
            limit=max(limit, 0),
        )
        return self._finish(CommitResult(
            status=status,
            user_id=user_id,
            feature=feature_key,
            quantity=quantity,
            idempotency_key=idempotency_key,
            balance=balance,
        ))
