"""
Subscription state resolution.

Determines the effective plan for a user from the locally stored
subscriptions and the trial window:

1. Most recently created subscription that is active, trialing, or past_due
   within the grace window -> its plan.
2. Otherwise, inside the trial window -> the trial plan.
3. Otherwise -> the expired plan.

past_due keeps the plan's entitlements until current_period_end plus
grace_period_days (config/plans.json). A past_due subscription without a
period end gets no grace. canceled, incomplete and expired rows are history.
"""

import logging
import math
from datetime import datetime, timedelta
from typing import Callable, Optional

from .billing import StripeBillingClient
from .cache import BillingDetailsCache
from .catalog import PlanCatalog
from .errors import BillingProviderError, UserNotFoundError
from .models import (
    BillingDetails,
    EffectiveState,
    SubscriptionSnapshot,
    SubscriptionStatus,
    UserRecord,
    ensure_utc,
    require_user_id,
    utcnow,
)
from .storage import UsageStore

logger = logging.getLogger(__name__)

DEFAULT_TRIAL_DURATION = timedelta(hours=168)

GOVERNING_STATUSES = (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING)


def _days_remaining(end: Optional[datetime], now: datetime) -> int:
    if end is None or end <= now:
        return 0
    return math.ceil((end - now).total_seconds() / 86400)


class SubscriptionStateReader:
    """Resolves a user's effective billing state without network calls."""

    def __init__(
        self,
        store: UsageStore,
        catalog: PlanCatalog,
        *,
        trial_duration: timedelta = DEFAULT_TRIAL_DURATION,
        clock: Callable[[], datetime] = utcnow,
        billing_client: Optional[StripeBillingClient] = None,
        details_cache: Optional[BillingDetailsCache] = None,
    ) -> None:
        self.store = store
        self.catalog = catalog
        self.trial_duration = trial_duration
        self._clock = clock
        self._billing_client = billing_client
        self._details_cache = details_cache or BillingDetailsCache()

    def now(self) -> datetime:
        return ensure_utc(self._clock())

    def trial_ends_at(self, user: UserRecord) -> datetime:
        return user.trial_ends_at or (user.created_at + self.trial_duration)

    def is_in_grace_period(self, subscription: SubscriptionSnapshot, now: datetime) -> bool:
        if subscription.status != SubscriptionStatus.PAST_DUE:
            return False
        if subscription.current_period_end is None:
            return False
        grace_ends = subscription.current_period_end + timedelta(days=self.catalog.grace_period_days)
        return now <= grace_ends

    def get_effective_state(self, user_id: str, now: Optional[datetime] = None) -> EffectiveState:
        user_id = require_user_id(user_id)
        user = self.store.get_user(user_id)
        if user is None:
            raise UserNotFoundError(user_id)

        now = ensure_utc(now) if now is not None else self.now()
        subscriptions = self.store.list_subscriptions(user_id)

        for subscription in subscriptions:
            in_grace = self.is_in_grace_period(subscription, now)
            if subscription.status not in GOVERNING_STATUSES and not in_grace:
                continue
            is_trialing = subscription.status == SubscriptionStatus.TRIALING
            return EffectiveState(
                user_id=user_id,
                status=subscription.status,
                plan_identifier=subscription.plan_identifier,
                is_trialing=is_trialing,
                trial_days_remaining=_days_remaining(subscription.trial_end, now) if is_trialing else 0,
                in_grace_period=in_grace,
                has_subscription_history=True,
                subscription=subscription,
            )

        trial_ends_at = self.trial_ends_at(user)
        if now < trial_ends_at:
            return EffectiveState(
                user_id=user_id,
                status=SubscriptionStatus.TRIALING,
                plan_identifier=self.catalog.trial_plan,
                is_trialing=True,
                trial_days_remaining=_days_remaining(trial_ends_at, now),
                has_subscription_history=bool(subscriptions),
            )

        return EffectiveState(
            user_id=user_id,
            status=SubscriptionStatus.EXPIRED,
            plan_identifier=self.catalog.expired_plan,
            has_subscription_history=bool(subscriptions),
            subscription=subscriptions[0] if subscriptions else None,
        )

    async def get_billing_details(self, user_id: str) -> BillingDetails:
        """
        Effective state plus the current period end for display.

        The provider is consulted best-effort: cache first, then the API; on
        failure the locally stored period end is returned.
        """
        state = self.get_effective_state(user_id)
        subscription = state.subscription
        details = BillingDetails(
            user_id=state.user_id,
            status=state.status,
            plan_identifier=state.plan_identifier,
            current_period_end=subscription.current_period_end if subscription else None,
            trial_days_remaining=state.trial_days_remaining,
        )
        if subscription is None or not subscription.external_id:
            return details

        cached = self._details_cache.get(subscription.external_id)
        if cached is not None:
            return BillingDetails(
                user_id=details.user_id,
                status=details.status,
                plan_identifier=details.plan_identifier,
                current_period_end=cached.current_period_end or details.current_period_end,
                trial_days_remaining=details.trial_days_remaining,
                source="cache",
            )

        if self._billing_client is None:
            return details

        try:
            remote = await self._billing_client.get_subscription(subscription.external_id)
        except BillingProviderError as exc:
            logger.warning(
                "Billing provider unavailable, using local subscription details",
                extra={"user_id": state.user_id, "subscription_id": subscription.external_id, "error": str(exc)},
            )
            return details

        self._details_cache.set(remote)
        return BillingDetails(
            user_id=details.user_id,
            status=details.status,
            plan_identifier=details.plan_identifier,
            current_period_end=remote.current_period_end or details.current_period_end,
            trial_days_remaining=details.trial_days_remaining,
            source="provider",
        )
