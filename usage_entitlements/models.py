from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional

UNLIMITED = -1
DISABLED = 0


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on read)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def require_user_id(user_id: Any) -> str:
    normalized = str(user_id).strip() if user_id is not None else ""
    if not normalized:
        raise ValueError("user_id is required")
    return normalized


class SubscriptionStatus(str, Enum):
    """Billing-provider subscription status, plus the derived `expired`."""
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"
    EXPIRED = "expired"


@dataclass(frozen=True)
class PlanDefinition:
    """A subscription tier and its per-feature limits (-1 unlimited, 0 disabled)."""

    identifier: str
    title: str = ""
    price_cents: int = 0
    limits: Mapping[str, int] = field(default_factory=dict)

    def __post_init__(self) -> None:
        identifier = str(self.identifier).strip()
        if not identifier:
            raise ValueError("plan identifier is required")
        for feature_key, limit in self.limits.items():
            if int(limit) < UNLIMITED:
                raise ValueError(f"plan '{identifier}' has invalid limit for {feature_key}: {limit}")
        object.__setattr__(self, "identifier", identifier)
        object.__setattr__(
            self,
            "limits",
            MappingProxyType({str(k).strip(): int(v) for k, v in self.limits.items()}),
        )

    def limit_for(self, feature_key: str) -> int:
        return self.limits.get(feature_key, DISABLED)


@dataclass(frozen=True)
class PlansConfig:
    """Parsed catalog plus the policy knobs stored next to it."""

    plans: Mapping[str, PlanDefinition]
    grace_period_days: int = 3
    trial_plan: str = "trial"
    expired_plan: str = "expired"

    def __post_init__(self) -> None:
        object.__setattr__(self, "plans", MappingProxyType(dict(self.plans)))


@dataclass(frozen=True)
class UserRecord:
    id: str
    created_at: datetime
    email: Optional[str] = None
    trial_ends_at: Optional[datetime] = None
    next_credit_renewal_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "id", require_user_id(self.id))
        object.__setattr__(self, "created_at", ensure_utc(self.created_at))
        object.__setattr__(self, "trial_ends_at", ensure_utc(self.trial_ends_at))
        object.__setattr__(self, "next_credit_renewal_at", ensure_utc(self.next_credit_renewal_at))


@dataclass(frozen=True)
class SubscriptionSnapshot:
    """Locally cached copy of a billing-provider subscription."""

    id: str
    user_id: str
    plan_identifier: str
    status: SubscriptionStatus
    created_at: datetime
    external_id: Optional[str] = None
    current_period_end: Optional[datetime] = None
    trial_end: Optional[datetime] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "user_id", require_user_id(self.user_id))
        object.__setattr__(self, "status", SubscriptionStatus(self.status))
        object.__setattr__(self, "created_at", ensure_utc(self.created_at))
        object.__setattr__(self, "current_period_end", ensure_utc(self.current_period_end))
        object.__setattr__(self, "trial_end", ensure_utc(self.trial_end))


@dataclass(frozen=True)
class EffectiveState:
    """The billing state that governs a user's limits right now."""

    user_id: str
    status: SubscriptionStatus
    plan_identifier: str
    is_trialing: bool = False
    trial_days_remaining: int = 0
    in_grace_period: bool = False
    has_subscription_history: bool = False
    subscription: Optional[SubscriptionSnapshot] = None

    @property
    def is_expired(self) -> bool:
        return self.status == SubscriptionStatus.EXPIRED


class DenyReason(str, Enum):
    PLAN_EXPIRED = "PLAN_EXPIRED"
    TRIAL_ENDED = "TRIAL_ENDED"
    LIMIT_REACHED = "LIMIT_REACHED"
    FEATURE_DISABLED = "FEATURE_DISABLED"
    NOT_FOUND = "NOT_FOUND"


DENY_MESSAGES: Dict[DenyReason, str] = {
    DenyReason.PLAN_EXPIRED: "Your subscription has ended. Subscribe to continue.",
    DenyReason.TRIAL_ENDED: "Your free trial has ended. Subscribe to continue.",
    DenyReason.LIMIT_REACHED: "You have reached the limit of your current plan.",
    DenyReason.FEATURE_DISABLED: "This feature is not available on your current plan.",
    DenyReason.NOT_FOUND: "Account not found.",
}


@dataclass(frozen=True)
class Decision:
    """Outcome of an entitlement check. No balance is debited by a decision."""

    allowed: bool
    user_id: str
    feature: str
    quantity: int = 1
    reason: Optional[DenyReason] = None
    plan_identifier: Optional[str] = None
    limit: int = DISABLED
    balance: Optional[int] = None

    @classmethod
    def allow(cls, *, user_id: str, feature: str, quantity: int, plan_identifier: str,
              limit: int, balance: Optional[int]) -> "Decision":
        return cls(
            allowed=True,
            user_id=user_id,
            feature=feature,
            quantity=quantity,
            plan_identifier=plan_identifier,
            limit=limit,
            balance=balance,
        )

    @classmethod
    def deny(cls, reason: DenyReason, *, user_id: str, feature: str, quantity: int,
             plan_identifier: Optional[str] = None, limit: int = DISABLED,
             balance: Optional[int] = None) -> "Decision":
        return cls(
            allowed=False,
            user_id=user_id,
            feature=feature,
            quantity=quantity,
            reason=reason,
            plan_identifier=plan_identifier,
            limit=limit,
            balance=balance,
        )

    @property
    def is_unlimited(self) -> bool:
        return self.limit == UNLIMITED

    def to_dict(self) -> dict:
        payload: dict = {
            "allowed": self.allowed,
            "feature": self.feature,
            "quantity": self.quantity,
            "plan_identifier": self.plan_identifier,
            "limit": self.limit,
            "balance": self.balance,
        }
        if self.reason is not None:
            payload["error"] = self.reason.value
            payload["message"] = DENY_MESSAGES[self.reason]
        return payload


class CommitStatus(str, Enum):
    COMMITTED = "committed"
    ALREADY_COMMITTED = "already_committed"
    REJECTED = "rejected"


@dataclass(frozen=True)
class CommitResult:
    status: CommitStatus
    user_id: str
    feature: Optional[str]
    quantity: int
    idempotency_key: str
    balance: Optional[int] = None

    @property
    def succeeded(self) -> bool:
        """True when the usage is accounted for (committed now or earlier)."""
        return self.status in (CommitStatus.COMMITTED, CommitStatus.ALREADY_COMMITTED)


class LedgerEventKind(str, Enum):
    DEBIT = "debit"
    UNMETERED = "unmetered"  # usage of an unlimited feature, recorded for audit only
    CREDIT = "credit"
    RELEASE = "release"
    RESET = "reset"


@dataclass(frozen=True)
class UsageEventRecord:
    """Append-only ledger entry."""

    idempotency_key: str
    user_id: str
    kind: LedgerEventKind
    quantity: int
    created_at: datetime
    feature: Optional[str] = None


@dataclass(frozen=True)
class BillingDetails:
    """Display-oriented billing details; never used for entitlement decisions."""

    user_id: str
    status: SubscriptionStatus
    plan_identifier: str
    current_period_end: Optional[datetime] = None
    trial_days_remaining: int = 0
    source: str = "local"  # local | cache | provider
