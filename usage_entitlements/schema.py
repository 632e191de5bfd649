"""
Relational schema for plans, subscriptions, users and the usage ledger.

Tables:
- plans / plan_limits: the plan catalog (administered out-of-band)
- users: trial window and next credit renewal
- subscriptions: local copy of billing-provider subscriptions (read-only here)
- usage_balances: per user, per feature remaining count; never negative
- usage_events: append-only ledger keyed by a unique idempotency key
"""

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from .db import Base, TimestampMixin, _utcnow, generate_uuid


class Plan(Base, TimestampMixin):
    """Subscription tier. Limits live in plan_limits."""

    __tablename__ = "plans"

    identifier = Column(
        String(100),
        primary_key=True,
        comment="Plan key, e.g. trial, pro, pro-year, expired",
    )
    title = Column(String(255), nullable=False, default="")
    price_cents = Column(Integer, nullable=False, default=0)

    limits = relationship(
        "PlanLimit",
        back_populates="plan",
        cascade="all, delete-orphan",
        lazy="selectin",
    )


class PlanLimit(Base):
    """Per-feature limit for a plan: -1 unlimited, 0 disabled."""

    __tablename__ = "plan_limits"

    id = Column(String(255), primary_key=True, default=generate_uuid)
    plan_identifier = Column(
        String(100),
        ForeignKey("plans.identifier", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    feature_key = Column(String(100), nullable=False)
    limit_value = Column(Integer, nullable=False, default=0)

    plan = relationship("Plan", back_populates="limits")

    __table_args__ = (
        UniqueConstraint("plan_identifier", "feature_key", name="uq_plan_limits_plan_feature"),
        CheckConstraint("limit_value >= -1", name="ck_plan_limits_limit_value"),
    )


class User(Base, TimestampMixin):
    """Account owning balances and a trial window."""

    __tablename__ = "users"

    id = Column(String(255), primary_key=True, comment="User id supplied by the identity layer")
    email = Column(String(255), nullable=True, index=True)
    trial_ends_at = Column(
        DateTime(timezone=True),
        nullable=True,
        comment="End of the free trial; defaults to created_at + trial duration",
    )
    next_credit_renewal_at = Column(
        DateTime(timezone=True),
        nullable=True,
        index=True,
        comment="When the renewal job next resets balances to plan limits",
    )


class Subscription(Base, TimestampMixin):
    """Billing-provider subscription as last written by webhooks."""

    __tablename__ = "subscriptions"

    id = Column(String(255), primary_key=True, default=generate_uuid)
    user_id = Column(
        String(255),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    external_id = Column(
        String(255),
        nullable=True,
        unique=True,
        comment="Billing provider subscription id (e.g. sub_...)",
    )
    plan_identifier = Column(String(100), nullable=False, comment="Plan key this subscription grants")
    status = Column(String(50), nullable=False, default="active")
    current_period_end = Column(DateTime(timezone=True), nullable=True)
    trial_end = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_subscriptions_user_created", "user_id", "created_at"),
    )


class UsageBalance(Base):
    """Remaining count of a metered feature. Written only by the usage ledger."""

    __tablename__ = "usage_balances"

    user_id = Column(
        String(255),
        ForeignKey("users.id", ondelete="CASCADE"),
        primary_key=True,
    )
    feature_key = Column(String(100), primary_key=True)
    balance = Column(Integer, nullable=False, default=0)
    in_use = Column(
        Integer,
        nullable=False,
        default=0,
        comment="Slots currently held; counted features only",
    )
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_usage_balances_non_negative"),
        CheckConstraint("in_use >= 0", name="ck_usage_balances_in_use_non_negative"),
    )


class UsageEvent(Base):
    """Immutable ledger entry; one per applied debit, credit, release or reset."""

    __tablename__ = "usage_events"

    id = Column(String(255), primary_key=True, default=generate_uuid)
    idempotency_key = Column(String(255), nullable=False)
    user_id = Column(String(255), nullable=False, index=True)
    feature_key = Column(String(100), nullable=True, comment="NULL for plan resets")
    kind = Column(String(20), nullable=False)
    quantity = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        UniqueConstraint("idempotency_key", name="uq_usage_events_idempotency_key"),
        CheckConstraint("quantity >= 0", name="ck_usage_events_quantity"),
    )
