"""
Storage port for the entitlement core.

UsageStore is the repository interface the ledger, reader and renewal job
depend on. Two implementations:
- SqlAlchemyUsageStore: relational store; debits are a conditional
  UPDATE ... WHERE balance >= quantity inside the same transaction as the
  usage_events insert, so concurrent commits can never overdraw a balance.
- InMemoryUsageStore: lock-protected dictionaries with the same semantics,
  used by tests and local tooling.

A write whose idempotency key already has a ledger event is ALREADY_COMMITTED.
Any other database failure, including constraint violations, raises
StorageUnavailableError.

Counted features also track in_use (slots held). Their balance is always
max(limit - in_use, 0): resets keep in_use, releases lower it.
"""

import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Callable, Dict, FrozenSet, List, Optional, Tuple

from sqlalchemy import case, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from .errors import StorageUnavailableError
from .models import (
    CommitStatus,
    LedgerEventKind,
    SubscriptionSnapshot,
    UsageEventRecord,
    UserRecord,
    ensure_utc,
    utcnow,
)
from .schema import Subscription, UsageBalance, UsageEvent, User

logger = logging.getLogger(__name__)

LedgerWrite = Tuple[CommitStatus, Optional[int]]


class UsageStore(ABC):
    """Persistence operations required by the entitlement core."""

    # Users

    @abstractmethod
    def get_user(self, user_id: str) -> Optional[UserRecord]:
        ...

    @abstractmethod
    def save_user(self, user: UserRecord) -> None:
        ...

    @abstractmethod
    def set_next_renewal(self, user_id: str, renew_at: Optional[datetime]) -> None:
        ...

    @abstractmethod
    def list_users_due_for_renewal(self, now: datetime) -> List[UserRecord]:
        ...

    # Subscriptions (written by billing webhooks, read by the core)

    @abstractmethod
    def list_subscriptions(self, user_id: str) -> List[SubscriptionSnapshot]:
        """Return the user's subscriptions, most recently created first."""

    @abstractmethod
    def find_subscription_by_external_id(self, external_id: str) -> Optional[SubscriptionSnapshot]:
        ...

    @abstractmethod
    def save_subscription(self, subscription: SubscriptionSnapshot) -> None:
        ...

    # Balances

    @abstractmethod
    def get_balance(self, user_id: str, feature: str) -> Optional[int]:
        ...

    @abstractmethod
    def get_balances(self, user_id: str) -> Dict[str, int]:
        ...

    @abstractmethod
    def get_in_use(self, user_id: str, feature: str) -> int:
        """Slots currently held for a counted feature (0 when none)."""

    @abstractmethod
    def set_balance(self, user_id: str, feature: str, value: int) -> None:
        ...

    @abstractmethod
    def debit(
        self,
        user_id: str,
        feature: str,
        quantity: int,
        idempotency_key: str,
        *,
        counted: bool = False,
    ) -> LedgerWrite:
        """Atomically decrement when balance >= quantity and append the ledger event.

        counted=True also adds quantity to in_use.
        """

    @abstractmethod
    def credit(self, user_id: str, feature: str, quantity: int, idempotency_key: str) -> LedgerWrite:
        """Atomically increment and append a CREDIT event."""

    @abstractmethod
    def release(self, user_id: str, feature: str, quantity: int, idempotency_key: str, *, limit: int) -> LedgerWrite:
        """Return held slots of a counted feature; balance becomes max(limit - in_use, 0)."""

    @abstractmethod
    def record_unmetered(self, user_id: str, feature: str, quantity: int, idempotency_key: str) -> CommitStatus:
        """Append a ledger event without touching the balance."""

    @abstractmethod
    def apply_reset(
        self,
        user_id: str,
        balances: Dict[str, int],
        idempotency_key: Optional[str] = None,
        *,
        counted: FrozenSet[str] = frozenset(),
    ) -> bool:
        """Overwrite balances; False when the idempotency key was already applied.

        For features in counted the value is the plan limit and the balance
        becomes max(limit - in_use, 0).
        """

    # Ledger

    @abstractmethod
    def get_event(self, idempotency_key: str) -> Optional[UsageEventRecord]:
        ...

    @abstractmethod
    def list_events(self, user_id: str) -> List[UsageEventRecord]:
        ...


def _user_from_row(row: User) -> UserRecord:
    return UserRecord(
        id=row.id,
        email=row.email,
        created_at=row.created_at,
        trial_ends_at=row.trial_ends_at,
        next_credit_renewal_at=row.next_credit_renewal_at,
    )


def _subscription_from_row(row: Subscription) -> SubscriptionSnapshot:
    return SubscriptionSnapshot(
        id=row.id,
        user_id=row.user_id,
        external_id=row.external_id,
        plan_identifier=row.plan_identifier,
        status=row.status,
        created_at=row.created_at,
        current_period_end=row.current_period_end,
        trial_end=row.trial_end,
    )


def _event_from_row(row: UsageEvent) -> UsageEventRecord:
    return UsageEventRecord(
        idempotency_key=row.idempotency_key,
        user_id=row.user_id,
        feature=row.feature_key,
        kind=LedgerEventKind(row.kind),
        quantity=row.quantity,
        created_at=ensure_utc(row.created_at),
    )


def _non_negative(expression):
    return case((expression > 0, expression), else_=0)


class SqlAlchemyUsageStore(UsageStore):
    """Relational UsageStore. One short session per operation."""

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    def _read(self, operation: str, fn):
        session = self._session_factory()
        try:
            return fn(session)
        except SQLAlchemyError as exc:
            logger.exception("Usage store read failed", extra={"operation": operation})
            raise StorageUnavailableError(operation, exc) from exc
        finally:
            session.close()

    def _write(self, operation: str, fn):
        session = self._session_factory()
        try:
            result = fn(session)
            session.commit()
            return result
        except SQLAlchemyError as exc:
            session.rollback()
            logger.exception("Usage store write failed", extra={"operation": operation})
            raise StorageUnavailableError(operation, exc) from exc
        finally:
            session.close()

    def _ledger_write(self, operation: str, idempotency_key: Optional[str], user_id: str, fn):
        """
        Run fn in one transaction that also inserts the ledger event.

        Returns (True, result) on commit and (False, None) when the key was
        already recorded. Other integrity errors (e.g. an unknown user) are
        not replays and raise StorageUnavailableError.
        """
        session = self._session_factory()
        try:
            result = fn(session)
            session.commit()
            return True, result
        except IntegrityError as exc:
            session.rollback()
            conflict = exc
        except SQLAlchemyError as exc:
            session.rollback()
            logger.exception("Usage ledger write failed", extra={"operation": operation, "user_id": user_id})
            raise StorageUnavailableError(operation, exc) from exc
        finally:
            session.close()

        if idempotency_key is not None and self.get_event(idempotency_key) is not None:
            return False, None
        logger.error(
            "Usage ledger write violated a constraint",
            extra={"operation": operation, "user_id": user_id, "idempotency_key": idempotency_key},
        )
        raise StorageUnavailableError(operation, conflict) from conflict

    @staticmethod
    def _add_event(
        session: Session,
        idempotency_key: str,
        user_id: str,
        feature: Optional[str],
        kind: LedgerEventKind,
        quantity: int,
    ) -> None:
        session.add(UsageEvent(
            idempotency_key=idempotency_key,
            user_id=user_id,
            feature_key=feature,
            kind=kind.value,
            quantity=quantity,
        ))
        session.flush()

    @staticmethod
    def _select_balance(session: Session, user_id: str, feature: str) -> int:
        return session.execute(
            select(UsageBalance.balance).where(
                UsageBalance.user_id == user_id,
                UsageBalance.feature_key == feature,
            )
        ).scalar_one()

    # Users

    def get_user(self, user_id: str) -> Optional[UserRecord]:
        def _get(session: Session) -> Optional[UserRecord]:
            row = session.get(User, user_id)
            return _user_from_row(row) if row is not None else None

        return self._read("get_user", _get)

    def save_user(self, user: UserRecord) -> None:
        def _save(session: Session) -> None:
            row = session.get(User, user.id)
            if row is None:
                row = User(id=user.id, created_at=user.created_at)
                session.add(row)
            row.email = user.email
            row.trial_ends_at = user.trial_ends_at
            row.next_credit_renewal_at = user.next_credit_renewal_at

        self._write("save_user", _save)

    def set_next_renewal(self, user_id: str, renew_at: Optional[datetime]) -> None:
        def _set(session: Session) -> None:
            session.execute(
                update(User)
                .where(User.id == user_id)
                .values(next_credit_renewal_at=renew_at)
                .execution_options(synchronize_session=False)
            )

        self._write("set_next_renewal", _set)

    def list_users_due_for_renewal(self, now: datetime) -> List[UserRecord]:
        def _list(session: Session) -> List[UserRecord]:
            rows = session.execute(
                select(User)
                .where(User.next_credit_renewal_at.isnot(None), User.next_credit_renewal_at <= now)
                .order_by(User.next_credit_renewal_at.asc())
            ).scalars().all()
            return [_user_from_row(row) for row in rows]

        return self._read("list_users_due_for_renewal", _list)

    # Subscriptions

    def list_subscriptions(self, user_id: str) -> List[SubscriptionSnapshot]:
        def _list(session: Session) -> List[SubscriptionSnapshot]:
            rows = session.execute(
                select(Subscription)
                .where(Subscription.user_id == user_id)
                .order_by(Subscription.created_at.desc())
            ).scalars().all()
            return [_subscription_from_row(row) for row in rows]

        return self._read("list_subscriptions", _list)

    def find_subscription_by_external_id(self, external_id: str) -> Optional[SubscriptionSnapshot]:
        def _find(session: Session) -> Optional[SubscriptionSnapshot]:
            row = session.execute(
                select(Subscription).where(Subscription.external_id == external_id)
            ).scalars().first()
            return _subscription_from_row(row) if row is not None else None

        return self._read("find_subscription_by_external_id", _find)

    def save_subscription(self, subscription: SubscriptionSnapshot) -> None:
        def _save(session: Session) -> None:
            row = session.get(Subscription, subscription.id)
            if row is None:
                row = Subscription(id=subscription.id, created_at=subscription.created_at)
                session.add(row)
            row.user_id = subscription.user_id
            row.external_id = subscription.external_id
            row.plan_identifier = subscription.plan_identifier
            row.status = subscription.status.value
            row.current_period_end = subscription.current_period_end
            row.trial_end = subscription.trial_end

        self._write("save_subscription", _save)

    # Balances

    @staticmethod
    def _balance_row(session: Session, user_id: str, feature: str) -> Optional[UsageBalance]:
        return session.get(UsageBalance, (user_id, feature))

    def get_balance(self, user_id: str, feature: str) -> Optional[int]:
        def _get(session: Session) -> Optional[int]:
            return session.execute(
                select(UsageBalance.balance).where(
                    UsageBalance.user_id == user_id,
                    UsageBalance.feature_key == feature,
                )
            ).scalar_one_or_none()

        return self._read("get_balance", _get)

    def get_balances(self, user_id: str) -> Dict[str, int]:
        def _get(session: Session) -> Dict[str, int]:
            rows = session.execute(
                select(UsageBalance.feature_key, UsageBalance.balance).where(UsageBalance.user_id == user_id)
            ).all()
            return {feature: balance for feature, balance in rows}

        return self._read("get_balances", _get)

    def get_in_use(self, user_id: str, feature: str) -> int:
        def _get(session: Session) -> int:
            value = session.execute(
                select(UsageBalance.in_use).where(
                    UsageBalance.user_id == user_id,
                    UsageBalance.feature_key == feature,
                )
            ).scalar_one_or_none()
            return value or 0

        return self._read("get_in_use", _get)

    def set_balance(self, user_id: str, feature: str, value: int) -> None:
        def _set(session: Session) -> None:
            row = self._balance_row(session, user_id, feature)
            if row is None:
                session.add(UsageBalance(user_id=user_id, feature_key=feature, balance=value, in_use=0))
            else:
                row.balance = value
                row.updated_at = utcnow()

        self._write("set_balance", _set)

    def debit(
        self,
        user_id: str,
        feature: str,
        quantity: int,
        idempotency_key: str,
        *,
        counted: bool = False,
    ) -> LedgerWrite:
        values = {"balance": UsageBalance.balance - quantity, "updated_at": utcnow()}
        if counted:
            values["in_use"] = UsageBalance.in_use + quantity

        def _debit(session: Session) -> Optional[int]:
            self._add_event(session, idempotency_key, user_id, feature, LedgerEventKind.DEBIT, quantity)
            result = session.execute(
                update(UsageBalance)
                .where(
                    UsageBalance.user_id == user_id,
                    UsageBalance.feature_key == feature,
                    UsageBalance.balance >= quantity,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise _Rejected()
            return self._select_balance(session, user_id, feature)

        try:
            applied, balance = self._ledger_write("debit", idempotency_key, user_id, _debit)
        except _Rejected:
            return CommitStatus.REJECTED, self.get_balance(user_id, feature)
        if not applied:
            return CommitStatus.ALREADY_COMMITTED, self.get_balance(user_id, feature)
        return CommitStatus.COMMITTED, balance

    def credit(self, user_id: str, feature: str, quantity: int, idempotency_key: str) -> LedgerWrite:
        def _credit(session: Session) -> int:
            self._add_event(session, idempotency_key, user_id, feature, LedgerEventKind.CREDIT, quantity)
            result = session.execute(
                update(UsageBalance)
                .where(UsageBalance.user_id == user_id, UsageBalance.feature_key == feature)
                .values(balance=UsageBalance.balance + quantity, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                session.add(UsageBalance(user_id=user_id, feature_key=feature, balance=quantity, in_use=0))
                session.flush()
            return self._select_balance(session, user_id, feature)

        applied, balance = self._ledger_write("credit", idempotency_key, user_id, _credit)
        if not applied:
            return CommitStatus.ALREADY_COMMITTED, self.get_balance(user_id, feature)
        return CommitStatus.COMMITTED, balance

    def release(self, user_id: str, feature: str, quantity: int, idempotency_key: str, *, limit: int) -> LedgerWrite:
        held = _non_negative(UsageBalance.in_use - quantity)

        def _release(session: Session) -> int:
            self._add_event(session, idempotency_key, user_id, feature, LedgerEventKind.RELEASE, quantity)
            result = session.execute(
                update(UsageBalance)
                .where(UsageBalance.user_id == user_id, UsageBalance.feature_key == feature)
                .values(in_use=held, balance=_non_negative(limit - held), updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise _Rejected()
            return self._select_balance(session, user_id, feature)

        try:
            applied, balance = self._ledger_write("release", idempotency_key, user_id, _release)
        except _Rejected:
            return CommitStatus.REJECTED, None
        if not applied:
            return CommitStatus.ALREADY_COMMITTED, self.get_balance(user_id, feature)
        return CommitStatus.COMMITTED, balance

    def record_unmetered(self, user_id: str, feature: str, quantity: int, idempotency_key: str) -> CommitStatus:
        def _record(session: Session) -> None:
            self._add_event(session, idempotency_key, user_id, feature, LedgerEventKind.UNMETERED, quantity)

        applied, _ = self._ledger_write("record_unmetered", idempotency_key, user_id, _record)
        return CommitStatus.COMMITTED if applied else CommitStatus.ALREADY_COMMITTED

    def apply_reset(
        self,
        user_id: str,
        balances: Dict[str, int],
        idempotency_key: Optional[str] = None,
        *,
        counted: FrozenSet[str] = frozenset(),
    ) -> bool:
        def _reset(session: Session) -> None:
            if idempotency_key is not None:
                self._add_event(session, idempotency_key, user_id, None, LedgerEventKind.RESET, 0)
            for feature, value in balances.items():
                new_value = _non_negative(value - UsageBalance.in_use) if feature in counted else value
                result = session.execute(
                    update(UsageBalance)
                    .where(UsageBalance.user_id == user_id, UsageBalance.feature_key == feature)
                    .values(balance=new_value, updated_at=utcnow())
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 0:
                    session.add(UsageBalance(user_id=user_id, feature_key=feature, balance=value, in_use=0))
                    session.flush()

        applied, _ = self._ledger_write("apply_reset", idempotency_key, user_id, _reset)
        return applied

    # Ledger

    def get_event(self, idempotency_key: str) -> Optional[UsageEventRecord]:
        def _get(session: Session) -> Optional[UsageEventRecord]:
            row = session.execute(
                select(UsageEvent).where(UsageEvent.idempotency_key == idempotency_key)
            ).scalars().first()
            return _event_from_row(row) if row is not None else None

        return self._read("get_event", _get)

    def list_events(self, user_id: str) -> List[UsageEventRecord]:
        def _list(session: Session) -> List[UsageEventRecord]:
            rows = session.execute(
                select(UsageEvent)
                .where(UsageEvent.user_id == user_id)
                .order_by(UsageEvent.created_at.asc())
            ).scalars().all()
            return [_event_from_row(row) for row in rows]

        return self._read("list_events", _list)


class _Rejected(Exception):
    """Conditional update matched no row; the transaction is rolled back."""


class InMemoryUsageStore(UsageStore):
    """Thread-safe in-process UsageStore with the relational store's semantics."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._users: Dict[str, UserRecord] = {}
        self._subscriptions: Dict[str, SubscriptionSnapshot] = {}
        self._balances: Dict[Tuple[str, str], int] = {}
        self._in_use: Dict[Tuple[str, str], int] = {}
        self._events: Dict[str, UsageEventRecord] = {}

    def _append_event(
        self,
        idempotency_key: str,
        user_id: str,
        feature: Optional[str],
        kind: LedgerEventKind,
        quantity: int,
    ) -> None:
        self._events[idempotency_key] = UsageEventRecord(
            idempotency_key=idempotency_key,
            user_id=user_id,
            feature=feature,
            kind=kind,
            quantity=quantity,
            created_at=utcnow(),
        )

    def get_user(self, user_id: str) -> Optional[UserRecord]:
        with self._lock:
            return self._users.get(user_id)

    def save_user(self, user: UserRecord) -> None:
        with self._lock:
            self._users[user.id] = user

    def set_next_renewal(self, user_id: str, renew_at: Optional[datetime]) -> None:
        with self._lock:
            user = self._users.get(user_id)
            if user is None:
                return
            self._users[user_id] = UserRecord(
                id=user.id,
                email=user.email,
                created_at=user.created_at,
                trial_ends_at=user.trial_ends_at,
                next_credit_renewal_at=renew_at,
            )

    def list_users_due_for_renewal(self, now: datetime) -> List[UserRecord]:
        with self._lock:
            due = [
                user for user in self._users.values()
                if user.next_credit_renewal_at is not None and user.next_credit_renewal_at <= now
            ]
        return sorted(due, key=lambda user: user.next_credit_renewal_at)

    def list_subscriptions(self, user_id: str) -> List[SubscriptionSnapshot]:
        with self._lock:
            subs = [s for s in self._subscriptions.values() if s.user_id == user_id]
        return sorted(subs, key=lambda s: s.created_at, reverse=True)

    def find_subscription_by_external_id(self, external_id: str) -> Optional[SubscriptionSnapshot]:
        with self._lock:
            for subscription in self._subscriptions.values():
                if subscription.external_id == external_id:
                    return subscription
        return None

    def save_subscription(self, subscription: SubscriptionSnapshot) -> None:
        with self._lock:
            self._subscriptions[subscription.id] = subscription

    def get_balance(self, user_id: str, feature: str) -> Optional[int]:
        with self._lock:
            return self._balances.get((user_id, feature))

    def get_balances(self, user_id: str) -> Dict[str, int]:
        with self._lock:
            return {feature: value for (uid, feature), value in self._balances.items() if uid == user_id}

    def get_in_use(self, user_id: str, feature: str) -> int:
        with self._lock:
            return self._in_use.get((user_id, feature), 0)

    def set_balance(self, user_id: str, feature: str, value: int) -> None:
        if value < 0:
            raise ValueError("balance must be >= 0")
        with self._lock:
            self._balances[(user_id, feature)] = value

    def debit(
        self,
        user_id: str,
        feature: str,
        quantity: int,
        idempotency_key: str,
        *,
        counted: bool = False,
    ) -> LedgerWrite:
        key = (user_id, feature)
        with self._lock:
            current = self._balances.get(key)
            if idempotency_key in self._events:
                return CommitStatus.ALREADY_COMMITTED, current
            if current is None or current < quantity:
                return CommitStatus.REJECTED, current
            self._balances[key] = current - quantity
            if counted:
                self._in_use[key] = self._in_use.get(key, 0) + quantity
            self._append_event(idempotency_key, user_id, feature, LedgerEventKind.DEBIT, quantity)
            return CommitStatus.COMMITTED, current - quantity

    def credit(self, user_id: str, feature: str, quantity: int, idempotency_key: str) -> LedgerWrite:
        key = (user_id, feature)
        with self._lock:
            current = self._balances.get(key)
            if idempotency_key in self._events:
                return CommitStatus.ALREADY_COMMITTED, current
            new_value = (current or 0) + quantity
            self._balances[key] = new_value
            self._append_event(idempotency_key, user_id, feature, LedgerEventKind.CREDIT, quantity)
            return CommitStatus.COMMITTED, new_value

    def release(self, user_id: str, feature: str, quantity: int, idempotency_key: str, *, limit: int) -> LedgerWrite:
        key = (user_id, feature)
        with self._lock:
            if idempotency_key in self._events:
                return CommitStatus.ALREADY_COMMITTED, self._balances.get(key)
            if key not in self._balances:
                return CommitStatus.REJECTED, None
            held = max(self._in_use.get(key, 0) - quantity, 0)
            self._in_use[key] = held
            self._balances[key] = max(limit - held, 0)
            self._append_event(idempotency_key, user_id, feature, LedgerEventKind.RELEASE, quantity)
            return CommitStatus.COMMITTED, self._balances[key]

    def record_unmetered(self, user_id: str, feature: str, quantity: int, idempotency_key: str) -> CommitStatus:
        with self._lock:
            if idempotency_key in self._events:
                return CommitStatus.ALREADY_COMMITTED
            self._append_event(idempotency_key, user_id, feature, LedgerEventKind.UNMETERED, quantity)
            return CommitStatus.COMMITTED

    def apply_reset(
        self,
        user_id: str,
        balances: Dict[str, int],
        idempotency_key: Optional[str] = None,
        *,
        counted: FrozenSet[str] = frozenset(),
    ) -> bool:
        with self._lock:
            if idempotency_key is not None:
                if idempotency_key in self._events:
                    return False
                self._append_event(idempotency_key, user_id, None, LedgerEventKind.RESET, 0)
            for feature, value in balances.items():
                key = (user_id, feature)
                if feature in counted:
                    value = max(value - self._in_use.get(key, 0), 0)
                self._balances[key] = value
            return True

    def get_event(self, idempotency_key: str) -> Optional[UsageEventRecord]:
        with self._lock:
            return self._events.get(idempotency_key)

    def list_events(self, user_id: str) -> List[UsageEventRecord]:
        with self._lock:
            return [event for event in self._events.values() if event.user_id == user_id]
