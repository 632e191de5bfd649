from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from usage_entitlements.errors import EntitlementError
from usage_entitlements.models import UserRecord
from usage_entitlements.service import EntitlementService, build_service

logger = logging.getLogger(__name__)


@dataclass
class RenewalStats:
    started_at: str
    completed_at: Optional[str] = None
    users_due: int = 0
    renewed: int = 0
    already_applied: int = 0
    skipped_unpaid: int = 0
    errors: int = 0


class RenewalJob:
    """Monthly credit renewal for paid plans.

    Responsibilities:
    - find users whose next_credit_renewal_at has passed
    - reset balances to their paid plan's limits (one reset per due date)
    - advance next_credit_renewal_at past now
    Users who are back on the trial or expired plan stop renewing.
    """

    def __init__(self, service: EntitlementService, *, interval: Optional[timedelta] = None) -> None:
        self.service = service
        self.interval = interval or service.webhooks.credit_renewal_interval

    def _next_due(self, due: datetime, now: datetime) -> datetime:
        next_due = due + self.interval
        while next_due <= now:
            next_due += self.interval
        return next_due

    def _renew_user(self, user: UserRecord, now: datetime, stats: RenewalStats) -> None:
        catalog = self.service.catalog
        state = self.service.reader.get_effective_state(user.id, now)
        plan = catalog.find_plan(state.plan_identifier)
        if plan is None or plan.identifier in (catalog.trial_plan, catalog.expired_plan):
            self.service.store.set_next_renewal(user.id, None)
            stats.skipped_unpaid += 1
            logger.info(
                "Credit renewal stopped: no paid plan",
                extra={"user_id": user.id, "plan_identifier": state.plan_identifier},
            )
            return

        due = user.next_credit_renewal_at
        applied = self.service.ledger.reset_to_plan_limit(user.id, plan, f"renewal:{user.id}:{due.isoformat()}")
        self.service.store.set_next_renewal(user.id, self._next_due(due, now))
        if applied:
            stats.renewed += 1
        else:
            stats.already_applied += 1

    def run_cycle(self, now: Optional[datetime] = None) -> RenewalStats:
        now = now or datetime.now(timezone.utc)
        stats = RenewalStats(started_at=datetime.now(timezone.utc).isoformat())

        try:
            due_users = self.service.store.list_users_due_for_renewal(now)
        except EntitlementError:
            logger.exception("Credit renewal cycle could not list due users")
            stats.errors += 1
            stats.completed_at = datetime.now(timezone.utc).isoformat()
            return stats

        stats.users_due = len(due_users)
        for user in due_users:
            try:
                self._renew_user(user, now, stats)
            except EntitlementError:
                logger.exception("Credit renewal failed", extra={"user_id": user.id})
                stats.errors += 1

        stats.completed_at = datetime.now(timezone.utc).isoformat()
        logger.info(
            "Credit renewal cycle completed",
            extra={
                "users_due": stats.users_due,
                "renewed": stats.renewed,
                "already_applied": stats.already_applied,
                "skipped_unpaid": stats.skipped_unpaid,
                "errors": stats.errors,
            },
        )
        return stats


def run_renewal_cycle(service: Optional[EntitlementService] = None, now: Optional[datetime] = None) -> RenewalStats:
    return RenewalJob(service or build_service()).run_cycle(now)


def run_forever(interval_seconds: int = 3600) -> None:
    job = RenewalJob(build_service())
    while True:
        job.run_cycle()
        time.sleep(interval_seconds)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")
    run_forever()
