from __future__ import annotations

import json
import logging
from pathlib import Path
from threading import RLock
from typing import Callable, Dict, Optional

from sqlalchemy.orm import Session

from .errors import PlanNotFoundError
from .features import FeatureKey, normalize_feature
from .models import DISABLED, PlanDefinition, PlansConfig
from .settings import DEFAULT_PLANS_PATH

logger = logging.getLogger(__name__)


class PlanCatalog:
    """Plan-to-limit mapping loaded from config/plans.json or the plans tables.

    Lookups are pure. A missing plan or feature resolves to limit 0 so that
    unknown state never grants access.
    """

    def __init__(self, config: PlansConfig, *, source: Optional[Callable[[], PlansConfig]] = None) -> None:
        self._lock = RLock()
        self._config = config
        self._source = source

    @classmethod
    def from_file(cls, config_path: str = DEFAULT_PLANS_PATH) -> "PlanCatalog":
        path = Path(config_path)

        def _load() -> PlansConfig:
            return parse_plans_config(_read_config_file(path))

        return cls(_load(), source=_load)

    @classmethod
    def from_session(cls, session_factory: Callable[[], Session], **policy) -> "PlanCatalog":
        """Build the catalog from the plans / plan_limits tables."""

        def _load() -> PlansConfig:
            return load_plans_from_db(session_factory, **policy)

        return cls(_load(), source=_load)

    def reload(self) -> None:
        """Re-read the backing source (for safe process restart workflows)."""
        if self._source is None:
            return
        parsed = self._source()
        with self._lock:
            self._config = parsed
        logger.info("Plan catalog reloaded", extra={"plan_count": len(parsed.plans)})

    @property
    def config(self) -> PlansConfig:
        with self._lock:
            return self._config

    @property
    def grace_period_days(self) -> int:
        return self.config.grace_period_days

    @property
    def trial_plan(self) -> str:
        return self.config.trial_plan

    @property
    def expired_plan(self) -> str:
        return self.config.expired_plan

    def find_plan(self, identifier: Optional[str]) -> Optional[PlanDefinition]:
        if identifier is None or not str(identifier).strip():
            return None
        return self.config.plans.get(str(identifier).strip())

    def get_plan(self, identifier: str) -> PlanDefinition:
        if not identifier or not str(identifier).strip():
            raise ValueError("plan identifier is required")
        plan = self.find_plan(identifier)
        if plan is None:
            raise PlanNotFoundError(str(identifier))
        return plan

    def get_limit(self, plan: Optional[PlanDefinition], feature: FeatureKey) -> int:
        if plan is None:
            return DISABLED
        return plan.limit_for(normalize_feature(feature))

    def plans(self) -> Dict[str, PlanDefinition]:
        return dict(self.config.plans)


def _read_config_file(path: Path) -> dict:
    with path.open("r", encoding="utf-8") as handle:
        raw = json.load(handle)
    if not isinstance(raw, dict):
        raise ValueError("plans config must contain a top-level object")
    return raw


def parse_plans_config(raw: dict) -> PlansConfig:
    plans_raw = raw.get("plans")
    if not isinstance(plans_raw, dict):
        raise ValueError("plans config must include an object field named 'plans'")

    plans: Dict[str, PlanDefinition] = {}
    for identifier, plan_data in plans_raw.items():
        if not isinstance(identifier, str) or not identifier.strip():
            raise ValueError("each plan identifier must be a non-empty string")
        if not isinstance(plan_data, dict):
            raise ValueError(f"plan '{identifier}' must be an object")

        limits = plan_data.get("limits", {})
        if not isinstance(limits, dict):
            raise ValueError(f"plan '{identifier}' limits must be an object")

        normalized_limits: Dict[str, int] = {}
        for feature_key, limit_value in limits.items():
            if not isinstance(feature_key, str) or not feature_key.strip():
                raise ValueError(f"plan '{identifier}' has invalid feature key: {feature_key!r}")
            if isinstance(limit_value, bool) or not isinstance(limit_value, int):
                raise ValueError(f"plan '{identifier}' limit for {feature_key} must be an integer")
            normalized_limits[feature_key.strip()] = limit_value

        plan = PlanDefinition(
            identifier=identifier,
            title=str(plan_data.get("title", "")),
            price_cents=int(plan_data.get("price_cents", 0)),
            limits=normalized_limits,
        )
        plans[plan.identifier] = plan

    if not plans:
        raise ValueError("plans config must define at least one plan")

    config = PlansConfig(
        plans=plans,
        grace_period_days=int(raw.get("grace_period_days", 3)),
        trial_plan=str(raw.get("trial_plan", "trial")),
        expired_plan=str(raw.get("expired_plan", "expired")),
    )
    for policy_plan in (config.trial_plan, config.expired_plan):
        if policy_plan not in plans:
            logger.warning("Policy plan missing from catalog", extra={"plan_identifier": policy_plan})
    return config


def load_plans_from_db(session_factory: Callable[[], Session], **policy) -> PlansConfig:
    from .schema import Plan

    session = session_factory()
    try:
        rows = session.query(Plan).all()
        plans = {
            row.identifier: PlanDefinition(
                identifier=row.identifier,
                title=row.title or "",
                price_cents=row.price_cents or 0,
                limits={limit.feature_key: limit.limit_value for limit in row.limits},
            )
            for row in rows
        }
    finally:
        session.close()

    if not plans:
        raise ValueError("plans table is empty")
    return PlansConfig(plans=plans, **policy)


def seed_plans(session: Session, catalog: PlanCatalog) -> int:
    """Upsert catalog plans into the plans tables. Returns the number of plans written."""
    from .schema import Plan, PlanLimit

    written = 0
    for plan in catalog.plans().values():
        row = session.get(Plan, plan.identifier)
        if row is None:
            row = Plan(identifier=plan.identifier)
            session.add(row)
        row.title = plan.title
        row.price_cents = plan.price_cents
        existing = {limit.feature_key: limit for limit in row.limits}
        for feature_key, limit_value in plan.limits.items():
            if feature_key in existing:
                existing[feature_key].limit_value = limit_value
            else:
                row.limits.append(PlanLimit(feature_key=feature_key, limit_value=limit_value))
        for feature_key, limit in existing.items():
            if feature_key not in plan.limits:
                row.limits.remove(limit)
        written += 1
    session.flush()
    return written
