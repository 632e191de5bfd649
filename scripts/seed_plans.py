"""Create the entitlement tables and upsert plans from config/plans.json.

Usage:
    DATABASE_URL=postgresql://... python scripts/seed_plans.py [--plans config/plans.json]
"""

from __future__ import annotations

import argparse
import logging
import os

from sqlalchemy.exc import SQLAlchemyError

from usage_entitlements.catalog import PlanCatalog, seed_plans
from usage_entitlements.db import create_db_engine, create_schema, create_session_factory
from usage_entitlements.settings import DEFAULT_PLANS_PATH

logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")
logger = logging.getLogger(__name__)


def get_database_url() -> str:
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        raise ValueError("DATABASE_URL environment variable is required")
    if database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql://", 1)
    return database_url


def run(plans_path: str = DEFAULT_PLANS_PATH) -> int:
    engine = create_db_engine(get_database_url())
    create_schema(engine)

    catalog = PlanCatalog.from_file(plans_path)
    session = create_session_factory(engine)()
    try:
        written = seed_plans(session, catalog)
        session.commit()
    except SQLAlchemyError as e:
        session.rollback()
        logger.exception("Failed to seed plans from %s", plans_path)
        raise RuntimeError(f"Plan seeding failed: {e}") from e
    finally:
        session.close()

    logger.info("Seeded plans", extra={"count": written, "source": plans_path})
    return written


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--plans", default=os.getenv("PLANS_CONFIG_PATH", DEFAULT_PLANS_PATH))
    args = parser.parse_args()
    run(args.plans)
