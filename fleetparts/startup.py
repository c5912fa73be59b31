"""
startup.py — Idempotent boot-time database setup

Tables and indexes are defined in the ORM models and created with
Base.metadata.create_all(checkfirst=True); Alembic owns real schema
changes. This file only seeds rows the service needs to run.

Business Rules:
- Skipped entirely when TESTING is set
- The automation agent user (agent@fleetparts.local) is seeded once, into the
  oldest organization, and only when AGENT_API_KEY is configured

Called by: main.py lifespan
Depends on: database.py (engine, SessionLocal), models
"""

import os

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError

from .config import settings
from .database import SessionLocal, engine
from .dependencies import AGENT_EMAIL


def run_startup_migrations() -> None:
    """Execute all idempotent startup operations. Safe to call on every app boot."""
    if os.environ.get("TESTING"):
        logger.info("TESTING mode, skipping startup migrations")
        return

    from .models import Base

    Base.metadata.create_all(bind=engine, checkfirst=True)
    logger.info("ORM schema sync complete (create_all checkfirst=True)")
    _seed_agent_user()
    logger.info("Startup migrations complete")


def _seed_agent_user() -> None:
    """Service account the automation gateway authenticates as via x-agent-key."""
    if not settings.agent_api_key:
        return
    from .models import Organization, User

    db = SessionLocal()
    try:
        if db.query(User.id).filter_by(email=AGENT_EMAIL).first():
            return
        org = db.query(Organization).order_by(Organization.id).first()
        if org is None:
            logger.warning("No organization yet, agent user not seeded")
            return
        db.add(User(organization_id=org.id, email=AGENT_EMAIL, name="Automation Agent", role="buyer"))
        db.commit()
        logger.info("Seeded agent user for organization {}", org.id)
    except SQLAlchemyError as e:
        db.rollback()
        logger.warning("Agent user seed failed: {}", e)
    finally:
        db.close()
