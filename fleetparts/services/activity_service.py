"""Activity service — audit trail for quote and order lifecycle events.

Entries are written in their own commit after the operation that
triggered them has committed. Recording is best-effort: a failure is
rolled back and logged, never raised into the caller.

Usage:
    from fleetparts.services.activity_service import record_activity
    record_activity(db, org_id, ActivityType.QUOTE_SENT, "Quote request sent", ...)
"""

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from loguru import logger

from ..models import ActivityLog
from ..models.enums import ActivityType


def record_activity(
    db: Session,
    organization_id: int,
    activity_type: ActivityType | str,
    title: str,
    description: str | None = None,
    entity_type: str | None = None,
    entity_id: int | None = None,
    user_id: int | None = None,
    details: dict | None = None,
) -> ActivityLog | None:
    """Append and commit one activity entry. Returns None if it could not be stored."""
    entry = ActivityLog(
        organization_id=organization_id,
        user_id=user_id,
        type=getattr(activity_type, "value", activity_type),
        title=title,
        description=description,
        entity_type=entity_type,
        entity_id=entity_id,
        details=details or {},
    )
    try:
        db.add(entry)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.warning("Activity log failed for {} {} ({}): {}", entity_type, entity_id, title, e)
        return None
    return entry


def list_activity(db: Session, organization_id: int, entity_type: str, entity_id: int) -> list[dict]:
    rows = (
        db.query(ActivityLog)
        .filter_by(organization_id=organization_id, entity_type=entity_type, entity_id=entity_id)
        .order_by(ActivityLog.created_at.desc(), ActivityLog.id.desc())
        .all()
    )
    return [
        {
            "id": a.id,
            "type": a.type,
            "title": a.title,
            "description": a.description,
            "user_id": a.user_id,
            "metadata": a.details or {},
            "created_at": a.created_at.isoformat() if a.created_at else None,
        }
        for a in rows
    ]
