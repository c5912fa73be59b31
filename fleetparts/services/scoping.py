"""Organization-scoped lookups.

Every entity is addressed through its organization. A row that exists
under another organization is reported exactly like a missing one.
"""

from sqlalchemy.orm import Session

from ..errors import NotFoundError


def get_scoped(db: Session, model, organization_id: int, entity_id: int, label: str | None = None):
    """Fetch model row by id inside the organization, else NotFoundError."""
    row = db.get(model, entity_id) if entity_id is not None else None
    if row is None or row.organization_id != organization_id:
        raise NotFoundError(f"{label or model.__name__} not found", id=entity_id)
    return row
