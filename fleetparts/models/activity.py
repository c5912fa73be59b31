"""Activity log — audit trail entries appended after lifecycle transitions."""

from sqlalchemy import JSON, Column, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import relationship

from .base import Base, UTCDateTime, utcnow


class ActivityLog(Base):
    __tablename__ = "activity_log"
    id = Column(Integer, primary_key=True)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"))
    type = Column(String(30), nullable=False)
    title = Column(String(255), nullable=False)
    description = Column(Text)

    # Polymorphic entity reference
    entity_type = Column(String(30))
    entity_id = Column(Integer)
    details = Column("metadata", JSON)

    created_at = Column(UTCDateTime, default=utcnow)

    user = relationship("User", foreign_keys=[user_id])

    __table_args__ = (
        Index("ix_activity_entity", "entity_type", "entity_id"),
        Index("ix_activity_org_created", "organization_id", "created_at"),
    )
