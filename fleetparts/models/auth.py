"""Organization & user models."""

from sqlalchemy import Boolean, Column, ForeignKey, Index, Integer, String
from sqlalchemy.orm import relationship

from .base import Base, UTCDateTime, utcnow


class Organization(Base):
    """Tenant partition — every other entity hangs off one of these."""

    __tablename__ = "organizations"
    id = Column(Integer, primary_key=True)
    name = Column(String(255), nullable=False)
    domain = Column(String(255))
    billing_email = Column(String(255))
    phone = Column(String(100))
    created_at = Column(UTCDateTime, default=utcnow)

    users = relationship("User", back_populates="organization")


class User(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=False)
    email = Column(String(255), unique=True, nullable=False)
    name = Column(String(255))
    role = Column(String(20), default="buyer")  # admin | manager | buyer | technician | viewer
    phone = Column(String(100))
    is_active = Column(Boolean, default=True)
    created_at = Column(UTCDateTime, default=utcnow)

    organization = relationship("Organization", back_populates="users")

    __table_args__ = (Index("ix_users_org", "organization_id"),)
