"""Catalog models — Suppliers, Vehicles, Parts."""

from sqlalchemy import (
    Column,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from .base import Base, UTCDateTime, utcnow


class Supplier(Base):
    __tablename__ = "suppliers"
    id = Column(Integer, primary_key=True)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=False)
    name = Column(String(255), nullable=False)
    email = Column(String(255))
    contact_person = Column(String(255))
    phone = Column(String(100))
    type = Column(String(50), default="DEALER")
    street = Column(String(255))
    city = Column(String(100))
    state = Column(String(100))
    zip_code = Column(String(20))
    notes = Column(Text)
    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    auxiliary_emails = relationship(
        "AuxiliaryEmail", back_populates="supplier", cascade="all, delete-orphan"
    )

    __table_args__ = (Index("ix_suppliers_org", "organization_id"),)


class AuxiliaryEmail(Base):
    """Alternate mailbox a supplier has replied from."""

    __tablename__ = "auxiliary_emails"
    id = Column(Integer, primary_key=True)
    supplier_id = Column(
        Integer, ForeignKey("suppliers.id", ondelete="CASCADE"), nullable=False
    )
    email = Column(String(255), nullable=False)
    name = Column(String(255))
    created_at = Column(UTCDateTime, default=utcnow)

    supplier = relationship("Supplier", back_populates="auxiliary_emails")

    __table_args__ = (
        UniqueConstraint("supplier_id", "email", name="uq_aux_email_supplier"),
    )


class Vehicle(Base):
    __tablename__ = "vehicles"
    id = Column(Integer, primary_key=True)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=False)
    vehicle_id = Column(String(100), nullable=False)  # fleet unit number
    make = Column(String(100))
    model = Column(String(100))
    year = Column(Integer)
    serial_number = Column(String(100))
    type = Column(String(50))
    status = Column(String(20), default="ACTIVE")
    created_at = Column(UTCDateTime, default=utcnow)

    __table_args__ = (
        UniqueConstraint("organization_id", "vehicle_id", name="uq_vehicle_org_unit"),
    )


class Part(Base):
    """Reusable catalog entry with supersession chain."""

    __tablename__ = "parts"
    id = Column(Integer, primary_key=True)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=False)
    part_number = Column(String(100), nullable=False)
    description = Column(Text)
    category = Column(String(100))
    supplier_part_number = Column(String(100))
    price = Column(Numeric(12, 2), default=0)
    cost = Column(Numeric(12, 2), default=0)
    stock_quantity = Column(Integer, default=0)
    min_stock_level = Column(Integer, default=0)
    superseded_by = Column(String(100))
    supersedes = Column(String(100))
    supersession_date = Column(UTCDateTime)
    supersession_notes = Column(Text)
    notes = Column(Text)
    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("organization_id", "part_number", name="uq_part_org_number"),
    )
