"""Quote request models — requests, line items, supplier thread links."""

from sqlalchemy import (
    Boolean,
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


class QuoteRequest(Base):
    """One RFQ for a vehicle's parts list, sent to a primary + N suppliers."""

    __tablename__ = "quote_requests"
    id = Column(Integer, primary_key=True)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=False)
    quote_number = Column(String(50), nullable=False)  # QR-MM-YYYY-XXXX
    title = Column(String(255), nullable=False)
    description = Column(Text)
    status = Column(String(30), nullable=False, default="DRAFT")

    supplier_id = Column(Integer, ForeignKey("suppliers.id"), nullable=False)
    # Only read/written through utils.supplier_ids
    additional_supplier_ids = Column(Text)
    selected_supplier_id = Column(Integer, ForeignKey("suppliers.id"))
    vehicle_id = Column(Integer, ForeignKey("vehicles.id"))
    created_by_id = Column(Integer, ForeignKey("users.id"))

    total_amount = Column(Numeric(12, 2))
    notes = Column(Text)
    suggested_fulfillment_method = Column(String(20))
    request_date = Column(UTCDateTime, default=utcnow)
    response_date = Column(UTCDateTime)
    expiry_date = Column(UTCDateTime)
    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    supplier = relationship("Supplier", foreign_keys=[supplier_id])
    selected_supplier = relationship("Supplier", foreign_keys=[selected_supplier_id])
    vehicle = relationship("Vehicle", foreign_keys=[vehicle_id])
    created_by = relationship("User", foreign_keys=[created_by_id])
    items = relationship(
        "QuoteRequestItem",
        back_populates="quote_request",
        cascade="all, delete-orphan",
        order_by="QuoteRequestItem.id",
    )
    thread_links = relationship(
        "QuoteRequestEmailThread",
        back_populates="quote_request",
        cascade="all, delete-orphan",
        order_by="QuoteRequestEmailThread.id",
    )

    __table_args__ = (
        UniqueConstraint("organization_id", "quote_number", name="uq_quote_request_org_number"),
        Index("ix_quote_requests_status", "status"),
        Index("ix_quote_requests_supplier", "supplier_id"),
    )


class QuoteRequestItem(Base):
    """One line item. supplier_id NULL is the base item; set means that supplier's pricing."""

    __tablename__ = "quote_request_items"
    id = Column(Integer, primary_key=True)
    quote_request_id = Column(
        Integer, ForeignKey("quote_requests.id", ondelete="CASCADE"), nullable=False
    )
    supplier_id = Column(Integer, ForeignKey("suppliers.id"))
    part_id = Column(Integer, ForeignKey("parts.id"))

    part_number = Column(String(100), nullable=False)
    description = Column(Text)
    quantity = Column(Integer, nullable=False, default=1)
    unit_price = Column(Numeric(12, 2))
    total_price = Column(Numeric(12, 2))
    supplier_part_number = Column(String(100))

    lead_time = Column(Integer)  # days
    estimated_delivery_days = Column(Integer)
    availability = Column(String(20), default="UNKNOWN")

    is_alternative = Column(Boolean, default=False)
    alternative_reason = Column(Text)
    is_superseded = Column(Boolean, default=False)
    original_part_number = Column(String(100))
    superseded_by = Column(String(100))
    supersedes = Column(String(100))
    supersession_notes = Column(Text)

    supplier_notes = Column(Text)
    notes = Column(Text)
    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    quote_request = relationship("QuoteRequest", back_populates="items")
    supplier = relationship("Supplier", foreign_keys=[supplier_id])
    part = relationship("Part", foreign_keys=[part_id])

    __table_args__ = (
        Index("ix_qr_items_qr_supplier_part", "quote_request_id", "supplier_id", "part_number"),
    )


class QuoteRequestEmailThread(Base):
    """Junction — one supplier's thread for one quote request."""

    __tablename__ = "quote_request_email_threads"
    id = Column(Integer, primary_key=True)
    quote_request_id = Column(
        Integer, ForeignKey("quote_requests.id", ondelete="CASCADE"), nullable=False
    )
    email_thread_id = Column(
        Integer, ForeignKey("email_threads.id", ondelete="CASCADE"), nullable=False
    )
    supplier_id = Column(Integer, ForeignKey("suppliers.id"), nullable=False)
    is_primary = Column(Boolean, default=False)
    status = Column(String(20), nullable=False, default="SENT")
    quoted_amount = Column(Numeric(12, 2))
    response_date = Column(UTCDateTime)
    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    quote_request = relationship("QuoteRequest", back_populates="thread_links")
    email_thread = relationship("EmailThread", back_populates="quote_links")
    supplier = relationship("Supplier", foreign_keys=[supplier_id])

    __table_args__ = (
        UniqueConstraint("quote_request_id", "supplier_id", name="uq_qr_thread_supplier"),
        Index("ix_qr_threads_thread", "email_thread_id"),
    )
