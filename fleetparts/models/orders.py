"""Order models — purchase orders converted from approved quote requests."""

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


class Order(Base):
    __tablename__ = "orders"
    id = Column(Integer, primary_key=True)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=False)
    order_number = Column(String(50), nullable=False)  # ORD-YYYY-XXXX
    status = Column(String(30), nullable=False, default="PENDING_CONFIRMATION")
    priority = Column(String(20), default="MEDIUM")

    quote_request_id = Column(Integer, ForeignKey("quote_requests.id"))
    quote_reference = Column(String(50))
    supplier_id = Column(Integer, ForeignKey("suppliers.id"), nullable=False)
    vehicle_id = Column(Integer, ForeignKey("vehicles.id"))
    email_thread_id = Column(
        Integer, ForeignKey("email_threads.id", ondelete="SET NULL"), unique=True
    )
    created_by_id = Column(Integer, ForeignKey("users.id"))

    fulfillment_method = Column(String(20), default="DELIVERY")
    partial_fulfillment = Column(Boolean, default=False)
    pickup_location = Column(String(255))
    pickup_date = Column(UTCDateTime)
    shipping_carrier = Column(String(100))
    tracking_number = Column(String(255))
    expected_delivery = Column(UTCDateTime)

    subtotal = Column(Numeric(12, 2), default=0)
    tax = Column(Numeric(12, 2), default=0)
    shipping = Column(Numeric(12, 2), default=0)
    total = Column(Numeric(12, 2), default=0)
    notes = Column(Text)
    order_date = Column(UTCDateTime, default=utcnow)
    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    supplier = relationship("Supplier", foreign_keys=[supplier_id])
    quote_request = relationship("QuoteRequest", foreign_keys=[quote_request_id])
    email_thread = relationship("EmailThread", foreign_keys=[email_thread_id])
    items = relationship(
        "OrderItem", back_populates="order", cascade="all, delete-orphan", order_by="OrderItem.id"
    )

    __table_args__ = (
        UniqueConstraint("organization_id", "order_number", name="uq_order_org_number"),
        Index("ix_orders_quote_request", "quote_request_id"),
        Index("ix_orders_status", "status"),
    )


class OrderItem(Base):
    __tablename__ = "order_items"
    id = Column(Integer, primary_key=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False)
    part_id = Column(Integer, ForeignKey("parts.id"), nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(12, 2), nullable=False)
    total_price = Column(Numeric(12, 2), nullable=False)
    availability = Column(String(20), default="UNKNOWN")
    fulfillment_method = Column(String(20), default="DELIVERY")
    expected_delivery = Column(UTCDateTime)
    tracking_number = Column(String(255))
    supplier_notes = Column(Text)
    created_at = Column(UTCDateTime, default=utcnow)

    order = relationship("Order", back_populates="items")
    part = relationship("Part", foreign_keys=[part_id])
