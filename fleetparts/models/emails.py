"""Email models — supplier threads, messages, attachments, gateway parse audit."""

from sqlalchemy import (
    JSON,
    Column,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from .base import Base, UTCDateTime, utcnow


class EmailThread(Base):
    """One conversation with one supplier.

    Every supplier thread of a request carries quote_request_id, so NULL means
    orphaned. Which supplier a thread answers for is the junction row, not this column.
    """

    __tablename__ = "email_threads"
    id = Column(Integer, primary_key=True)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=False)
    quote_request_id = Column(Integer, ForeignKey("quote_requests.id", ondelete="SET NULL"))
    supplier_id = Column(Integer, ForeignKey("suppliers.id"))
    created_by_id = Column(Integer, ForeignKey("users.id"))

    subject = Column(String(500), nullable=False, default="")
    status = Column(String(30), nullable=False, default="DRAFT")
    external_thread_id = Column(String(255))
    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    quote_request = relationship("QuoteRequest", foreign_keys=[quote_request_id])
    supplier = relationship("Supplier", foreign_keys=[supplier_id])
    messages = relationship(
        "EmailMessage",
        back_populates="thread",
        cascade="all, delete-orphan",
        order_by="EmailMessage.id",
    )
    quote_links = relationship("QuoteRequestEmailThread", back_populates="email_thread")

    __table_args__ = (
        Index("ix_email_threads_org_external", "organization_id", "external_thread_id"),
        Index("ix_email_threads_qr", "quote_request_id"),
        Index("ix_email_threads_supplier", "supplier_id"),
    )


class EmailMessage(Base):
    __tablename__ = "email_messages"
    id = Column(Integer, primary_key=True)
    thread_id = Column(
        Integer, ForeignKey("email_threads.id", ondelete="CASCADE"), nullable=False
    )
    direction = Column(String(10), nullable=False)  # INBOUND | OUTBOUND
    from_address = Column(String(255), nullable=False)
    to_addresses = Column(JSON, nullable=False, default=list)
    cc = Column(JSON, default=list)
    bcc = Column(JSON, default=list)
    subject = Column(String(500), nullable=False, default="")
    body = Column(Text, nullable=False, default="")
    body_html = Column(Text)
    external_message_id = Column(String(255))
    in_reply_to = Column(String(255))
    message_metadata = Column(JSON)
    sent_at = Column(UTCDateTime)
    received_at = Column(UTCDateTime)
    expected_response_by = Column(UTCDateTime)
    created_at = Column(UTCDateTime, default=utcnow)

    thread = relationship("EmailThread", back_populates="messages")
    attachments = relationship(
        "EmailAttachment", back_populates="message", cascade="all, delete-orphan"
    )

    __table_args__ = (Index("ix_email_messages_thread", "thread_id", "direction"),)


class EmailAttachment(Base):
    __tablename__ = "email_attachments"
    id = Column(Integer, primary_key=True)
    message_id = Column(
        Integer, ForeignKey("email_messages.id", ondelete="CASCADE"), nullable=False
    )
    filename = Column(String(500), nullable=False)
    content_type = Column(String(255), default="application/octet-stream")
    size = Column(Integer, default=0)
    path = Column(String(1000))
    extracted_text = Column(Text)
    created_at = Column(UTCDateTime, default=utcnow)

    message = relationship("EmailMessage", back_populates="attachments")


class GatewayResponse(Base):
    """Raw parse result from the email automation gateway, kept for audit."""

    __tablename__ = "gateway_responses"
    id = Column(Integer, primary_key=True)
    quote_request_id = Column(
        Integer, ForeignKey("quote_requests.id", ondelete="CASCADE"), nullable=False
    )
    message_id = Column(Integer, ForeignKey("email_messages.id", ondelete="SET NULL"))
    response_type = Column(String(50), nullable=False)
    response_data = Column(JSON, nullable=False)
    confidence = Column(Float)
    created_at = Column(UTCDateTime, default=utcnow)
