"""Domain enums shared by models, schemas and services.

All enums use the str mixin so they compare equal to the strings stored
in the database and serialize directly to JSON.
"""

from __future__ import annotations

from enum import Enum


class UserRole(str, Enum):
    ADMIN = "admin"
    MANAGER = "manager"
    BUYER = "buyer"
    TECHNICIAN = "technician"
    VIEWER = "viewer"


class QuoteStatus(str, Enum):
    """Lifecycle of a quote request."""

    DRAFT = "DRAFT"
    SENT = "SENT"
    RECEIVED = "RECEIVED"  # acknowledgment only, no pricing yet
    UNDER_REVIEW = "UNDER_REVIEW"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"
    CONVERTED_TO_ORDER = "CONVERTED_TO_ORDER"


class ThreadLinkStatus(str, Enum):
    """Per-supplier status on the quote request / email thread junction."""

    SENT = "SENT"
    RESPONDED = "RESPONDED"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"


class EmailThreadStatus(str, Enum):
    DRAFT = "DRAFT"
    SENT = "SENT"
    WAITING_RESPONSE = "WAITING_RESPONSE"
    RESPONSE_RECEIVED = "RESPONSE_RECEIVED"
    FOLLOW_UP_NEEDED = "FOLLOW_UP_NEEDED"
    COMPLETED = "COMPLETED"
    CONVERTED_TO_ORDER = "CONVERTED_TO_ORDER"
    CANCELLED = "CANCELLED"


class MessageDirection(str, Enum):
    INBOUND = "INBOUND"
    OUTBOUND = "OUTBOUND"


class OrderStatus(str, Enum):
    PENDING_CONFIRMATION = "PENDING_CONFIRMATION"
    PROCESSING = "PROCESSING"
    ORDERED = "ORDERED"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"


class FulfillmentMethod(str, Enum):
    DELIVERY = "DELIVERY"
    PICKUP = "PICKUP"
    SPLIT = "SPLIT"


class ItemAvailability(str, Enum):
    IN_STOCK = "IN_STOCK"
    BACKORDERED = "BACKORDERED"
    SPECIAL_ORDER = "SPECIAL_ORDER"
    UNKNOWN = "UNKNOWN"


class ActivityType(str, Enum):
    QUOTE_REQUESTED = "QUOTE_REQUESTED"
    QUOTE_SENT = "QUOTE_SENT"
    QUOTE_RECEIVED = "QUOTE_RECEIVED"
    QUOTE_STATUS_CHANGED = "QUOTE_STATUS_CHANGED"
    ORDER_PLACED = "ORDER_PLACED"
    EMAIL_LINKED = "EMAIL_LINKED"
    FOLLOW_UP_SENT = "FOLLOW_UP_SENT"
    SYSTEM_UPDATE = "SYSTEM_UPDATE"


class FollowUpBranch(str, Enum):
    """Why a supplier on an open quote request is being chased."""

    NO_RESPONSE = "no_response"
    NEEDS_REVISION = "needs_revision"


class OrderFollowUpBranch(str, Enum):
    NO_CONFIRMATION = "no_confirmation"
    MISSING_TRACKING = "missing_tracking"
    DELIVERY_DELAYED = "delivery_delayed"
    QUALITY_ISSUE = "quality_issue"
    OTHER = "other"


class PriorityLevel(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"
