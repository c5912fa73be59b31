"""
schemas/quote_requests.py — Pydantic models for quote request endpoints

Validates quote request creation, buyer status changes, thread sync
options, follow-ups, manual thread links, price refreshes and order
conversion choices.

Business Rules:
- A quote request needs a title, a primary supplier and at least one item
- Item part numbers are trimmed and must not be blank; quantity >= 1
- Additional suppliers never repeat the primary supplier
- Conversion tax/shipping default to 0 and cannot be negative
- A follow-up without supplier_id chases every supplier that has not responded

Called by: routers/quote_requests.py, services/quote_lifecycle.py, services/order_conversion.py
Depends on: pydantic, models.enums
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field, field_validator, model_validator

from ..models.enums import FollowUpBranch, FulfillmentMethod, PriorityLevel, QuoteStatus
from ..utils import as_utc


class QuoteRequestItemIn(BaseModel):
    part_number: str
    description: str | None = None
    quantity: int = Field(default=1, ge=1)
    notes: str | None = None

    @field_validator("part_number")
    @classmethod
    def not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Part number must not be blank")
        return v


class QuoteRequestCreate(BaseModel):
    title: str
    supplier_id: int
    vehicle_id: int | None = None
    additional_supplier_ids: list[int] = Field(default_factory=list)
    items: list[QuoteRequestItemIn] = Field(min_length=1)
    description: str | None = None
    notes: str | None = None
    expiry_date: datetime | None = None
    suggested_fulfillment_method: FulfillmentMethod | None = None

    @field_validator("expiry_date")
    @classmethod
    def expiry_in_utc(cls, v: datetime | None) -> datetime | None:
        return as_utc(v)

    @field_validator("title")
    @classmethod
    def title_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Title must not be blank")
        return v

    @model_validator(mode="after")
    def drop_primary_from_additional(self) -> QuoteRequestCreate:
        seen: list[int] = []
        for sid in self.additional_supplier_ids:
            if sid != self.supplier_id and sid not in seen:
                seen.append(sid)
        self.additional_supplier_ids = seen
        return self


class StatusChange(BaseModel):
    """Buyer-driven status move (approve, reject, cancel, expire, revise)."""
    status: QuoteStatus
    notes: str | None = None


class SyncThreadsRequest(BaseModel):
    force_resync: bool = False


class ItemFulfillment(BaseModel):
    """Per-line fulfillment choice for SPLIT orders."""
    quote_item_id: int
    fulfillment_method: FulfillmentMethod


class ConvertToOrderRequest(BaseModel):
    fulfillment_method: FulfillmentMethod = FulfillmentMethod.DELIVERY
    selected_supplier_id: int | None = None
    item_fulfillment: list[ItemFulfillment] = Field(default_factory=list)
    tax: float = Field(default=0, ge=0)
    shipping: float = Field(default=0, ge=0)
    priority: PriorityLevel = PriorityLevel.MEDIUM
    pickup_location: str | None = None
    pickup_date: datetime | None = None
    notes: str | None = None

    @field_validator("pickup_date")
    @classmethod
    def pickup_in_utc(cls, v: datetime | None) -> datetime | None:
        return as_utc(v)


class FollowUpRequest(BaseModel):
    supplier_id: int | None = None
    workflow_branch: FollowUpBranch = FollowUpBranch.NO_RESPONSE
    additional_message: str | None = None
    expected_response_by: datetime | None = None

    @field_validator("expected_response_by")
    @classmethod
    def expected_in_utc(cls, v: datetime | None) -> datetime | None:
        return as_utc(v)


class LinkEmailThreadRequest(BaseModel):
    """Attach an existing thread to a quote request for one supplier."""
    email_thread_id: int
    supplier_id: int


class RefreshPricesRequest(BaseModel):
    supplier_id: int | None = None
