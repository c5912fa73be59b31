"""
schemas/orders.py — Pydantic models for order endpoints

Called by: routers/orders.py, services/follow_ups.py
Depends on: pydantic, models.enums
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, field_validator

from ..models.enums import OrderFollowUpBranch
from ..utils import as_utc


class OrderFollowUpRequest(BaseModel):
    branch: OrderFollowUpBranch
    user_message: str | None = None
    expected_response_date: datetime | None = None

    @field_validator("expected_response_date")
    @classmethod
    def expected_in_utc(cls, v: datetime | None) -> datetime | None:
        return as_utc(v)
