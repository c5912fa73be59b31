"""
schemas/catalog.py — Pydantic models for supplier, vehicle and part endpoints

Called by: routers/catalog.py
Depends on: pydantic
"""

from __future__ import annotations

from pydantic import BaseModel, Field, field_validator


def _strip_required(v: str) -> str:
    v = v.strip()
    if not v:
        raise ValueError("Field must not be blank")
    return v


class SupplierCreate(BaseModel):
    name: str
    email: str | None = None
    contact_person: str | None = None
    phone: str | None = None
    type: str = "DEALER"
    street: str | None = None
    city: str | None = None
    state: str | None = None
    zip_code: str | None = None
    notes: str | None = None

    @field_validator("name")
    @classmethod
    def name_not_blank(cls, v: str) -> str:
        return _strip_required(v)

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v: str | None) -> str | None:
        if v is None:
            return None
        v = v.strip().lower()
        if v and "@" not in v:
            raise ValueError("Invalid email address")
        return v or None


class SupplierUpdate(BaseModel):
    name: str | None = None
    email: str | None = None
    contact_person: str | None = None
    phone: str | None = None
    type: str | None = None
    notes: str | None = None

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v: str | None) -> str | None:
        if v is None:
            return None
        v = v.strip().lower()
        if v and "@" not in v:
            raise ValueError("Invalid email address")
        return v or None


class AuxiliaryEmailCreate(BaseModel):
    email: str
    name: str | None = None

    @field_validator("email")
    @classmethod
    def valid_email(cls, v: str) -> str:
        v = _strip_required(v).lower()
        if "@" not in v:
            raise ValueError("Invalid email address")
        return v


class VehicleCreate(BaseModel):
    vehicle_id: str
    make: str | None = None
    model: str | None = None
    year: int | None = Field(default=None, ge=1900, le=2100)
    serial_number: str | None = None
    type: str | None = None

    @field_validator("vehicle_id")
    @classmethod
    def unit_not_blank(cls, v: str) -> str:
        return _strip_required(v)


class PartCreate(BaseModel):
    part_number: str
    description: str | None = None
    category: str | None = None
    supplier_part_number: str | None = None
    price: float = Field(default=0, ge=0)
    cost: float = Field(default=0, ge=0)
    stock_quantity: int = Field(default=0, ge=0)
    min_stock_level: int = Field(default=0, ge=0)

    @field_validator("part_number")
    @classmethod
    def part_not_blank(cls, v: str) -> str:
        return _strip_required(v)
