"""
routers/catalog.py — Supplier, vehicle and part catalog

Thin CRUD over the reference data quote requests point at.

Business Rules:
- Everything is scoped to the caller's organization
- Supplier emails and auxiliary emails are stored lowercase
- Auxiliary emails are unique per supplier; vehicle unit ids and part
  numbers are unique per organization (duplicates → 409)
- Writes need a buyer role

Called by: main.py (router mount)
Depends on: models, schemas/catalog.py, serializers, dependencies.py
"""

from fastapi import APIRouter, Depends, Query
from loguru import logger
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..database import get_db
from ..dependencies import require_buyer, require_user
from ..errors import ConflictError, NotFoundError
from ..models import AuxiliaryEmail, Part, Supplier, User, Vehicle
from ..schemas.catalog import AuxiliaryEmailCreate, PartCreate, SupplierCreate, SupplierUpdate, VehicleCreate
from ..serializers import part_to_dict, supplier_to_dict, vehicle_to_dict
from ..services.scoping import get_scoped

router = APIRouter(tags=["catalog"])


def _commit(db: Session, what: str):
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise ConflictError(f"{what} already exists")


# ── Suppliers ─────────────────────────────────────────────────────────


@router.get("/api/suppliers")
async def list_suppliers(
    q: str | None = None,
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
):
    query = db.query(Supplier).filter(Supplier.organization_id == user.organization_id)
    if q:
        like = f"%{q.strip()}%"
        query = query.filter(or_(Supplier.name.ilike(like), Supplier.email.ilike(like)))
    return [supplier_to_dict(s) for s in query.order_by(Supplier.name).all()]


@router.post("/api/suppliers", status_code=201)
async def create_supplier(payload: SupplierCreate, user: User = Depends(require_buyer), db: Session = Depends(get_db)):
    supplier = Supplier(organization_id=user.organization_id, **payload.model_dump())
    db.add(supplier)
    _commit(db, "Supplier")
    logger.info("Supplier {} created ({})", supplier.id, supplier.name)
    return supplier_to_dict(supplier, include_aux=True)


@router.get("/api/suppliers/{supplier_id}")
async def get_supplier(supplier_id: int, user: User = Depends(require_user), db: Session = Depends(get_db)):
    return supplier_to_dict(get_scoped(db, Supplier, user.organization_id, supplier_id, "Supplier"), include_aux=True)


@router.put("/api/suppliers/{supplier_id}")
async def update_supplier(
    supplier_id: int,
    payload: SupplierUpdate,
    user: User = Depends(require_buyer),
    db: Session = Depends(get_db),
):
    supplier = get_scoped(db, Supplier, user.organization_id, supplier_id, "Supplier")
    for field, value in payload.model_dump(exclude_unset=True).items():
        setattr(supplier, field, value)
    _commit(db, "Supplier")
    return supplier_to_dict(supplier, include_aux=True)


@router.post("/api/suppliers/{supplier_id}/auxiliary-emails", status_code=201)
async def add_auxiliary_email(
    supplier_id: int,
    payload: AuxiliaryEmailCreate,
    user: User = Depends(require_buyer),
    db: Session = Depends(get_db),
):
    supplier = get_scoped(db, Supplier, user.organization_id, supplier_id, "Supplier")
    if payload.email == (supplier.email or "").lower():
        raise ConflictError("Address is already the supplier's primary email")
    supplier.auxiliary_emails.append(AuxiliaryEmail(email=payload.email, name=payload.name))
    _commit(db, "Auxiliary email")
    return supplier_to_dict(supplier, include_aux=True)


@router.delete("/api/suppliers/{supplier_id}/auxiliary-emails/{aux_id}")
async def remove_auxiliary_email(
    supplier_id: int,
    aux_id: int,
    user: User = Depends(require_buyer),
    db: Session = Depends(get_db),
):
    supplier = get_scoped(db, Supplier, user.organization_id, supplier_id, "Supplier")
    aux = next((a for a in supplier.auxiliary_emails if a.id == aux_id), None)
    if aux is None:
        raise NotFoundError("Auxiliary email not found", id=aux_id)
    supplier.auxiliary_emails.remove(aux)
    db.commit()
    return supplier_to_dict(supplier, include_aux=True)


# ── Vehicles ──────────────────────────────────────────────────────────


@router.get("/api/vehicles")
async def list_vehicles(user: User = Depends(require_user), db: Session = Depends(get_db)):
    rows = db.query(Vehicle).filter_by(organization_id=user.organization_id).order_by(Vehicle.vehicle_id).all()
    return [vehicle_to_dict(v) for v in rows]


@router.post("/api/vehicles", status_code=201)
async def create_vehicle(payload: VehicleCreate, user: User = Depends(require_buyer), db: Session = Depends(get_db)):
    vehicle = Vehicle(organization_id=user.organization_id, **payload.model_dump())
    db.add(vehicle)
    _commit(db, "Vehicle")
    return vehicle_to_dict(vehicle)


@router.get("/api/vehicles/{vehicle_id}")
async def get_vehicle(vehicle_id: int, user: User = Depends(require_user), db: Session = Depends(get_db)):
    return vehicle_to_dict(get_scoped(db, Vehicle, user.organization_id, vehicle_id, "Vehicle"))


# ── Parts ─────────────────────────────────────────────────────────────


@router.get("/api/parts")
async def list_parts(
    q: str | None = None,
    limit: int = Query(100, ge=1, le=500),
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
):
    query = db.query(Part).filter(Part.organization_id == user.organization_id)
    if q:
        like = f"%{q.strip()}%"
        query = query.filter(or_(Part.part_number.ilike(like), Part.description.ilike(like)))
    return [part_to_dict(p) for p in query.order_by(Part.part_number).limit(limit).all()]


@router.post("/api/parts", status_code=201)
async def create_part(payload: PartCreate, user: User = Depends(require_buyer), db: Session = Depends(get_db)):
    part = Part(organization_id=user.organization_id, **payload.model_dump())
    db.add(part)
    _commit(db, "Part")
    return part_to_dict(part)


@router.get("/api/parts/{part_id}")
async def get_part(part_id: int, user: User = Depends(require_user), db: Session = Depends(get_db)):
    return part_to_dict(get_scoped(db, Part, user.organization_id, part_id, "Part"))
