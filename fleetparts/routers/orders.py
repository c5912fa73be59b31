"""
routers/orders.py — Order views and supplier follow-up

Orders are only created by converting an approved quote request
(POST /api/quote-requests/{id}/convert-to-order); this router reads them
and chases their supplier by email.

Called by: main.py (router mount)
Depends on: models, serializers, services/follow_ups.py, dependencies.py
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..database import get_db
from ..dependencies import get_email_gateway, require_buyer, require_user
from ..models import Order, User
from ..models.enums import OrderStatus
from ..schemas.orders import OrderFollowUpRequest
from ..serializers import order_to_dict
from ..services.activity_service import list_activity
from ..services.email_gateway import EmailGateway
from ..services.follow_ups import FollowUpService
from ..services.scoping import get_scoped

router = APIRouter(tags=["orders"])


@router.get("/api/orders")
async def list_orders(
    status: OrderStatus | None = None,
    quote_request_id: int | None = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
):
    q = db.query(Order).filter(Order.organization_id == user.organization_id)
    if status:
        q = q.filter(Order.status == status.value)
    if quote_request_id is not None:
        q = q.filter(Order.quote_request_id == quote_request_id)
    total = q.count()
    rows = q.order_by(Order.created_at.desc(), Order.id.desc()).offset(offset).limit(limit).all()
    return {"items": [order_to_dict(o, include_items=False) for o in rows], "total": total}


@router.get("/api/orders/{order_id}")
async def get_order(order_id: int, user: User = Depends(require_user), db: Session = Depends(get_db)):
    order = get_scoped(db, Order, user.organization_id, order_id, "Order")
    d = order_to_dict(order)
    d["activity"] = list_activity(db, user.organization_id, "order", order.id)
    return d


@router.post("/api/orders/{order_id}/follow-up")
async def order_follow_up(
    order_id: int,
    payload: OrderFollowUpRequest,
    user: User = Depends(require_buyer),
    db: Session = Depends(get_db),
    gateway: EmailGateway = Depends(get_email_gateway),
):
    return await FollowUpService(db, gateway).follow_up_order(user, order_id, payload)
