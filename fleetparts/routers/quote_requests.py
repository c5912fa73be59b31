"""
routers/quote_requests.py — Quote request lifecycle endpoints

Create, send, poll, compare, approve and convert quote requests. All
state changes go through services/quote_lifecycle.py and
services/order_conversion.py; this module only wires HTTP to them.

Business Rules:
- Reads need any authenticated user; mutations need a buyer role
- Send and follow-up are rate limited (settings.rate_limit_send) since each call fans out
  one gateway request per supplier
- Send, follow-up, prices and sync-threads answer 200 with a per-supplier/per-thread summary
- Convert answers 502 when the confirmation email fails; the order stays
  pending and the same call can be retried

Called by: main.py (router mount)
Depends on: services/quote_lifecycle.py, services/order_conversion.py, services/follow_ups.py,
            services/thread_reconciliation.py, dependencies.py
"""

from fastapi import APIRouter, Depends, Query, Request
from loguru import logger
from sqlalchemy.orm import Session

from ..config import settings
from ..database import get_db
from ..dependencies import get_email_gateway, require_buyer, require_user
from ..models import User
from ..models.enums import QuoteStatus
from ..rate_limit import limiter
from ..schemas.quote_requests import (
    ConvertToOrderRequest,
    FollowUpRequest,
    LinkEmailThreadRequest,
    QuoteRequestCreate,
    RefreshPricesRequest,
    StatusChange,
    SyncThreadsRequest,
)
from ..serializers import quote_request_detail, quote_request_summary
from ..services.activity_service import list_activity
from ..services.email_gateway import EmailGateway
from ..services.follow_ups import FollowUpService
from ..services.order_conversion import OrderConversionService
from ..services.quote_lifecycle import QuoteLifecycleService
from ..services.thread_reconciliation import ThreadReconciliationService

router = APIRouter(tags=["quote-requests"])


def _detail(svc: QuoteLifecycleService, qr) -> dict:
    return quote_request_detail(qr, svc.additional_supplier_ids(qr))


@router.get("/api/quote-requests")
async def list_quote_requests(
    status: QuoteStatus | None = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
):
    rows, total = QuoteLifecycleService(db).list_quote_requests(
        user.organization_id, status.value if status else None, limit, offset
    )
    return {"items": [quote_request_summary(q) for q in rows], "total": total, "limit": limit, "offset": offset}


@router.post("/api/quote-requests", status_code=201)
async def create_quote_request(
    payload: QuoteRequestCreate,
    user: User = Depends(require_buyer),
    db: Session = Depends(get_db),
):
    svc = QuoteLifecycleService(db)
    qr = svc.create_quote_request(user, payload)
    return _detail(svc, qr)


@router.get("/api/quote-requests/{qr_id}")
async def get_quote_request(qr_id: int, user: User = Depends(require_user), db: Session = Depends(get_db)):
    svc = QuoteLifecycleService(db)
    return _detail(svc, svc.get_quote_request(user.organization_id, qr_id))


@router.get("/api/quote-requests/{qr_id}/activity")
async def get_activity(qr_id: int, user: User = Depends(require_user), db: Session = Depends(get_db)):
    QuoteLifecycleService(db).get_quote_request(user.organization_id, qr_id)
    return list_activity(db, user.organization_id, "quote_request", qr_id)


# ── Send / reply tracking ─────────────────────────────────────────────


@router.post("/api/quote-requests/{qr_id}/send")
@limiter.limit(settings.rate_limit_send)
async def send_quote_request(
    qr_id: int,
    request: Request,
    user: User = Depends(require_buyer),
    db: Session = Depends(get_db),
    gateway: EmailGateway = Depends(get_email_gateway),
):
    result = await QuoteLifecycleService(db, gateway).send(user, qr_id)
    logger.info(
        "Send {} by user {}: {} sent, {} failed", result["quote_number"], user.id,
        result["total_sent"], result["total_failed"],
    )
    return result


@router.get("/api/quote-requests/{qr_id}/reply-status")
async def get_reply_status(qr_id: int, user: User = Depends(require_user), db: Session = Depends(get_db)):
    return QuoteLifecycleService(db).get_reply_status(user.organization_id, qr_id)


@router.get("/api/quote-requests/{qr_id}/comparison")
async def compare_quotes(qr_id: int, user: User = Depends(require_user), db: Session = Depends(get_db)):
    return QuoteLifecycleService(db).compare_quotes(user.organization_id, qr_id)


@router.post("/api/quote-requests/{qr_id}/update-thread-statuses")
async def update_thread_statuses(qr_id: int, user: User = Depends(require_buyer), db: Session = Depends(get_db)):
    return QuoteLifecycleService(db).update_thread_statuses(user.organization_id, qr_id)


@router.post("/api/quote-requests/{qr_id}/sync-threads")
async def sync_threads(
    qr_id: int,
    payload: SyncThreadsRequest | None = None,
    user: User = Depends(require_buyer),
    db: Session = Depends(get_db),
):
    force = payload.force_resync if payload else False
    return ThreadReconciliationService(db).sync_threads(user, qr_id, force_resync=force)


@router.post("/api/quote-requests/{qr_id}/link-email-thread", status_code=201)
async def link_email_thread(
    qr_id: int,
    payload: LinkEmailThreadRequest,
    user: User = Depends(require_buyer),
    db: Session = Depends(get_db),
):
    return ThreadReconciliationService(db).link_thread(user, qr_id, payload.email_thread_id, payload.supplier_id)


@router.post("/api/quote-requests/{qr_id}/follow-up")
@limiter.limit(settings.rate_limit_send)
async def send_follow_up(
    qr_id: int,
    payload: FollowUpRequest,
    request: Request,
    user: User = Depends(require_buyer),
    db: Session = Depends(get_db),
    gateway: EmailGateway = Depends(get_email_gateway),
):
    return await FollowUpService(db, gateway).follow_up_quote(user, qr_id, payload)


@router.post("/api/quote-requests/{qr_id}/prices")
async def refresh_prices(
    qr_id: int,
    payload: RefreshPricesRequest | None = None,
    user: User = Depends(require_buyer),
    db: Session = Depends(get_db),
    gateway: EmailGateway = Depends(get_email_gateway),
):
    supplier_id = payload.supplier_id if payload else None
    return await QuoteLifecycleService(db, gateway).refresh_prices(user, qr_id, supplier_id)


# ── Buyer decisions ───────────────────────────────────────────────────


@router.post("/api/quote-requests/{qr_id}/status")
async def change_status(
    qr_id: int,
    payload: StatusChange,
    user: User = Depends(require_buyer),
    db: Session = Depends(get_db),
):
    svc = QuoteLifecycleService(db)
    return _detail(svc, svc.transition_status(user, qr_id, payload))


@router.post("/api/quote-requests/{qr_id}/convert-to-order", status_code=201)
async def convert_to_order(
    qr_id: int,
    payload: ConvertToOrderRequest,
    user: User = Depends(require_buyer),
    db: Session = Depends(get_db),
    gateway: EmailGateway = Depends(get_email_gateway),
):
    return await OrderConversionService(db, gateway).convert(user, qr_id, payload)
