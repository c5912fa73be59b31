"""
routers/webhooks.py — Inbound callbacks from the email automation service

Business Rules:
- Authenticated like any other caller; the automation service uses x-agent-key
- Threads are looked up by external thread id inside the caller's organization
- A redelivered message id is acknowledged without reprocessing

Called by: main.py (router mount)
Depends on: services/quote_lifecycle.py, dependencies.py
"""

from fastapi import APIRouter, Depends
from loguru import logger
from sqlalchemy.orm import Session

from ..database import get_db
from ..dependencies import get_email_gateway, require_user
from ..models import User
from ..schemas.emails import InboundEmail
from ..services.email_gateway import EmailGateway
from ..services.quote_lifecycle import QuoteLifecycleService

router = APIRouter(tags=["webhooks"])


@router.post("/api/webhooks/email/parse")
async def email_parse_webhook(
    payload: InboundEmail,
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
    gateway: EmailGateway = Depends(get_email_gateway),
):
    logger.info("Inbound reply on thread {} from {}", payload.thread_id, payload.from_address)
    result = await QuoteLifecycleService(db, gateway).reconcile_inbound_reply(user.organization_id, payload)
    return {"success": True, **result}
