"""
routers/emails.py — Email thread repair endpoints

Lists orphaned supplier threads and lets managers attach or merge them.

Business Rules:
- Orphan listing and thread status need any authenticated user
- Assign and merge are restricted to admins and managers
- Assigning onto a quote request that already has a thread for the supplier merges

Called by: main.py (router mount)
Depends on: services/thread_reconciliation.py, dependencies.py
"""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..database import get_db
from ..dependencies import require_manager, require_user
from ..models import EmailThread, User
from ..schemas.emails import MergeThreads, OrphanAssign, ThreadStatusUpdate
from ..serializers import thread_to_dict
from ..services.scoping import get_scoped
from ..services.thread_reconciliation import ThreadReconciliationService

router = APIRouter(tags=["emails"])


@router.get("/api/emails/orphaned")
async def list_orphaned(user: User = Depends(require_user), db: Session = Depends(get_db)):
    threads = ThreadReconciliationService(db).list_orphaned_threads(user.organization_id)
    return {"threads": threads, "total": len(threads)}


@router.post("/api/emails/orphaned/assign")
async def assign_orphan(
    payload: OrphanAssign,
    user: User = Depends(require_manager),
    db: Session = Depends(get_db),
):
    return ThreadReconciliationService(db).assign_orphan(user, payload.thread_id, payload.quote_request_id)


@router.post("/api/emails/merge")
async def merge_threads(
    payload: MergeThreads,
    user: User = Depends(require_manager),
    db: Session = Depends(get_db),
):
    target = ThreadReconciliationService(db).merge(user, payload.source_thread_id, payload.target_thread_id)
    return {"merged": True, "thread": thread_to_dict(target, include_messages=True)}


@router.get("/api/email-threads/{thread_id}")
async def get_thread(thread_id: int, user: User = Depends(require_user), db: Session = Depends(get_db)):
    thread = get_scoped(db, EmailThread, user.organization_id, thread_id, "Email thread")
    return thread_to_dict(thread, include_messages=True)


@router.patch("/api/email-threads/{thread_id}/status")
async def update_thread_status(
    thread_id: int,
    payload: ThreadStatusUpdate,
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
):
    thread = ThreadReconciliationService(db).update_email_thread_status(
        user.organization_id, thread_id, payload.status
    )
    return thread_to_dict(thread)
