"""
thread_reconciliation.py — Orphan assignment, thread merge and link repair

Replies sometimes land on a thread nobody linked to a quote request, or on
a second thread for a conversation that already has one. These operations
stitch such threads back onto the right quote request and supplier.

Business Rules:
- An orphan is a thread with no quote request
- Assigning an orphan to a quote request that already has a thread for that
  supplier merges the orphan into it instead of failing
- A sender address that is neither the supplier's email nor a known auxiliary
  address is recorded as a new auxiliary email (case-insensitive)
- Merge moves every message, junction link and order reference from source
  to target and deletes source, all in one commit; nothing changes on failure
- Merging a source that no longer exists is NotFound; merging a thread into itself is a ValidationError
- A manual link needs a supplier on the request without a link yet, and a thread free
  of any other quote request or supplier
- SyncThreads matches each thread's earliest outbound recipient against the
  supplier emails; unmatched threads are reported, never guessed
- SyncThreads is per-thread isolated: one bad thread lands in errors, the rest continue

Called by: routers/emails.py, routers/quote_requests.py
Depends on: models, services.activity_service, services.scoping
"""

from loguru import logger
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..errors import ConflictError, ValidationError
from ..models import (
    AuxiliaryEmail,
    EmailThread,
    Order,
    QuoteRequest,
    QuoteRequestEmailThread,
    Supplier,
    User,
)
from ..models.enums import ActivityType, EmailThreadStatus, MessageDirection, ThreadLinkStatus
from ..serializers import thread_link_to_dict, thread_to_dict
from ..utils import as_utc, iso
from ..utils.supplier_ids import all_supplier_ids
from .activity_service import record_activity
from .scoping import get_scoped


def _inbound(thread: EmailThread) -> list:
    return [m for m in thread.messages if m.direction == MessageDirection.INBOUND.value]


def _first_response_at(thread: EmailThread):
    stamps = [as_utc(m.received_at or m.created_at) for m in _inbound(thread)]
    stamps = [s for s in stamps if s is not None]
    return min(stamps) if stamps else None


def _addresses(supplier: Supplier) -> set[str]:
    found = {a.email.lower() for a in supplier.auxiliary_emails if a.email}
    if supplier.email:
        found.add(supplier.email.lower())
    return found


class ThreadReconciliationService:
    def __init__(self, db: Session):
        self.db = db

    def _suppliers(self, qr: QuoteRequest) -> list[Supplier]:
        ids = all_supplier_ids(qr.supplier_id, qr.additional_supplier_ids)
        rows = {
            s.id: s
            for s in self.db.query(Supplier)
            .filter(Supplier.id.in_(ids), Supplier.organization_id == qr.organization_id)
            .all()
        }
        return [rows[i] for i in ids if i in rows]

    # ── Orphans ───────────────────────────────────────────────────────

    def list_orphaned_threads(self, organization_id: int) -> list[dict]:
        threads = (
            self.db.query(EmailThread)
            .filter(EmailThread.organization_id == organization_id, EmailThread.quote_request_id.is_(None))
            .order_by(EmailThread.created_at.desc(), EmailThread.id.desc())
            .all()
        )
        out = []
        for t in threads:
            d = thread_to_dict(t)
            first = t.messages[0] if t.messages else None
            d["first_message"] = (
                {
                    "from": first.from_address,
                    "subject": first.subject,
                    "preview": (first.body or "")[:200],
                    "received_at": iso(first.received_at or first.created_at),
                }
                if first
                else None
            )
            out.append(d)
        return out

    def assign_orphan(self, user: User, thread_id: int, qr_id: int) -> dict:
        """Attach an orphaned thread to a quote request (or merge it into the existing one)."""
        org_id = user.organization_id
        thread = get_scoped(self.db, EmailThread, org_id, thread_id, "Email thread")
        qr = get_scoped(self.db, QuoteRequest, org_id, qr_id, "Quote request")

        if thread.quote_request_id is not None:
            if thread.quote_request_id != qr.id:
                raise ConflictError(
                    "Thread is already assigned to another quote request",
                    quote_request_id=thread.quote_request_id,
                )
            return {
                "thread": thread_to_dict(thread),
                "merged": False,
                "already_assigned": True,
                "supplier_id": thread.supplier_id,
                "auxiliary_email_added": None,
            }

        sender = thread.messages[0].from_address.strip().lower() if thread.messages else None
        supplier = self._supplier_for_sender(qr, thread, sender)
        aux_added = self._record_auxiliary(supplier, sender)
        existing = self._thread_for(qr, supplier.id, exclude_id=thread.id)

        try:
            if existing is not None:
                self._merge_into(thread, existing)
                result_thread = existing
            else:
                thread.quote_request_id = qr.id
                thread.supplier_id = supplier.id
                responded_at = _first_response_at(thread)
                if responded_at and thread.status in (EmailThreadStatus.DRAFT.value, EmailThreadStatus.SENT.value):
                    thread.status = EmailThreadStatus.RESPONSE_RECEIVED.value
                qr.thread_links.append(
                    QuoteRequestEmailThread(
                        email_thread=thread,
                        supplier_id=supplier.id,
                        is_primary=supplier.id == qr.supplier_id,
                        status=(ThreadLinkStatus.RESPONDED if responded_at else ThreadLinkStatus.SENT).value,
                        response_date=responded_at,
                    )
                )
                result_thread = thread
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise ConflictError("Supplier is already linked to this quote request", supplier_id=supplier.id)
        except SQLAlchemyError:
            self.db.rollback()
            raise

        merged = existing is not None
        logger.info(
            "Orphan thread {} assigned to {} (supplier {}, merged={}, aux={})",
            thread_id, qr.quote_number, supplier.id, merged, aux_added,
        )
        record_activity(
            self.db,
            org_id,
            ActivityType.EMAIL_LINKED,
            f"Email thread linked to {qr.quote_number}",
            description=f"Merged into thread {result_thread.id}" if merged else None,
            entity_type="quote_request",
            entity_id=qr.id,
            user_id=user.id,
            details={"thread_id": result_thread.id, "supplier_id": supplier.id, "merged": merged},
        )
        self.db.refresh(result_thread)
        return {
            "thread": thread_to_dict(result_thread, include_messages=True),
            "merged": merged,
            "already_assigned": False,
            "supplier_id": supplier.id,
            "auxiliary_email_added": aux_added,
        }

    def _supplier_for_sender(self, qr: QuoteRequest, thread: EmailThread, sender: str | None) -> Supplier:
        suppliers = self._suppliers(qr)
        if sender:
            for s in suppliers:
                if sender in _addresses(s):
                    return s
        for s in suppliers:
            if s.id == thread.supplier_id:
                return s
        return get_scoped(self.db, Supplier, qr.organization_id, qr.supplier_id, "Supplier")

    def _record_auxiliary(self, supplier: Supplier, sender: str | None) -> str | None:
        if not sender or sender in _addresses(supplier):
            return None
        supplier.auxiliary_emails.append(AuxiliaryEmail(email=sender))
        return sender

    def _thread_for(self, qr: QuoteRequest, supplier_id: int, exclude_id: int | None = None) -> EmailThread | None:
        link = next((l for l in qr.thread_links if l.supplier_id == supplier_id), None)
        if link is not None and link.email_thread is not None and link.email_thread.id != exclude_id:
            return link.email_thread
        q = self.db.query(EmailThread).filter(
            EmailThread.quote_request_id == qr.id, EmailThread.supplier_id == supplier_id
        )
        if exclude_id is not None:
            q = q.filter(EmailThread.id != exclude_id)
        return q.order_by(EmailThread.id).first()

    # ── Merge ─────────────────────────────────────────────────────────

    def merge(self, user: User, source_id: int, target_id: int) -> EmailThread:
        if source_id == target_id:
            raise ValidationError("Source and target threads must differ", thread_id=source_id)
        org_id = user.organization_id
        source = get_scoped(self.db, EmailThread, org_id, source_id, "Source thread")
        target = get_scoped(self.db, EmailThread, org_id, target_id, "Target thread")
        moved = len(source.messages)
        try:
            self._merge_into(source, target)
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.error("Merge of thread {} into {} rolled back", source_id, target_id)
            raise

        logger.info("Merged thread {} into {} ({} messages)", source_id, target_id, moved)
        record_activity(
            self.db,
            org_id,
            ActivityType.EMAIL_LINKED,
            "Email threads merged",
            description=f"Thread {source_id} merged into {target_id}",
            entity_type="email_thread",
            entity_id=target_id,
            user_id=user.id,
            details={"source_thread_id": source_id, "messages_moved": moved},
        )
        self.db.refresh(target)
        return target

    def _merge_into(self, source: EmailThread, target: EmailThread) -> None:
        """Move everything from source onto target and delete source. Caller commits."""
        for message in list(source.messages):
            target.messages.append(message)

        if target.quote_request_id is None and source.quote_request_id is not None:
            target.quote_request_id = source.quote_request_id
        if target.supplier_id is None and source.supplier_id is not None:
            target.supplier_id = source.supplier_id
        if _inbound(target) and target.status in (EmailThreadStatus.DRAFT.value, EmailThreadStatus.SENT.value):
            target.status = EmailThreadStatus.RESPONSE_RECEIVED.value

        for link in list(source.quote_links):
            link.email_thread = target

        target_has_order = self.db.query(Order.id).filter_by(email_thread_id=target.id).first() is not None
        for order in self.db.query(Order).filter_by(email_thread_id=source.id).all():
            order.email_thread_id = None if target_has_order else target.id
            target_has_order = True

        self.db.flush()
        self.db.delete(source)
        self.db.flush()

    # ── Link repair ───────────────────────────────────────────────────

    def link_thread(self, user: User, qr_id: int, thread_id: int, supplier_id: int) -> dict:
        """Link an existing thread to a quote request for one of its suppliers."""
        org_id = user.organization_id
        qr = get_scoped(self.db, QuoteRequest, org_id, qr_id, "Quote request")
        thread = get_scoped(self.db, EmailThread, org_id, thread_id, "Email thread")
        supplier = get_scoped(self.db, Supplier, org_id, supplier_id, "Supplier")

        if supplier.id not in all_supplier_ids(qr.supplier_id, qr.additional_supplier_ids):
            raise ValidationError("Supplier is not part of this quote request", supplier_id=supplier.id)
        if any(l.supplier_id == supplier.id for l in qr.thread_links):
            raise ConflictError("This supplier is already linked to this quote request", supplier_id=supplier.id)
        if thread.quote_request_id not in (None, qr.id):
            raise ConflictError(
                "Thread is already assigned to another quote request",
                quote_request_id=thread.quote_request_id,
            )
        if thread.supplier_id not in (None, supplier.id):
            raise ValidationError("Thread belongs to another supplier", thread_supplier_id=thread.supplier_id)

        responded_at = _first_response_at(thread)
        link = QuoteRequestEmailThread(
            email_thread=thread,
            supplier_id=supplier.id,
            is_primary=supplier.id == qr.supplier_id,
            status=(ThreadLinkStatus.RESPONDED if responded_at else ThreadLinkStatus.SENT).value,
            response_date=responded_at,
        )
        try:
            thread.quote_request_id = qr.id
            thread.supplier_id = supplier.id
            if responded_at and thread.status in (EmailThreadStatus.DRAFT.value, EmailThreadStatus.SENT.value):
                thread.status = EmailThreadStatus.RESPONSE_RECEIVED.value
            qr.thread_links.append(link)
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise ConflictError("This supplier is already linked to this quote request", supplier_id=supplier.id)
        except SQLAlchemyError:
            self.db.rollback()
            raise

        logger.info("Thread {} linked to {} for supplier {}", thread.id, qr.quote_number, supplier.id)
        record_activity(
            self.db,
            org_id,
            ActivityType.EMAIL_LINKED,
            f"Email thread linked to {qr.quote_number}",
            description=f"{supplier.name}: thread {thread.id}",
            entity_type="quote_request",
            entity_id=qr.id,
            user_id=user.id,
            details={"thread_id": thread.id, "supplier_id": supplier.id, "manual": True},
        )
        return {"link": thread_link_to_dict(link), "thread": thread_to_dict(thread)}

    def sync_threads(self, user: User, qr_id: int, force_resync: bool = False) -> dict:
        """Rebuild junction links by recipient address. Per-thread failures go to errors."""
        qr = get_scoped(self.db, QuoteRequest, user.organization_id, qr_id, "Quote request")
        suppliers = self._suppliers(qr)

        if force_resync and qr.thread_links:
            cleared = len(qr.thread_links)
            qr.thread_links.clear()
            self.db.commit()
            logger.info("Cleared {} thread links on {} for resync", cleared, qr.quote_number)

        threads = (
            self.db.query(EmailThread)
            .filter_by(quote_request_id=qr.id)
            .order_by(EmailThread.id)
            .all()
        )
        linked, already_linked, errors = [], [], []
        for thread in threads:
            outbound = [m for m in thread.messages if m.direction == MessageDirection.OUTBOUND.value]
            if not outbound:
                errors.append({"thread_id": thread.id, "error": "Thread has no outbound message"})
                continue
            recipients = {str(a).strip().lower() for a in (outbound[0].to_addresses or [])}
            supplier = next((s for s in suppliers if recipients & _addresses(s)), None)
            if supplier is None:
                errors.append(
                    {
                        "thread_id": thread.id,
                        "error": "No supplier on this quote request matches the recipient",
                        "recipients": sorted(recipients),
                    }
                )
                continue

            link = next((l for l in qr.thread_links if l.supplier_id == supplier.id), None)
            if link is not None:
                if link.email_thread_id == thread.id:
                    already_linked.append({"thread_id": thread.id, "supplier_id": supplier.id})
                else:
                    errors.append(
                        {
                            "thread_id": thread.id,
                            "supplier_id": supplier.id,
                            "error": f"Supplier already linked to thread {link.email_thread_id}",
                        }
                    )
                continue

            responded_at = _first_response_at(thread)
            try:
                if thread.supplier_id is None:
                    thread.supplier_id = supplier.id
                qr.thread_links.append(
                    QuoteRequestEmailThread(
                        email_thread=thread,
                        supplier_id=supplier.id,
                        is_primary=supplier.id == qr.supplier_id,
                        status=(ThreadLinkStatus.RESPONDED if responded_at else ThreadLinkStatus.SENT).value,
                        response_date=responded_at,
                    )
                )
                self.db.commit()
            except SQLAlchemyError as e:
                self.db.rollback()
                logger.warning("Sync link failed for thread {} on {}: {}", thread.id, qr.quote_number, e)
                errors.append({"thread_id": thread.id, "supplier_id": supplier.id, "error": "Could not link thread"})
                continue
            linked.append({"thread_id": thread.id, "supplier_id": supplier.id, "supplier_name": supplier.name})

        logger.info(
            "Synced threads for {}: {} linked, {} already linked, {} errors",
            qr.quote_number, len(linked), len(already_linked), len(errors),
        )
        if linked:
            record_activity(
                self.db,
                qr.organization_id,
                ActivityType.SYSTEM_UPDATE,
                f"Email threads re-linked on {qr.quote_number}",
                entity_type="quote_request",
                entity_id=qr.id,
                user_id=user.id,
                details={"linked": len(linked), "force_resync": force_resync},
            )
        return {
            "quote_request_id": qr.id,
            "linked": linked,
            "already_linked": already_linked,
            "errors": errors,
            "summary": {
                "total_threads": len(threads),
                "linked": len(linked),
                "already_linked": len(already_linked),
                "errors": len(errors),
            },
        }

    # ── Manual status ─────────────────────────────────────────────────

    def update_email_thread_status(self, organization_id: int, thread_id: int, status: EmailThreadStatus) -> EmailThread:
        thread = get_scoped(self.db, EmailThread, organization_id, thread_id, "Email thread")
        old = thread.status
        thread.status = status.value
        self.db.commit()
        logger.info("Thread {} status {} → {}", thread_id, old, thread.status)
        return thread
