"""
quote_lifecycle.py — Quote Request Lifecycle Engine

Creates quote requests, fans them out to the primary + additional
suppliers, reconciles supplier replies delivered by the parse webhook,
and answers the polling/comparison queries buyers use before approval.

Business Rules:
- Quote numbers are QR-MM-YYYY-XXXX, unique per organization, retried on collision
- Send: one EmailThread + one outbound EmailMessage + one junction link per supplier
- Send never duplicates a (quote request, supplier) link; existing links are skipped
- A failure for one supplier is recorded and the next supplier is still attempted
- The request becomes SENT as soon as one supplier was reached
- A priced reply (items, a non-zero total, or high confidence) → UNDER_REVIEW + item upsert
- An unpriced reply is an acknowledgment → RECEIVED (only from SENT)
- Replies on a converted thread become order correspondence, quote untouched
- Replies once the request left SENT/RECEIVED/UNDER_REVIEW are stored only:
  no status move, no item upsert, link and totals untouched
- Price refresh re-parses the latest stored reply per supplier; nothing new is sent
- Send returns after dispatch; reply arrival is observed through get_reply_status()

Called by: routers/quote_requests.py, routers/webhooks.py
Depends on: models, services.email_gateway, services.quote_states, services.activity_service
"""

from datetime import datetime, timezone

from loguru import logger
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import settings
from ..errors import ConflictError, ExternalGatewayError, InvalidStateError, NotFoundError, ValidationError
from ..models import (
    EmailAttachment,
    EmailMessage,
    EmailThread,
    GatewayResponse,
    Order,
    Organization,
    QuoteRequest,
    QuoteRequestEmailThread,
    QuoteRequestItem,
    Supplier,
    User,
    Vehicle,
)
from ..models.enums import (
    ActivityType,
    EmailThreadStatus,
    MessageDirection,
    QuoteStatus,
    ThreadLinkStatus,
)
from ..schemas.emails import InboundEmail
from ..schemas.quote_requests import QuoteRequestCreate, StatusChange
from ..utils import as_utc, iso, money
from ..utils.normalization import normalize_availability, normalize_lead_time, normalize_price
from ..utils.numbering import new_quote_number
from ..utils.supplier_ids import all_supplier_ids, decode_supplier_ids, encode_supplier_ids
from .activity_service import record_activity
from .email_gateway import EmailGateway
from .quote_states import (
    MANUAL_TARGETS,
    REPLY_ACK_SOURCES,
    REPLY_PRICED_SOURCES,
    can_transition,
    transition,
)
from .scoping import get_scoped


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class QuoteLifecycleService:
    """Drives QuoteRequest state. One instance per request (holds the Session)."""

    def __init__(self, db: Session, gateway: EmailGateway | None = None):
        self.db = db
        self.gateway = gateway

    # ── Lookups ───────────────────────────────────────────────────────

    def get_quote_request(self, organization_id: int, qr_id: int) -> QuoteRequest:
        return get_scoped(self.db, QuoteRequest, organization_id, qr_id, "Quote request")

    def list_quote_requests(
        self, organization_id: int, status: str | None = None, limit: int = 50, offset: int = 0
    ) -> tuple[list[QuoteRequest], int]:
        q = self.db.query(QuoteRequest).filter(QuoteRequest.organization_id == organization_id)
        if status:
            q = q.filter(QuoteRequest.status == status)
        total = q.count()
        rows = q.order_by(QuoteRequest.created_at.desc(), QuoteRequest.id.desc()).offset(offset).limit(limit).all()
        return rows, total

    def supplier_ids(self, qr: QuoteRequest) -> list[int]:
        """Primary first, then additional suppliers in stored order."""
        return all_supplier_ids(qr.supplier_id, qr.additional_supplier_ids)

    def suppliers_for(self, qr: QuoteRequest) -> list[Supplier]:
        ids = self.supplier_ids(qr)
        rows = (
            self.db.query(Supplier)
            .filter(Supplier.id.in_(ids), Supplier.organization_id == qr.organization_id)
            .all()
        )
        by_id = {s.id: s for s in rows}
        return [by_id[i] for i in ids if i in by_id]

    # ── Create ────────────────────────────────────────────────────────

    def create_quote_request(self, user: User, data: QuoteRequestCreate) -> QuoteRequest:
        org_id = user.organization_id
        get_scoped(self.db, Supplier, org_id, data.supplier_id, "Supplier")
        if data.vehicle_id is not None:
            get_scoped(self.db, Vehicle, org_id, data.vehicle_id, "Vehicle")
        for sid in data.additional_supplier_ids:
            get_scoped(self.db, Supplier, org_id, sid, "Additional supplier")

        for attempt in range(1, settings.quote_number_max_attempts + 1):
            number = new_quote_number()
            taken = (
                self.db.query(QuoteRequest.id)
                .filter_by(organization_id=org_id, quote_number=number)
                .first()
            )
            if taken:
                logger.debug("Quote number {} taken, retrying", number)
                continue

            qr = QuoteRequest(
                organization_id=org_id,
                quote_number=number,
                title=data.title,
                description=data.description,
                notes=data.notes,
                status=QuoteStatus.DRAFT.value,
                supplier_id=data.supplier_id,
                additional_supplier_ids=encode_supplier_ids(data.additional_supplier_ids),
                vehicle_id=data.vehicle_id,
                created_by_id=user.id,
                expiry_date=data.expiry_date,
                suggested_fulfillment_method=(
                    data.suggested_fulfillment_method.value if data.suggested_fulfillment_method else None
                ),
                request_date=_utcnow(),
            )
            for item in data.items:
                qr.items.append(
                    QuoteRequestItem(
                        part_number=item.part_number,
                        description=item.description,
                        quantity=item.quantity,
                        notes=item.notes,
                    )
                )
            self.db.add(qr)
            try:
                self.db.commit()
            except IntegrityError:
                # Concurrent create grabbed the same number between check and insert
                self.db.rollback()
                logger.info("Quote number {} collided on insert (attempt {})", number, attempt)
                continue
            break
        else:
            raise ConflictError("Could not allocate a unique quote number, please retry")

        logger.info("Quote request {} created by {}", qr.quote_number, user.email)
        record_activity(
            self.db,
            org_id,
            ActivityType.QUOTE_REQUESTED,
            f"Quote request {qr.quote_number} created",
            description=qr.title,
            entity_type="quote_request",
            entity_id=qr.id,
            user_id=user.id,
            details={"item_count": len(data.items), "supplier_count": 1 + len(data.additional_supplier_ids)},
        )
        return qr

    # ── Send (fan-out) ────────────────────────────────────────────────

    async def send(self, user: User, qr_id: int) -> dict:
        """Email every supplier on the request that has no thread link yet.

        Returns a per-supplier summary; never raises for a single supplier's failure.
        """
        qr = self.get_quote_request(user.organization_id, qr_id)
        if not can_transition(qr.status, QuoteStatus.SENT):
            raise InvalidStateError(
                f"Quote request {qr.quote_number} cannot be sent while {qr.status}", current=qr.status
            )
        base_items = [i for i in qr.items if i.supplier_id is None]
        if not base_items:
            raise ValidationError("Quote request has no items to send")

        wanted = self.supplier_ids(qr)
        found = {s.id: s for s in self.suppliers_for(qr)}
        linked = {link.supplier_id for link in qr.thread_links}
        org = self.db.get(Organization, qr.organization_id)

        results: list[dict] = []
        for sid in wanted:
            supplier = found.get(sid)
            outcome = {
                "supplier_id": sid,
                "supplier_name": supplier.name if supplier else None,
                "is_primary": sid == qr.supplier_id,
            }
            if supplier is None:
                results.append({**outcome, "status": "failed", "error": "Supplier not found"})
                continue
            if sid in linked:
                results.append({**outcome, "status": "already_sent"})
                continue
            if not supplier.email:
                results.append({**outcome, "status": "failed", "error": "Supplier does not have an email address"})
                continue

            try:
                thread = await self._send_to_supplier(qr, supplier, base_items, org, user)
            except ExternalGatewayError as e:
                self.db.rollback()
                logger.warning("RFQ {} to supplier {} failed: {}", qr.quote_number, sid, e.detail)
                results.append({**outcome, "status": "failed", "error": e.detail})
                continue
            except IntegrityError:
                # A concurrent send linked this supplier first
                self.db.rollback()
                results.append({**outcome, "status": "already_sent"})
                continue
            except SQLAlchemyError as e:
                self.db.rollback()
                logger.error("RFQ {} to supplier {} not recorded: {}", qr.quote_number, sid, e)
                results.append({**outcome, "status": "failed", "error": "Could not record the sent email"})
                continue

            results.append(
                {
                    **outcome,
                    "status": "sent",
                    "email_thread_id": thread.id,
                    "external_thread_id": thread.external_thread_id,
                }
            )

        total_sent = sum(1 for r in results if r["status"] == "sent")
        total_failed = sum(1 for r in results if r["status"] == "failed")
        already = sum(1 for r in results if r["status"] == "already_sent")

        if total_sent:
            transition(qr, QuoteStatus.SENT)
            self.db.commit()
            record_activity(
                self.db,
                qr.organization_id,
                ActivityType.QUOTE_SENT,
                f"Quote request {qr.quote_number} sent to {total_sent} supplier(s)",
                entity_type="quote_request",
                entity_id=qr.id,
                user_id=user.id,
                details={"total_sent": total_sent, "total_failed": total_failed},
            )

        logger.info(
            "RFQ {} fan-out: sent={} failed={} already_sent={}",
            qr.quote_number, total_sent, total_failed, already,
        )
        return {
            "quote_request_id": qr.id,
            "quote_number": qr.quote_number,
            "status": qr.status,
            "success": total_sent > 0,
            "total_sent": total_sent,
            "total_failed": total_failed,
            "already_sent": already,
            "results": results,
        }

    async def _send_to_supplier(
        self, qr: QuoteRequest, supplier: Supplier, base_items: list[QuoteRequestItem], org, user: User
    ) -> EmailThread:
        if self.gateway is None:
            raise ExternalGatewayError("Email gateway is not configured")
        payload = self._quote_email_payload(qr, supplier, base_items, org, user)
        email = await self.gateway.generate_quote_request_email(payload)

        now = _utcnow()
        subject = email["subject"] or f"Quote request {qr.quote_number}"
        thread = EmailThread(
            organization_id=qr.organization_id,
            quote_request=qr,
            supplier_id=supplier.id,
            created_by_id=user.id,
            subject=subject,
            status=EmailThreadStatus.SENT.value,
            external_thread_id=email["thread_id"],
        )
        thread.messages.append(
            EmailMessage(
                direction=MessageDirection.OUTBOUND.value,
                from_address=user.email,
                to_addresses=[supplier.email],
                subject=subject,
                body=email["body"],
                body_html=email["body_html"],
                external_message_id=email["message_id"],
                sent_at=now,
                expected_response_by=qr.expiry_date,
            )
        )
        self.db.add(thread)
        qr.thread_links.append(
            QuoteRequestEmailThread(
                email_thread=thread,
                supplier_id=supplier.id,
                is_primary=supplier.id == qr.supplier_id,
                status=ThreadLinkStatus.SENT.value,
            )
        )
        self._copy_items_for_supplier(qr, supplier.id, base_items)
        self.db.commit()
        logger.info("RFQ {} emailed to {} <{}>", qr.quote_number, supplier.name, supplier.email)
        return thread

    def _copy_items_for_supplier(self, qr: QuoteRequest, supplier_id: int, base_items: list[QuoteRequestItem]) -> None:
        """One supplier-specific line per base part number, so each supplier prices independently."""
        have = {i.part_number for i in qr.items if i.supplier_id == supplier_id}
        for base in base_items:
            if base.part_number in have:
                continue
            qr.items.append(
                QuoteRequestItem(
                    supplier_id=supplier_id,
                    part_id=base.part_id,
                    part_number=base.part_number,
                    description=base.description,
                    quantity=base.quantity,
                    notes=base.notes,
                )
            )
            have.add(base.part_number)

    def _quote_email_payload(self, qr, supplier, items, org, user) -> dict:
        vehicle = qr.vehicle
        return {
            "quoteRequestId": qr.id,
            "quoteNumber": qr.quote_number,
            "supplierId": supplier.id,
            "isPrimary": supplier.id == qr.supplier_id,
            "suggestedFulfillmentMethod": qr.suggested_fulfillment_method,
            "timing": {
                "requestDate": iso(qr.request_date),
                "expiryDate": iso(qr.expiry_date),
                "expectedResponseDate": iso(qr.expiry_date),
            },
            "supplier": {
                "id": supplier.id,
                "name": supplier.name,
                "email": supplier.email,
                "contactPerson": supplier.contact_person,
                "auxiliaryEmails": [a.email for a in supplier.auxiliary_emails],
            },
            "items": [
                {"partNumber": i.part_number, "description": i.description, "quantity": i.quantity}
                for i in items
            ],
            "requirements": {
                "deliveryDate": iso(qr.expiry_date),
                "specialInstructions": qr.notes,
            },
            "notes": qr.notes,
            "description": qr.description,
            "organization": {
                "id": org.id if org else qr.organization_id,
                "name": org.name if org else "",
                "contactInfo": f"{user.name or 'Contact'} | {user.email} | {(org.domain if org else '') or ''}",
            },
            "user": {"id": user.id, "name": user.name or "User", "email": user.email, "role": user.role},
            "vehicle": (
                {
                    "id": vehicle.id,
                    "vehicleId": vehicle.vehicle_id,
                    "make": vehicle.make,
                    "model": vehicle.model,
                    "year": vehicle.year,
                    "serialNumber": vehicle.serial_number,
                }
                if vehicle
                else None
            ),
        }

    # ── Inbound reply reconciliation ──────────────────────────────────

    async def reconcile_inbound_reply(self, organization_id: int, email: InboundEmail) -> dict:
        """Apply a supplier reply delivered by the parse webhook.

        The parse gateway is called before anything is written, so a gateway
        failure leaves no trace and the delivery can be retried.
        """
        thread = (
            self.db.query(EmailThread)
            .filter_by(organization_id=organization_id, external_thread_id=email.thread_id)
            .order_by(EmailThread.id)
            .first()
        )
        if thread is None:
            raise NotFoundError("Email thread not found", external_thread_id=email.thread_id)

        if email.message_id and any(m.external_message_id == email.message_id for m in thread.messages):
            logger.info("Reply {} already recorded on thread {}", email.message_id, thread.id)
            return {"thread_id": thread.id, "quote_request_id": thread.quote_request_id, "duplicate": True}

        if self.gateway is None:
            raise ExternalGatewayError("Email gateway is not configured")
        received_at = email.received_at or _utcnow()
        parsed = await self.gateway.parse_email(
            {
                "emailId": email.message_id,
                "threadId": email.thread_id,
                "from": email.from_address,
                "subject": email.subject,
                "body": email.body,
                "bodyHtml": email.body_html,
                "receivedAt": received_at.isoformat(),
                "quoteRequestId": thread.quote_request_id,
                "attachments": [
                    {"filename": a.filename, "contentType": a.content_type, "url": a.url}
                    for a in email.attachments
                ],
            }
        )

        message = EmailMessage(
            direction=MessageDirection.INBOUND.value,
            from_address=email.from_address,
            to_addresses=email.to,
            subject=email.subject or thread.subject,
            body=email.body,
            body_html=email.body_html,
            external_message_id=email.message_id,
            in_reply_to=email.in_reply_to,
            received_at=received_at,
        )
        for a in email.attachments:
            message.attachments.append(
                EmailAttachment(
                    filename=a.filename,
                    content_type=a.content_type,
                    size=a.size,
                    path=a.url,
                    extracted_text=a.extracted_text,
                )
            )
        thread.messages.append(message)

        if thread.status == EmailThreadStatus.CONVERTED_TO_ORDER.value:
            return self._record_order_correspondence(thread, message)

        thread.status = EmailThreadStatus.RESPONSE_RECEIVED.value
        qr = thread.quote_request
        if qr is None:
            self.db.commit()
            logger.info("Reply stored on orphaned thread {}", thread.id)
            return {"thread_id": thread.id, "quote_request_id": None, "orphaned": True, "message_id": message.id}

        try:
            result = self._apply_reply(qr, thread, message, parsed)
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise

        record_activity(
            self.db,
            qr.organization_id,
            ActivityType.QUOTE_RECEIVED,
            f"Reply received for {qr.quote_number}",
            description=f"From {email.from_address}",
            entity_type="quote_request",
            entity_id=qr.id,
            details={
                "thread_id": thread.id,
                "supplier_id": thread.supplier_id,
                "classification": result["classification"],
                "confidence": parsed["confidence"],
            },
        )
        return result

    def _record_order_correspondence(self, thread: EmailThread, message: EmailMessage) -> dict:
        order = self.db.query(Order).filter_by(email_thread_id=thread.id).first()
        message.message_metadata = {
            "orderId": order.id if order else None,
            "orderNumber": order.order_number if order else None,
            "isPostConversion": True,
        }
        self.db.commit()
        record_activity(
            self.db,
            thread.organization_id,
            ActivityType.SYSTEM_UPDATE,
            "New communication on order",
            description=f"{order.order_number if order else 'Order'}: {message.subject}",
            entity_type="order" if order else "email_thread",
            entity_id=order.id if order else thread.id,
            details={"thread_id": thread.id, "message_id": message.id},
        )
        logger.info("Post-conversion reply on thread {} attached to order", thread.id)
        return {
            "thread_id": thread.id,
            "quote_request_id": thread.quote_request_id,
            "order_id": order.id if order else None,
            "classification": "order_correspondence",
            "message_id": message.id,
        }

    def _apply_reply(
        self, qr: QuoteRequest, thread: EmailThread, message: EmailMessage, parsed: dict,
        response_type: str = "email_parse",
    ) -> dict:
        items = parsed["items"]
        total = parsed["total_amount"]
        priced = bool(items) or (total or 0) > 0 or parsed["confidence"] > settings.parse_confidence_threshold

        self.db.flush()
        self.db.add(
            GatewayResponse(
                quote_request_id=qr.id,
                message_id=message.id,
                response_type=response_type,
                response_data=parsed["raw"],
                confidence=parsed["confidence"],
            )
        )

        if qr.status not in REPLY_PRICED_SOURCES:
            logger.info(
                "Reply on thread {} stored only, {} is {}", thread.id, qr.quote_number, qr.status
            )
            return {
                "thread_id": thread.id,
                "quote_request_id": qr.id,
                "message_id": message.id,
                "classification": "stored",
                "status": qr.status,
                "items_created": 0,
                "items_updated": 0,
            }

        if priced:
            transition(qr, QuoteStatus.UNDER_REVIEW)
        elif qr.status in REPLY_ACK_SOURCES:
            transition(qr, QuoteStatus.RECEIVED)

        now = _utcnow()
        qr.response_date = now
        if items and total:
            qr.total_amount = money(total)
        qr.notes = parsed["additional_notes"] or qr.notes

        created = updated = 0
        if priced and items:
            created, updated = self._upsert_reply_items(qr, thread.supplier_id, items)

        quoted = money(total) if total else self._supplier_subtotal(qr, thread.supplier_id)
        self._mark_link_responded(qr, thread, message.received_at or now, quoted if priced else None)

        return {
            "thread_id": thread.id,
            "quote_request_id": qr.id,
            "message_id": message.id,
            "classification": "priced" if priced else "acknowledgment",
            "status": qr.status,
            "items_created": created,
            "items_updated": updated,
        }

    def _mark_link_responded(self, qr: QuoteRequest, thread: EmailThread, responded_at, quoted) -> None:
        if thread.supplier_id is None:
            return
        link = next((l for l in qr.thread_links if l.supplier_id == thread.supplier_id), None)
        if link is None:
            if thread.supplier_id not in self.supplier_ids(qr):
                return
            link = QuoteRequestEmailThread(
                email_thread=thread,
                supplier_id=thread.supplier_id,
                is_primary=thread.supplier_id == qr.supplier_id,
                status=ThreadLinkStatus.SENT.value,
            )
            qr.thread_links.append(link)
        if link.status == ThreadLinkStatus.SENT.value:
            link.status = ThreadLinkStatus.RESPONDED.value
        link.response_date = responded_at
        if quoted is not None:
            link.quoted_amount = quoted

    def _upsert_reply_items(self, qr: QuoteRequest, supplier_id: int | None, items: list[dict]) -> tuple[int, int]:
        """Update this supplier's line for each quoted part number, inserting unseen ones."""
        lines = {i.part_number.strip().lower(): i for i in qr.items if i.supplier_id == supplier_id}
        created = updated = 0
        for parsed in items:
            key = parsed["part_number"].lower()
            line = lines.get(key)
            via_original = False
            if line is None and parsed.get("original_part_number"):
                line = lines.get(parsed["original_part_number"].strip().lower())
                via_original = line is not None
            if line is None:
                line = QuoteRequestItem(
                    supplier_id=supplier_id,
                    part_number=parsed["part_number"],
                    description=parsed["description"],
                    quantity=parsed["quantity"] or 1,
                )
                qr.items.append(line)
                lines[key] = line
                created += 1
            else:
                updated += 1
            self._apply_item_fields(line, parsed, via_original)
        return created, updated

    @staticmethod
    def _apply_item_fields(line: QuoteRequestItem, parsed: dict, via_original: bool) -> None:
        unit = normalize_price(parsed["unit_price"])
        if unit is not None:
            line.unit_price = money(unit)
            line.total_price = money(unit * (line.quantity or 1))
        elif normalize_price(parsed["total_price"]) is not None:
            line.total_price = money(normalize_price(parsed["total_price"]))

        if parsed.get("supplier_part_number"):
            line.supplier_part_number = parsed["supplier_part_number"]
        elif via_original:
            line.supplier_part_number = parsed["part_number"]

        lead = normalize_lead_time(parsed.get("lead_time"))
        if lead is not None:
            line.lead_time = lead
        if parsed.get("estimated_delivery_days") is not None:
            line.estimated_delivery_days = parsed["estimated_delivery_days"]
        elif lead is not None and line.estimated_delivery_days is None:
            line.estimated_delivery_days = lead

        availability = normalize_availability(parsed.get("availability"))
        if availability is not None:
            line.availability = availability.value
        elif parsed.get("availability"):
            note = f"Availability: {parsed['availability']}"
            line.notes = f"{line.notes}\n{note}" if line.notes and note not in line.notes else (line.notes or note)

        if parsed.get("is_alternative"):
            line.is_alternative = True
            line.alternative_reason = parsed.get("alternative_reason")
        if parsed.get("is_superseded") or via_original:
            line.is_superseded = True
            line.original_part_number = parsed.get("original_part_number") or line.part_number
            line.superseded_by = line.supplier_part_number
            line.supersession_notes = parsed.get("supersession_notes") or line.supersession_notes
        if parsed.get("supplier_notes"):
            line.supplier_notes = parsed["supplier_notes"]

    def _supplier_subtotal(self, qr: QuoteRequest, supplier_id: int | None):
        lines = [i for i in qr.items if i.supplier_id == supplier_id and i.unit_price is not None]
        if not lines:
            return None
        return sum((money(i.unit_price) * (i.quantity or 1) for i in lines), money(0))

    # ── Price refresh ─────────────────────────────────────────────────

    async def refresh_prices(self, user: User, qr_id: int, supplier_id: int | None = None) -> dict:
        """Re-parse each supplier's latest stored reply and re-apply its pricing.

        Used after a parser fix, or after reopening an approved request whose
        late re-quote was stored without pricing.
        """
        qr = self.get_quote_request(user.organization_id, qr_id)
        if qr.status not in REPLY_PRICED_SOURCES:
            raise InvalidStateError(
                f"Prices on {qr.quote_number} can only be refreshed while it awaits supplier pricing",
                current=qr.status,
            )
        links = list(qr.thread_links)
        if supplier_id is not None:
            links = [l for l in links if l.supplier_id == supplier_id]
            if not links:
                raise NotFoundError("No email thread found for this supplier", supplier_id=supplier_id)
        if self.gateway is None:
            raise ExternalGatewayError("Email gateway is not configured")

        results = []
        for link in links:
            thread = link.email_thread
            outcome = {"supplier_id": link.supplier_id, "email_thread_id": thread.id}
            inbound = [m for m in thread.messages if m.direction == MessageDirection.INBOUND.value]
            if not inbound:
                results.append({**outcome, "status": "no_reply"})
                continue
            message = inbound[-1]
            try:
                parsed = await self.gateway.parse_email(
                    {
                        "emailId": message.external_message_id,
                        "threadId": thread.external_thread_id,
                        "from": message.from_address,
                        "subject": message.subject,
                        "body": message.body,
                        "bodyHtml": message.body_html,
                        "receivedAt": iso(message.received_at or message.created_at),
                        "quoteRequestId": qr.id,
                        "attachments": [
                            {
                                "filename": a.filename,
                                "contentType": a.content_type,
                                "url": a.path,
                                "extractedText": a.extracted_text,
                            }
                            for a in message.attachments
                        ],
                    }
                )
            except ExternalGatewayError as e:
                logger.warning("Price refresh for {} supplier {} failed: {}", qr.quote_number, link.supplier_id, e.detail)
                results.append({**outcome, "status": "failed", "error": e.detail})
                continue
            try:
                applied = self._apply_reply(qr, thread, message, parsed, response_type="price_refresh")
                self.db.commit()
            except SQLAlchemyError:
                self.db.rollback()
                raise
            results.append(
                {
                    **outcome,
                    "status": "refreshed",
                    "message_id": message.id,
                    "classification": applied["classification"],
                    "items_created": applied["items_created"],
                    "items_updated": applied["items_updated"],
                }
            )

        refreshed = sum(1 for r in results if r["status"] == "refreshed")
        if refreshed:
            record_activity(
                self.db,
                qr.organization_id,
                ActivityType.SYSTEM_UPDATE,
                f"Prices refreshed on {qr.quote_number}",
                entity_type="quote_request",
                entity_id=qr.id,
                user_id=user.id,
                details={"refreshed": refreshed, "supplier_id": supplier_id},
            )
        logger.info("Price refresh on {}: {} of {} supplier(s)", qr.quote_number, refreshed, len(results))
        return {
            "quote_request_id": qr.id,
            "status": qr.status,
            "total_amount": float(qr.total_amount) if qr.total_amount is not None else None,
            "refreshed": refreshed,
            "results": results,
        }

    # ── Buyer transitions ─────────────────────────────────────────────

    def transition_status(self, user: User, qr_id: int, change: StatusChange) -> QuoteRequest:
        qr = self.get_quote_request(user.organization_id, qr_id)
        if change.status not in MANUAL_TARGETS:
            raise InvalidStateError(
                f"{change.status.value} is set by the system, not by hand", current=qr.status
            )
        old = transition(qr, change.status)
        if change.notes:
            qr.notes = change.notes
        self.db.commit()
        record_activity(
            self.db,
            qr.organization_id,
            ActivityType.QUOTE_STATUS_CHANGED,
            f"Quote request {qr.quote_number} {qr.status.lower().replace('_', ' ')}",
            entity_type="quote_request",
            entity_id=qr.id,
            user_id=user.id,
            details={"from": old, "to": qr.status},
        )
        return qr

    # ── Junction maintenance ──────────────────────────────────────────

    def update_thread_statuses(self, organization_id: int, qr_id: int) -> dict:
        """Promote SENT links whose thread already holds an inbound message to RESPONDED."""
        qr = self.get_quote_request(organization_id, qr_id)
        checked = updated = 0
        for link in qr.thread_links:
            if link.status != ThreadLinkStatus.SENT.value:
                continue
            checked += 1
            first_inbound = min(
                (
                    as_utc(m.received_at or m.created_at)
                    for m in link.email_thread.messages
                    if m.direction == MessageDirection.INBOUND.value
                ),
                default=None,
            )
            if first_inbound is None:
                continue
            link.status = ThreadLinkStatus.RESPONDED.value
            link.response_date = first_inbound
            updated += 1
        self.db.commit()
        logger.info("Thread statuses for {}: {} of {} SENT links promoted", qr.quote_number, updated, checked)
        return {"quote_request_id": qr.id, "checked": checked, "updated": updated}

    # ── Queries ───────────────────────────────────────────────────────

    def get_reply_status(self, organization_id: int, qr_id: int) -> dict:
        """Polling half of the send protocol: who has answered so far."""
        qr = self.get_quote_request(organization_id, qr_id)
        links = {l.supplier_id: l for l in qr.thread_links}
        suppliers = []
        for s in self.suppliers_for(qr):
            link = links.get(s.id)
            inbound = []
            if link is not None:
                inbound = [
                    m for m in link.email_thread.messages if m.direction == MessageDirection.INBOUND.value
                ]
            suppliers.append(
                {
                    "supplier_id": s.id,
                    "supplier_name": s.name,
                    "is_primary": s.id == qr.supplier_id,
                    "link_status": link.status if link else "NOT_SENT",
                    "email_thread_id": link.email_thread_id if link else None,
                    "response_date": iso(link.response_date) if link else None,
                    "quoted_amount": float(link.quoted_amount) if link and link.quoted_amount is not None else None,
                    "inbound_messages": len(inbound),
                    "last_inbound_at": iso(max((as_utc(m.received_at or m.created_at) for m in inbound), default=None)),
                }
            )
        responded = sum(
            1 for s in suppliers
            if s["link_status"] in (ThreadLinkStatus.RESPONDED.value, ThreadLinkStatus.ACCEPTED.value)
        )
        pending = sum(1 for s in suppliers if s["link_status"] == ThreadLinkStatus.SENT.value)
        return {
            "quote_request_id": qr.id,
            "quote_number": qr.quote_number,
            "status": qr.status,
            "responded": responded,
            "pending": pending,
            "suppliers": suppliers,
        }

    def compare_quotes(self, organization_id: int, qr_id: int) -> dict:
        """Side-by-side supplier pricing; flags the cheapest fully-priced supplier."""
        qr = self.get_quote_request(organization_id, qr_id)
        requested = [i for i in qr.items if i.supplier_id is None]
        links = {l.supplier_id: l for l in qr.thread_links}

        rows = []
        for s in self.suppliers_for(qr):
            lines = [i for i in qr.items if i.supplier_id == s.id]
            priced = [i for i in lines if i.unit_price is not None]
            subtotal = sum((money(i.unit_price) * (i.quantity or 1) for i in priced), money(0))
            link = links.get(s.id)
            rows.append(
                {
                    "supplier_id": s.id,
                    "supplier_name": s.name,
                    "is_primary": s.id == qr.supplier_id,
                    "link_status": link.status if link else "NOT_SENT",
                    "priced_count": len(priced),
                    "item_count": len(requested),
                    "fully_priced": bool(requested) and len(priced) >= len(requested),
                    "subtotal": float(subtotal),
                    "items": [
                        {
                            "id": i.id,
                            "part_number": i.part_number,
                            "quantity": i.quantity,
                            "unit_price": float(i.unit_price) if i.unit_price is not None else None,
                            "availability": i.availability,
                            "lead_time": i.lead_time,
                            "is_alternative": bool(i.is_alternative),
                            "is_superseded": bool(i.is_superseded),
                        }
                        for i in lines
                    ],
                    "lowest": False,
                }
            )

        complete = [r for r in rows if r["fully_priced"]]
        if complete:
            min(complete, key=lambda r: r["subtotal"])["lowest"] = True
        return {
            "quote_request_id": qr.id,
            "quote_number": qr.quote_number,
            "status": qr.status,
            "requested_items": [
                {"part_number": i.part_number, "description": i.description, "quantity": i.quantity}
                for i in requested
            ],
            "suppliers": rows,
        }

    def additional_supplier_ids(self, qr: QuoteRequest) -> list[int]:
        return decode_supplier_ids(qr.additional_supplier_ids)
