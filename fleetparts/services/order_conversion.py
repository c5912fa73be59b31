"""
order_conversion.py — Approved quote request → purchase order

Materializes one Order from the chosen supplier's priced lines, creating
catalog Parts on the fly, then sends the order confirmation through the
email gateway and only then marks the quote request converted.

Business Rules:
- Only an APPROVED quote request converts; anything else is InvalidStateError
- Supplier = selected_supplier_id or the primary; it must belong to the request
- Order lines come strictly from that supplier's priced items (base items only
  as a fallback for the primary supplier when it has no supplier lines)
- Parts resolve by (organization, supplier part number or part number); missing ones are created
- Phase 1 commits the order as PENDING_CONFIRMATION
- Phase 2 calls the gateway outside any open transaction; failure raises and
  leaves the quote request APPROVED with the pending order in place
- A retry reuses the pending order for the same supplier (never a second order)
  and rebuilds its lines and totals from the supplier's current items
- Phase 3 commits: order PROCESSING, quote CONVERTED_TO_ORDER, chosen link
  ACCEPTED, every other link REJECTED, selected_supplier_id stamped
- Suppliers without an email skip Phase 2

Called by: routers/quote_requests.py
Depends on: models, services.email_gateway, services.quote_states, services.activity_service
"""

import base64
import binascii
from datetime import datetime, timedelta, timezone

from loguru import logger
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import settings
from ..errors import ConflictError, ExternalGatewayError, InvalidStateError, ValidationError
from ..models import (
    EmailAttachment,
    EmailMessage,
    EmailThread,
    Order,
    OrderItem,
    Organization,
    Part,
    QuoteRequest,
    QuoteRequestItem,
    Supplier,
    User,
)
from ..models.enums import (
    ActivityType,
    EmailThreadStatus,
    FulfillmentMethod,
    ItemAvailability,
    MessageDirection,
    OrderStatus,
    QuoteStatus,
    ThreadLinkStatus,
)
from ..schemas.quote_requests import ConvertToOrderRequest
from ..serializers import order_to_dict
from ..utils import as_utc, iso, money
from ..utils.numbering import new_order_number
from ..utils.supplier_ids import all_supplier_ids
from .activity_service import record_activity
from .email_gateway import EmailGateway
from .quote_states import transition
from .scoping import get_scoped


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_date(raw) -> datetime | None:
    if not raw:
        return None
    try:
        return as_utc(datetime.fromisoformat(str(raw).replace("Z", "+00:00")))
    except ValueError:
        logger.debug("Ignoring unparseable date {!r}", raw)
        return None


class OrderConversionService:
    def __init__(self, db: Session, gateway: EmailGateway | None = None):
        self.db = db
        self.gateway = gateway

    async def convert(self, user: User, qr_id: int, data: ConvertToOrderRequest) -> dict:
        qr = get_scoped(self.db, QuoteRequest, user.organization_id, qr_id, "Quote request")
        if qr.status != QuoteStatus.APPROVED.value:
            raise InvalidStateError(
                "Quote request must be approved before converting to an order", current=qr.status
            )

        supplier_id = data.selected_supplier_id or qr.supplier_id
        if supplier_id not in all_supplier_ids(qr.supplier_id, qr.additional_supplier_ids):
            raise ValidationError(
                "Selected supplier is not part of this quote request", supplier_id=supplier_id
            )
        supplier = get_scoped(self.db, Supplier, qr.organization_id, supplier_id, "Supplier")
        lines = self.order_lines(qr, supplier_id)
        thread = self._resolve_thread(qr, supplier_id)

        # Phase 1: the order itself
        order = self._pending_order(qr, supplier_id)
        if order is None:
            order = self._create_order(user, qr, supplier, lines, thread, data)
        else:
            self._refresh_pending(qr, order, lines, data)

        # Phase 2: confirmation email, no transaction held open
        confirmation = None
        if supplier.email:
            if self.gateway is None:
                raise ExternalGatewayError("Email gateway is not configured", order_id=order.id)
            payload = self._confirmation_payload(user, qr, order, supplier, thread)
            try:
                confirmation = await self.gateway.generate_order_confirmation_email(payload)
            except ExternalGatewayError as e:
                logger.warning(
                    "Order {} confirmation failed, quote {} left {}: {}",
                    order.order_number, qr.quote_number, qr.status, e.detail,
                )
                raise ExternalGatewayError(
                    f"Order {order.order_number} is pending: confirmation email failed ({e.detail})",
                    order_id=order.id,
                    order_number=order.order_number,
                )

        # Phase 3: flip statuses
        try:
            thread = self._record_confirmation(user, qr, order, supplier, thread, confirmation)
            order.status = OrderStatus.PROCESSING.value
            transition(qr, QuoteStatus.CONVERTED_TO_ORDER)
            qr.selected_supplier_id = supplier_id
            for link in qr.thread_links:
                link.status = (
                    ThreadLinkStatus.ACCEPTED.value if link.supplier_id == supplier_id
                    else ThreadLinkStatus.REJECTED.value
                )
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise

        logger.info(
            "Quote {} converted to order {} (supplier {}, {} lines, total {})",
            qr.quote_number, order.order_number, supplier.name, len(order.items), order.total,
        )
        record_activity(
            self.db,
            qr.organization_id,
            ActivityType.ORDER_PLACED,
            f"Order {order.order_number} placed from {qr.quote_number}",
            description=f"Supplier {supplier.name}",
            entity_type="order",
            entity_id=order.id,
            user_id=user.id,
            details={
                "quote_request_id": qr.id,
                "supplier_id": supplier_id,
                "total": float(order.total or 0),
                "confirmation_sent": confirmation is not None,
            },
        )
        return {
            "order": order_to_dict(order),
            "quote_request_id": qr.id,
            "quote_status": qr.status,
            "confirmation_sent": confirmation is not None,
            "email_thread_id": thread.id if thread else None,
        }

    # ── Line selection ────────────────────────────────────────────────

    def order_lines(self, qr: QuoteRequest, supplier_id: int) -> list[QuoteRequestItem]:
        """The chosen supplier's priced lines, never another supplier's."""
        candidates = [i for i in qr.items if i.supplier_id == supplier_id]
        if not candidates and supplier_id == qr.supplier_id:
            candidates = [i for i in qr.items if i.supplier_id is None]
        lines = [i for i in candidates if i.unit_price is not None]
        if not lines:
            raise ValidationError("Selected supplier has no priced items to order", supplier_id=supplier_id)
        return lines

    def _resolve_thread(self, qr: QuoteRequest, supplier_id: int) -> EmailThread | None:
        link = next((l for l in qr.thread_links if l.supplier_id == supplier_id), None)
        thread = link.email_thread if link else None
        if thread is None:
            thread = (
                self.db.query(EmailThread)
                .filter_by(quote_request_id=qr.id, supplier_id=supplier_id)
                .order_by(EmailThread.id)
                .first()
            )
        if thread is None and supplier_id == qr.supplier_id:
            thread = (
                self.db.query(EmailThread)
                .filter_by(quote_request_id=qr.id)
                .order_by(EmailThread.id)
                .first()
            )
        return thread

    def _pending_order(self, qr: QuoteRequest, supplier_id: int) -> Order | None:
        """Pending order left by an earlier failed confirmation, if any."""
        pending = (
            self.db.query(Order)
            .filter_by(quote_request_id=qr.id, status=OrderStatus.PENDING_CONFIRMATION.value)
            .first()
        )
        if pending is None or pending.supplier_id == supplier_id:
            return pending
        logger.info("Discarding pending order {} (supplier changed)", pending.order_number)
        self.db.delete(pending)
        self.db.commit()
        return None

    # ── Phase 1 ───────────────────────────────────────────────────────

    def _create_order(self, user, qr, supplier, lines, thread, data: ConvertToOrderRequest) -> Order:
        thread_id = thread.id if thread and not self._thread_taken(thread.id) else None

        for attempt in range(1, settings.quote_number_max_attempts + 1):
            number = new_order_number()
            if self.db.query(Order.id).filter_by(organization_id=qr.organization_id, order_number=number).first():
                continue

            order = Order(
                organization_id=qr.organization_id,
                order_number=number,
                status=OrderStatus.PENDING_CONFIRMATION.value,
                quote_request_id=qr.id,
                quote_reference=qr.quote_number,
                supplier_id=supplier.id,
                vehicle_id=qr.vehicle_id,
                email_thread_id=thread_id,
                created_by_id=user.id,
                order_date=_utcnow(),
            )
            self._fill_order(qr, order, lines, data)
            self.db.add(order)
            try:
                self.db.commit()
            except IntegrityError:
                self.db.rollback()
                logger.info("Order number {} collided (attempt {})", number, attempt)
                continue
            logger.info("Order {} created pending confirmation for {}", number, qr.quote_number)
            return order
        raise ConflictError("Could not allocate a unique order number, please retry")

    def _refresh_pending(self, qr, order: Order, lines, data: ConvertToOrderRequest) -> None:
        """Rebuild a reused pending order from the supplier's current lines."""
        try:
            order.items.clear()
            self.db.flush()
            self._fill_order(qr, order, lines, data)
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise
        logger.info(
            "Reusing pending order {} for {} ({} lines, total {})",
            order.order_number, qr.quote_number, len(order.items), order.total,
        )

    def _fill_order(self, qr, order: Order, lines, data: ConvertToOrderRequest) -> None:
        method = data.fulfillment_method
        per_item = {f.quote_item_id: f.fulfillment_method for f in data.item_fulfillment}
        now = _utcnow()

        order.priority = data.priority.value
        order.fulfillment_method = method.value
        order.partial_fulfillment = method == FulfillmentMethod.SPLIT
        order.pickup_location = data.pickup_location if method != FulfillmentMethod.DELIVERY else None
        order.pickup_date = data.pickup_date
        order.notes = data.notes or qr.notes

        subtotal = money(0)
        for line in lines:
            part = self._resolve_part(qr, line)
            unit = money(line.unit_price)
            total = money(unit * line.quantity)
            subtotal += total
            if method == FulfillmentMethod.SPLIT:
                item_method = per_item.get(line.id, FulfillmentMethod.DELIVERY)
            else:
                item_method = method
            order.items.append(
                OrderItem(
                    part_id=part.id,
                    quantity=line.quantity,
                    unit_price=unit,
                    total_price=total,
                    availability=line.availability or ItemAvailability.UNKNOWN.value,
                    fulfillment_method=item_method.value,
                    expected_delivery=(
                        now + timedelta(days=line.estimated_delivery_days)
                        if line.estimated_delivery_days is not None
                        else None
                    ),
                    supplier_notes=self._item_notes(line),
                )
            )
        order.subtotal = subtotal
        order.tax = money(data.tax)
        order.shipping = money(data.shipping)
        order.total = subtotal + order.tax + order.shipping

    def _thread_taken(self, thread_id: int) -> bool:
        return self.db.query(Order.id).filter_by(email_thread_id=thread_id).first() is not None

    def _resolve_part(self, qr: QuoteRequest, line: QuoteRequestItem) -> Part:
        """Find the catalog part for a line, creating it when never seen."""
        org_id = qr.organization_id
        number = line.supplier_part_number or line.part_number
        original = line.original_part_number or line.part_number
        now = _utcnow()

        if line.is_superseded and original != number:
            old = self.db.query(Part).filter_by(organization_id=org_id, part_number=original).first()
            if old is not None and not old.superseded_by:
                old.superseded_by = number
                old.supersession_date = now
                old.supersession_notes = line.supersession_notes

        if line.part_id and not line.is_superseded:
            part = self.db.get(Part, line.part_id)
            if part is not None and part.organization_id == org_id:
                return part

        part = self.db.query(Part).filter_by(organization_id=org_id, part_number=number).first()
        if part is not None:
            if line.is_superseded and original != number and not part.supersedes:
                part.supersedes = original
                part.supersession_date = now
            return part

        notes = [
            f"Auto-created from quote {qr.quote_number}",
            f"Superseded from {original} to {number}" if line.is_superseded else None,
            line.supersession_notes,
            f"Alternative part: {line.alternative_reason or 'Supplier suggested alternative'}" if line.is_alternative else None,
            line.supplier_notes,
        ]
        part = Part(
            organization_id=org_id,
            part_number=number,
            description=line.description,
            category="GENERAL",
            supplier_part_number=line.supplier_part_number if line.supplier_part_number != line.part_number else None,
            supersedes=original if line.is_superseded and original != number else None,
            supersession_date=now if line.is_superseded else None,
            supersession_notes=line.supersession_notes,
            price=money(line.unit_price),
            cost=money(line.unit_price),
            stock_quantity=0,
            min_stock_level=0,
            notes="\n".join(n for n in notes if n),
        )
        self.db.add(part)
        self.db.flush()
        return part

    @staticmethod
    def _item_notes(line: QuoteRequestItem) -> str | None:
        original = line.original_part_number or line.part_number
        parts = [
            line.supplier_notes,
            (
                f"Superseded: {line.supersession_notes or f'{original} → {line.supplier_part_number}'}"
                if line.is_superseded
                else None
            ),
            f"Alternative: {line.alternative_reason or 'Supplier suggested'}" if line.is_alternative else None,
        ]
        text = ". ".join(p for p in parts if p)
        return text or None

    # ── Phase 2 ───────────────────────────────────────────────────────

    def _confirmation_payload(self, user, qr, order: Order, supplier: Supplier, thread) -> dict:
        org = self.db.get(Organization, qr.organization_id)
        return {
            "orderId": order.id,
            "orderNumber": order.order_number,
            "quoteRequestId": qr.id,
            "quoteNumber": qr.quote_number,
            "fulfillmentMethod": order.fulfillment_method,
            "supplier": {
                "id": supplier.id,
                "name": supplier.name,
                "email": supplier.email,
                "contactPerson": supplier.contact_person,
            },
            "organization": {"id": org.id, "name": org.name, "contactInfo": f"{user.name or 'Contact'} | {user.email}"},
            "user": {"id": user.id, "name": user.name or "User", "email": user.email, "role": user.role},
            "vehicle": (
                {
                    "vehicleId": qr.vehicle.vehicle_id,
                    "make": qr.vehicle.make,
                    "model": qr.vehicle.model,
                    "year": qr.vehicle.year,
                    "serialNumber": qr.vehicle.serial_number,
                }
                if qr.vehicle
                else None
            ),
            "items": [
                {
                    "id": i.id,
                    "partNumber": i.part.part_number,
                    "supplierPartNumber": i.part.supplier_part_number,
                    "description": i.part.description,
                    "quantity": i.quantity,
                    "unitPrice": float(i.unit_price),
                    "totalPrice": float(i.total_price),
                    "availability": i.availability,
                    "fulfillmentMethod": i.fulfillment_method,
                }
                for i in order.items
            ],
            "orderDetails": {
                "totalAmount": float(order.total or 0),
                "currency": "USD",
                "pickupLocation": order.pickup_location,
                "pickupDate": iso(order.pickup_date),
                "notes": order.notes,
                "purchaseOrderNumber": order.order_number,
            },
            "timestamps": {"orderDate": iso(order.order_date), "quoteApprovalDate": iso(qr.updated_at)},
            "emailThread": (
                {"id": thread.id, "externalThreadId": thread.external_thread_id} if thread else None
            ),
        }

    # ── Phase 3 ───────────────────────────────────────────────────────

    def _record_confirmation(self, user, qr, order: Order, supplier, thread, confirmation) -> EmailThread | None:
        if confirmation is None:
            if thread is not None:
                thread.status = EmailThreadStatus.CONVERTED_TO_ORDER.value
            return thread

        if thread is None:
            thread = EmailThread(
                organization_id=qr.organization_id,
                quote_request=qr,
                supplier_id=supplier.id,
                created_by_id=user.id,
                subject=confirmation["subject"],
                external_thread_id=confirmation["thread_id"],
            )
            self.db.add(thread)
            self.db.flush()
        if order.email_thread_id is None and not self._thread_taken(thread.id):
            order.email_thread_id = thread.id
        thread.status = EmailThreadStatus.CONVERTED_TO_ORDER.value

        message = EmailMessage(
            direction=MessageDirection.OUTBOUND.value,
            from_address=user.email,
            to_addresses=[supplier.email],
            subject=confirmation["subject"],
            body=confirmation["body"],
            body_html=confirmation["body_html"],
            external_message_id=confirmation["message_id"],
            sent_at=_utcnow(),
            message_metadata={
                "orderId": order.id,
                "orderNumber": order.order_number,
                "type": "order_confirmation",
            },
        )
        attachment = confirmation.get("purchase_order_attachment")
        if isinstance(attachment, dict) and attachment.get("filename"):
            try:
                size = len(base64.b64decode(attachment.get("content") or "", validate=False))
            except (binascii.Error, ValueError):
                size = 0
            message.attachments.append(
                EmailAttachment(
                    filename=attachment["filename"],
                    content_type=attachment.get("contentType") or "application/pdf",
                    size=size,
                )
            )
        thread.messages.append(message)
        self._apply_order_updates(order, confirmation.get("order_updates") or {})
        return thread

    @staticmethod
    def _apply_order_updates(order: Order, updates: dict) -> None:
        if updates.get("trackingNumber"):
            order.tracking_number = updates["trackingNumber"]
        if updates.get("shippingCarrier"):
            order.shipping_carrier = updates["shippingCarrier"]
        expected = _parse_date(updates.get("expectedDeliveryDate"))
        if expected:
            order.expected_delivery = expected

        by_id = {str(i.id): i for i in order.items}
        for upd in updates.get("items") or []:
            item = by_id.get(str(upd.get("id")))
            if item is None:
                continue
            if upd.get("availability") in ItemAvailability._value2member_map_:
                item.availability = upd["availability"]
            if upd.get("trackingNumber"):
                item.tracking_number = upd["trackingNumber"]
            item_expected = _parse_date(upd.get("expectedDeliveryDate"))
            if item_expected:
                item.expected_delivery = item_expected
