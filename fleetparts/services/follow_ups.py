"""
follow_ups.py — Supplier follow-up emails

Chases suppliers through the email gateway: suppliers that have not
answered an open quote request, and the supplier of a placed order
(missing confirmation, tracking, delays, quality problems).

Business Rules:
- Quote follow-ups only while the request is SENT, RECEIVED or UNDER_REVIEW
- Without a supplier_id every linked supplier whose link is still SENT is chased;
  none left is a ValidationError
- A named supplier must be on the request and have a thread link
- One supplier's failure is recorded and the next supplier is still chased
- A sent quote follow-up appends an outbound message (in reply to the latest one)
  and marks the thread FOLLOW_UP_NEEDED; the quote request status is not touched
- Order follow-ups need a supplier email and the order's thread; the thread keeps
  its status so later replies stay order correspondence
- Order follow-up gateway failure raises ExternalGatewayError, nothing is written

Called by: routers/quote_requests.py, routers/orders.py
Depends on: models, services.email_gateway, services.quote_states, services.activity_service
"""

from datetime import datetime, timedelta, timezone

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..errors import ExternalGatewayError, InvalidStateError, NotFoundError, ValidationError
from ..models import EmailMessage, EmailThread, Order, QuoteRequest, Supplier, User
from ..models.enums import ActivityType, EmailThreadStatus, MessageDirection, ThreadLinkStatus
from ..schemas.orders import OrderFollowUpRequest
from ..schemas.quote_requests import FollowUpRequest
from ..serializers import message_to_dict
from ..utils import iso
from ..utils.supplier_ids import all_supplier_ids
from .activity_service import record_activity
from .email_gateway import EmailGateway
from .quote_states import REPLY_PRICED_SOURCES
from .scoping import get_scoped


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _last_message(thread: EmailThread) -> EmailMessage | None:
    return thread.messages[-1] if thread.messages else None


def _supplier_block(supplier: Supplier) -> dict:
    return {
        "id": supplier.id,
        "name": supplier.name,
        "email": supplier.email,
        "contactPerson": supplier.contact_person,
        "auxiliaryEmails": [a.email for a in supplier.auxiliary_emails],
    }


def _user_block(user: User) -> dict:
    return {"id": user.id, "name": user.name or "User", "email": user.email, "role": user.role}


class FollowUpService:
    def __init__(self, db: Session, gateway: EmailGateway | None = None):
        self.db = db
        self.gateway = gateway

    # ── Quote requests ────────────────────────────────────────────────

    async def follow_up_quote(self, user: User, qr_id: int, data: FollowUpRequest) -> dict:
        qr = get_scoped(self.db, QuoteRequest, user.organization_id, qr_id, "Quote request")
        if qr.status not in REPLY_PRICED_SOURCES:
            raise InvalidStateError(
                f"Follow-ups are only sent while {qr.quote_number} awaits supplier pricing",
                current=qr.status,
            )

        if data.supplier_id is not None:
            if data.supplier_id not in all_supplier_ids(qr.supplier_id, qr.additional_supplier_ids):
                raise ValidationError(
                    "Supplier is not part of this quote request", supplier_id=data.supplier_id
                )
            links = [l for l in qr.thread_links if l.supplier_id == data.supplier_id]
            if not links:
                raise NotFoundError("No email thread found for this supplier", supplier_id=data.supplier_id)
        else:
            links = [l for l in qr.thread_links if l.status == ThreadLinkStatus.SENT.value]
            if not links:
                raise ValidationError("Every supplier on this quote request has already responded")

        branch = data.workflow_branch.value
        expected = data.expected_response_by or _utcnow() + timedelta(days=1)
        results: list[dict] = []
        for link in links:
            supplier = link.supplier
            outcome = {"supplier_id": link.supplier_id, "supplier_name": supplier.name, "email_thread_id": link.email_thread_id}
            if not supplier.email:
                results.append({**outcome, "status": "failed", "error": "Supplier does not have an email address"})
                continue
            try:
                message = await self._chase_supplier(user, qr, link.email_thread, supplier, data, expected)
            except ExternalGatewayError as e:
                self.db.rollback()
                logger.warning("Follow-up on {} to supplier {} failed: {}", qr.quote_number, supplier.id, e.detail)
                results.append({**outcome, "status": "failed", "error": e.detail})
                continue
            except SQLAlchemyError as e:
                self.db.rollback()
                logger.error("Follow-up on {} to supplier {} not recorded: {}", qr.quote_number, supplier.id, e)
                results.append({**outcome, "status": "failed", "error": "Could not record the follow-up email"})
                continue
            results.append({**outcome, "status": "sent", "message_id": message.id})

        total_sent = sum(1 for r in results if r["status"] == "sent")
        total_failed = len(results) - total_sent
        if total_sent:
            record_activity(
                self.db,
                qr.organization_id,
                ActivityType.FOLLOW_UP_SENT,
                f"Follow-up sent on {qr.quote_number} to {total_sent} supplier(s)",
                description=data.additional_message,
                entity_type="quote_request",
                entity_id=qr.id,
                user_id=user.id,
                details={"workflow_branch": branch, "total_sent": total_sent, "total_failed": total_failed},
            )
        logger.info("Follow-up on {} ({}): sent={} failed={}", qr.quote_number, branch, total_sent, total_failed)
        return {
            "quote_request_id": qr.id,
            "quote_number": qr.quote_number,
            "workflow_branch": branch,
            "success": total_sent > 0,
            "total_sent": total_sent,
            "total_failed": total_failed,
            "results": results,
        }

    async def _chase_supplier(self, user, qr, thread: EmailThread, supplier: Supplier, data: FollowUpRequest, expected) -> EmailMessage:
        if self.gateway is None:
            raise ExternalGatewayError("Email gateway is not configured")
        branch = data.workflow_branch.value
        last = _last_message(thread)
        now = _utcnow()
        email = await self.gateway.generate_follow_up_email(
            {
                "quoteRequestId": qr.id,
                "quoteNumber": qr.quote_number,
                "threadId": thread.external_thread_id,
                "emailThreadId": thread.id,
                "supplier": _supplier_block(supplier),
                "previousCommunication": {
                    "lastContactDate": iso(last.sent_at or last.received_at or last.created_at) if last else None,
                    "messagesSummary": last.body if last else None,
                },
                "followUpReason": f"follow_up_{branch}",
                "workflowBranch": branch,
                "additionalMessage": data.additional_message,
                "missingInformation": [data.additional_message] if data.additional_message else [],
                "expectedResponseBy": iso(expected),
                "followUpSentAt": iso(now),
                "inReplyTo": last.external_message_id if last else None,
                "user": _user_block(user),
            }
        )

        message = EmailMessage(
            direction=MessageDirection.OUTBOUND.value,
            from_address=user.email,
            to_addresses=[supplier.email],
            subject=email["subject"] or f"Follow-up: {qr.quote_number}",
            body=email["body"],
            body_html=email["body_html"],
            external_message_id=email["message_id"],
            in_reply_to=last.external_message_id if last else None,
            sent_at=now,
            expected_response_by=expected,
            message_metadata={"type": "follow_up", "workflowBranch": branch},
        )
        thread.messages.append(message)
        thread.status = EmailThreadStatus.FOLLOW_UP_NEEDED.value
        self.db.commit()
        logger.info("Follow-up for {} emailed to {} <{}>", qr.quote_number, supplier.name, supplier.email)
        return message

    # ── Orders ────────────────────────────────────────────────────────

    async def follow_up_order(self, user: User, order_id: int, data: OrderFollowUpRequest) -> dict:
        order = get_scoped(self.db, Order, user.organization_id, order_id, "Order")
        supplier = order.supplier
        if not supplier.email:
            raise ValidationError("Order supplier does not have an email address", supplier_id=supplier.id)
        thread = order.email_thread
        if thread is None:
            raise ValidationError("No email thread associated with this order", order_id=order.id)
        if self.gateway is None:
            raise ExternalGatewayError("Email gateway is not configured", order_id=order.id)

        branch = data.branch.value
        email = await self.gateway.generate_order_follow_up_email(
            {
                "orderId": order.id,
                "orderNumber": order.order_number,
                "supplierId": supplier.id,
                "supplierName": supplier.name,
                "supplierEmail": supplier.email,
                "supplierContactPerson": supplier.contact_person,
                "orderDate": iso(order.order_date),
                "status": order.status,
                "totalAmount": float(order.total or 0),
                "trackingNumber": order.tracking_number,
                "expectedDelivery": iso(order.expected_delivery),
                "items": [
                    {
                        "partNumber": i.part.part_number,
                        "description": i.part.description,
                        "quantity": i.quantity,
                        "availability": i.availability,
                    }
                    for i in order.items
                ],
                "branch": branch,
                "userMessage": data.user_message,
                "expectedResponseDate": iso(data.expected_response_date),
                "previousEmails": [
                    {
                        "from": m.from_address,
                        "to": m.to_addresses or [],
                        "subject": m.subject,
                        "body": m.body,
                        "sentAt": iso(m.sent_at or m.received_at or m.created_at),
                    }
                    for m in thread.messages
                ],
                "user": _user_block(user),
            }
        )

        last = _last_message(thread)
        message = EmailMessage(
            direction=MessageDirection.OUTBOUND.value,
            from_address=user.email,
            to_addresses=[supplier.email],
            subject=email["subject"] or f"Order {order.order_number} follow-up",
            body=email["body"],
            body_html=email["body_html"],
            external_message_id=email["message_id"],
            in_reply_to=last.external_message_id if last else None,
            sent_at=_utcnow(),
            expected_response_by=data.expected_response_date,
            message_metadata={
                "orderFollowUp": True,
                "orderId": order.id,
                "orderNumber": order.order_number,
                "branch": branch,
                "userMessage": data.user_message,
            },
        )
        thread.messages.append(message)
        try:
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise

        logger.info("Order {} follow-up ({}) emailed to {}", order.order_number, branch, supplier.email)
        record_activity(
            self.db,
            order.organization_id,
            ActivityType.FOLLOW_UP_SENT,
            f"Follow-up sent on order {order.order_number}",
            description=data.user_message,
            entity_type="order",
            entity_id=order.id,
            user_id=user.id,
            details={"branch": branch, "supplier_email": supplier.email, "message_id": message.id},
        )
        return {
            "order_id": order.id,
            "order_number": order.order_number,
            "branch": branch,
            "message": message_to_dict(message),
        }
