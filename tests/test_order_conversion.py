"""
test_order_conversion.py — Tests for approved quote request → order conversion

Business Rules:
- Only APPROVED requests convert; nothing is written otherwise
- Order lines come from the chosen supplier's priced lines only
- A failed confirmation leaves the request APPROVED and the order pending; retry reuses it
- On success: chosen link ACCEPTED, the rest REJECTED, request CONVERTED_TO_ORDER
- A retry rebuilds the pending order from current lines; replies after approval reprice nothing

Called by: pytest
Depends on: conftest.py fixtures, fleetparts.services.order_conversion
"""

from decimal import Decimal

import pytest

from fleetparts.errors import ExternalGatewayError, InvalidStateError, ValidationError
from fleetparts.models import EmailThread, Order, Part, QuoteRequestItem
from fleetparts.models.enums import EmailThreadStatus, OrderStatus, QuoteStatus, ThreadLinkStatus
from fleetparts.schemas.emails import InboundEmail
from fleetparts.schemas.quote_requests import ConvertToOrderRequest, StatusChange
from fleetparts.services.order_conversion import OrderConversionService
from fleetparts.services.quote_lifecycle import QuoteLifecycleService

from conftest import parse_reply


async def _quote(db, gateway, org, qr, supplier, prices: dict, message_id: str, total=None, **extra):
    """Deliver a priced reply from supplier through the parse webhook path."""
    gateway.next_parse = parse_reply(
        items=[{"partNumber": p, "unitPrice": u, **extra} for p, u in prices.items()],
        total=total,
    )
    email = InboundEmail(
        thread_id=f"thread-{qr.id}-{supplier.id}",
        message_id=message_id,
        from_address=supplier.email,
        subject=f"RE: {qr.quote_number}",
    )
    return await QuoteLifecycleService(db, gateway).reconcile_inbound_reply(org.id, email)


def _approve(db, user, qr):
    QuoteLifecycleService(db).transition_status(user, qr.id, StatusChange(status="APPROVED"))


async def _priced_and_approved(db, gateway, org, user, qr, s1, s2):
    await _quote(db, gateway, org, qr, s1, {"ABC-1": 100, "XYZ-2": 250}, "r-1", leadTime="3 days")
    await _quote(db, gateway, org, qr, s2, {"ABC-1": 90, "XYZ-2": 240}, "r-2")
    _approve(db, user, qr)


class TestGuards:
    @pytest.mark.asyncio
    async def test_not_approved_is_invalid_state(self, db_session, gateway, test_user, sent_qr):
        with pytest.raises(InvalidStateError):
            await OrderConversionService(db_session, gateway).convert(test_user, sent_qr.id, ConvertToOrderRequest())
        assert db_session.query(Order).count() == 0
        assert gateway.confirmations == []

    @pytest.mark.asyncio
    async def test_supplier_not_on_request(self, db_session, gateway, test_org, test_user, sent_qr, supplier_one, supplier_two, supplier_no_email):
        await _priced_and_approved(db_session, gateway, test_org, test_user, sent_qr, supplier_one, supplier_two)
        with pytest.raises(ValidationError):
            await OrderConversionService(db_session, gateway).convert(
                test_user, sent_qr.id, ConvertToOrderRequest(selected_supplier_id=supplier_no_email.id)
            )
        assert db_session.query(Order).count() == 0

    @pytest.mark.asyncio
    async def test_supplier_without_priced_lines(self, db_session, gateway, test_org, test_user, sent_qr, supplier_one, supplier_two):
        await _quote(db_session, gateway, test_org, sent_qr, supplier_one, {"ABC-1": 100}, "r-1")
        _approve(db_session, test_user, sent_qr)
        with pytest.raises(ValidationError, match="no priced items"):
            await OrderConversionService(db_session, gateway).convert(
                test_user, sent_qr.id, ConvertToOrderRequest(selected_supplier_id=supplier_two.id)
            )
        assert sent_qr.status == QuoteStatus.APPROVED.value


class TestConvert:
    @pytest.mark.asyncio
    async def test_reply_approve_convert_flow(self, db_session, gateway, test_org, test_user, sent_qr, supplier_one, supplier_two):
        result = await _quote(db_session, gateway, test_org, sent_qr, supplier_one, {"ABC-1": 100, "XYZ-2": 250}, "r-1", total=450)
        assert result["status"] == QuoteStatus.UNDER_REVIEW.value
        links = {l.supplier_id: l for l in sent_qr.thread_links}
        assert links[supplier_one.id].status == ThreadLinkStatus.RESPONDED.value
        assert links[supplier_two.id].status == ThreadLinkStatus.SENT.value

        _approve(db_session, test_user, sent_qr)
        out = await OrderConversionService(db_session, gateway).convert(
            test_user, sent_qr.id, ConvertToOrderRequest(selected_supplier_id=supplier_one.id)
        )

        assert out["quote_status"] == QuoteStatus.CONVERTED_TO_ORDER.value
        assert out["confirmation_sent"] is True
        assert out["order"]["status"] == OrderStatus.PROCESSING.value
        assert out["order"]["total"] == 450.0
        assert links[supplier_one.id].status == ThreadLinkStatus.ACCEPTED.value
        assert links[supplier_two.id].status == ThreadLinkStatus.REJECTED.value
        assert sent_qr.selected_supplier_id == supplier_one.id

    @pytest.mark.asyncio
    async def test_uses_only_selected_supplier_lines(self, db_session, gateway, test_org, test_user, sent_qr, supplier_one, supplier_two):
        await _priced_and_approved(db_session, gateway, test_org, test_user, sent_qr, supplier_one, supplier_two)
        out = await OrderConversionService(db_session, gateway).convert(
            test_user,
            sent_qr.id,
            ConvertToOrderRequest(selected_supplier_id=supplier_two.id, tax=10, shipping=5),
        )
        order = db_session.get(Order, out["order"]["id"])
        assert order.supplier_id == supplier_two.id
        assert sorted((i.part.part_number, float(i.unit_price)) for i in order.items) == [("ABC-1", 90.0), ("XYZ-2", 240.0)]
        assert order.subtotal == Decimal("420.00")
        assert order.total == Decimal("435.00")
        assert order.quote_reference == sent_qr.quote_number

    @pytest.mark.asyncio
    async def test_defaults_to_primary_supplier(self, db_session, gateway, test_org, test_user, sent_qr, supplier_one, supplier_two):
        await _priced_and_approved(db_session, gateway, test_org, test_user, sent_qr, supplier_one, supplier_two)
        out = await OrderConversionService(db_session, gateway).convert(test_user, sent_qr.id, ConvertToOrderRequest())
        assert out["order"]["supplier_id"] == supplier_one.id
        assert out["order"]["subtotal"] == 450.0

    @pytest.mark.asyncio
    async def test_expected_delivery_from_lead_time(self, db_session, gateway, test_org, test_user, sent_qr, supplier_one, supplier_two):
        await _priced_and_approved(db_session, gateway, test_org, test_user, sent_qr, supplier_one, supplier_two)
        out = await OrderConversionService(db_session, gateway).convert(test_user, sent_qr.id, ConvertToOrderRequest())
        assert all(i["expected_delivery"] for i in out["order"]["items"])

    @pytest.mark.asyncio
    async def test_creates_missing_parts(self, db_session, gateway, test_org, test_user, sent_qr, supplier_one, supplier_two):
        await _priced_and_approved(db_session, gateway, test_org, test_user, sent_qr, supplier_one, supplier_two)
        await OrderConversionService(db_session, gateway).convert(test_user, sent_qr.id, ConvertToOrderRequest())
        parts = {p.part_number: p for p in db_session.query(Part).filter_by(organization_id=test_org.id)}
        assert set(parts) == {"ABC-1", "XYZ-2"}
        assert parts["ABC-1"].notes.startswith(f"Auto-created from quote {sent_qr.quote_number}")
        assert parts["ABC-1"].price == Decimal("100.00")
        assert parts["ABC-1"].category == "GENERAL"

    @pytest.mark.asyncio
    async def test_reuses_existing_part(self, db_session, gateway, test_org, test_user, sent_qr, supplier_one, supplier_two):
        existing = Part(organization_id=test_org.id, part_number="ABC-1", description="Brake pad set", price=95)
        db_session.add(existing)
        db_session.commit()
        await _priced_and_approved(db_session, gateway, test_org, test_user, sent_qr, supplier_one, supplier_two)

        out = await OrderConversionService(db_session, gateway).convert(test_user, sent_qr.id, ConvertToOrderRequest())
        assert existing.id in [i["part_id"] for i in out["order"]["items"]]
        assert db_session.query(Part).filter_by(part_number="ABC-1").count() == 1

    @pytest.mark.asyncio
    async def test_superseded_line_links_parts(self, db_session, gateway, test_org, test_user, sent_qr, supplier_one):
        db_session.add(Part(organization_id=test_org.id, part_number="ABC-1"))
        db_session.commit()
        gateway.next_parse = parse_reply(
            items=[
                {"partNumber": "ABC-1N", "originalPartNumber": "ABC-1", "isSuperseded": True, "unitPrice": 110},
                {"partNumber": "XYZ-2", "unitPrice": 250},
            ]
        )
        await QuoteLifecycleService(db_session, gateway).reconcile_inbound_reply(
            test_org.id,
            InboundEmail(thread_id=f"thread-{sent_qr.id}-{supplier_one.id}", message_id="r-1", from_address=supplier_one.email),
        )
        _approve(db_session, test_user, sent_qr)

        out = await OrderConversionService(db_session, gateway).convert(test_user, sent_qr.id, ConvertToOrderRequest())
        old = db_session.query(Part).filter_by(part_number="ABC-1").one()
        new = db_session.query(Part).filter_by(part_number="ABC-1N").one()
        assert old.superseded_by == "ABC-1N"
        assert new.supersedes == "ABC-1"
        assert "ABC-1N" in [i["part_number"] for i in out["order"]["items"]]

    @pytest.mark.asyncio
    async def test_split_fulfillment_per_item(self, db_session, gateway, test_org, test_user, sent_qr, supplier_one, supplier_two):
        await _priced_and_approved(db_session, gateway, test_org, test_user, sent_qr, supplier_one, supplier_two)
        pickup_line = next(i for i in sent_qr.items if i.supplier_id == supplier_one.id and i.part_number == "ABC-1")
        data = ConvertToOrderRequest(
            fulfillment_method="SPLIT",
            pickup_location="Main St counter",
            item_fulfillment=[{"quote_item_id": pickup_line.id, "fulfillment_method": "PICKUP"}],
        )
        out = await OrderConversionService(db_session, gateway).convert(test_user, sent_qr.id, data)
        methods = {i["part_number"]: i["fulfillment_method"] for i in out["order"]["items"]}
        assert methods == {"ABC-1": "PICKUP", "XYZ-2": "DELIVERY"}
        assert out["order"]["partial_fulfillment"] is True

    @pytest.mark.asyncio
    async def test_confirmation_recorded_on_thread(self, db_session, gateway, test_org, test_user, sent_qr, supplier_one, supplier_two):
        await _priced_and_approved(db_session, gateway, test_org, test_user, sent_qr, supplier_one, supplier_two)
        out = await OrderConversionService(db_session, gateway).convert(test_user, sent_qr.id, ConvertToOrderRequest())

        thread = db_session.get(EmailThread, out["email_thread_id"])
        assert thread.supplier_id == supplier_one.id
        assert thread.status == EmailThreadStatus.CONVERTED_TO_ORDER.value
        assert out["order"]["email_thread_id"] == thread.id
        confirmation = thread.messages[-1]
        assert confirmation.message_metadata["type"] == "order_confirmation"
        assert confirmation.message_metadata["orderNumber"] == out["order"]["order_number"]
        (pdf,) = confirmation.attachments
        assert pdf.filename == f"{out['order']['order_number']}.pdf"
        assert pdf.size == 4

        payload = gateway.confirmations[0]
        assert payload["emailThread"]["externalThreadId"] == thread.external_thread_id
        assert [i["partNumber"] for i in payload["items"]] == ["ABC-1", "XYZ-2"]

    @pytest.mark.asyncio
    async def test_later_reply_is_order_correspondence(self, db_session, gateway, test_org, test_user, sent_qr, supplier_one, supplier_two):
        await _priced_and_approved(db_session, gateway, test_org, test_user, sent_qr, supplier_one, supplier_two)
        out = await OrderConversionService(db_session, gateway).convert(test_user, sent_qr.id, ConvertToOrderRequest())

        result = await _quote(db_session, gateway, test_org, sent_qr, supplier_one, {"ABC-1": 1}, "r-3")
        assert result["classification"] == "order_correspondence"
        assert result["order_id"] == out["order"]["id"]
        assert sent_qr.status == QuoteStatus.CONVERTED_TO_ORDER.value

    @pytest.mark.asyncio
    async def test_supplier_without_email_skips_confirmation(self, db_session, gateway, test_user, make_quote_request, supplier_no_email):
        qr = make_quote_request(additional=[supplier_no_email])
        qr.items.append(
            QuoteRequestItem(supplier_id=supplier_no_email.id, part_number="ABC-1", quantity=2, unit_price=80)
        )
        qr.status = QuoteStatus.APPROVED.value
        db_session.commit()

        out = await OrderConversionService(db_session, gateway).convert(
            test_user, qr.id, ConvertToOrderRequest(selected_supplier_id=supplier_no_email.id)
        )
        assert out["confirmation_sent"] is False
        assert gateway.confirmations == []
        assert out["quote_status"] == QuoteStatus.CONVERTED_TO_ORDER.value
        assert out["order"]["total"] == 160.0


class TestConfirmationFailure:
    @pytest.mark.asyncio
    async def test_failure_leaves_request_approved(self, db_session, gateway, test_org, test_user, sent_qr, supplier_one, supplier_two):
        await _priced_and_approved(db_session, gateway, test_org, test_user, sent_qr, supplier_one, supplier_two)
        gateway.fail_confirmation = True

        with pytest.raises(ExternalGatewayError) as exc:
            await OrderConversionService(db_session, gateway).convert(test_user, sent_qr.id, ConvertToOrderRequest())

        assert "is pending" in exc.value.detail
        assert sent_qr.status == QuoteStatus.APPROVED.value
        (order,) = db_session.query(Order).all()
        assert order.status == OrderStatus.PENDING_CONFIRMATION.value
        assert all(l.status != ThreadLinkStatus.ACCEPTED.value for l in sent_qr.thread_links)

    @pytest.mark.asyncio
    async def test_retry_reuses_pending_order(self, db_session, gateway, test_org, test_user, sent_qr, supplier_one, supplier_two):
        await _priced_and_approved(db_session, gateway, test_org, test_user, sent_qr, supplier_one, supplier_two)
        svc = OrderConversionService(db_session, gateway)
        gateway.fail_confirmation = True
        with pytest.raises(ExternalGatewayError):
            await svc.convert(test_user, sent_qr.id, ConvertToOrderRequest())
        pending = db_session.query(Order).one()

        gateway.fail_confirmation = False
        out = await svc.convert(test_user, sent_qr.id, ConvertToOrderRequest())
        assert out["order"]["id"] == pending.id
        assert db_session.query(Order).count() == 1
        assert pending.status == OrderStatus.PROCESSING.value

    @pytest.mark.asyncio
    async def test_retry_with_other_supplier_replaces_pending(self, db_session, gateway, test_org, test_user, sent_qr, supplier_one, supplier_two):
        await _priced_and_approved(db_session, gateway, test_org, test_user, sent_qr, supplier_one, supplier_two)
        svc = OrderConversionService(db_session, gateway)
        gateway.fail_confirmation = True
        with pytest.raises(ExternalGatewayError):
            await svc.convert(test_user, sent_qr.id, ConvertToOrderRequest())

        gateway.fail_confirmation = False
        await svc.convert(test_user, sent_qr.id, ConvertToOrderRequest(selected_supplier_id=supplier_two.id))
        (order,) = db_session.query(Order).all()
        assert order.supplier_id == supplier_two.id
        assert order.status == OrderStatus.PROCESSING.value

    @pytest.mark.asyncio
    async def test_reply_while_approved_does_not_reprice_pending_order(self, db_session, gateway, test_org, test_user, sent_qr, supplier_one, supplier_two):
        await _priced_and_approved(db_session, gateway, test_org, test_user, sent_qr, supplier_one, supplier_two)
        svc = OrderConversionService(db_session, gateway)
        gateway.fail_confirmation = True
        with pytest.raises(ExternalGatewayError):
            await svc.convert(test_user, sent_qr.id, ConvertToOrderRequest())

        late = await _quote(db_session, gateway, test_org, sent_qr, supplier_one, {"ABC-1": 10, "XYZ-2": 20}, "r-3")
        assert late["classification"] == "stored"
        assert sent_qr.status == QuoteStatus.APPROVED.value

        gateway.fail_confirmation = False
        out = await svc.convert(test_user, sent_qr.id, ConvertToOrderRequest())
        order = db_session.get(Order, out["order"]["id"])
        lines = [i for i in sent_qr.items if i.supplier_id == supplier_one.id]
        assert sorted(float(i.unit_price) for i in lines) == [100.0, 250.0]
        assert order.subtotal == sum(i.total_price for i in lines)
        assert order.total == Decimal("450.00")

    @pytest.mark.asyncio
    async def test_retry_after_requote_rebuilds_pending_order(self, db_session, gateway, test_org, test_user, sent_qr, supplier_one, supplier_two):
        await _priced_and_approved(db_session, gateway, test_org, test_user, sent_qr, supplier_one, supplier_two)
        svc = OrderConversionService(db_session, gateway)
        gateway.fail_confirmation = True
        with pytest.raises(ExternalGatewayError):
            await svc.convert(test_user, sent_qr.id, ConvertToOrderRequest())
        pending = db_session.query(Order).one()
        assert pending.total == Decimal("450.00")

        QuoteLifecycleService(db_session).transition_status(test_user, sent_qr.id, StatusChange(status="UNDER_REVIEW"))
        await _quote(db_session, gateway, test_org, sent_qr, supplier_one, {"ABC-1": 10, "XYZ-2": 20}, "r-3")
        _approve(db_session, test_user, sent_qr)

        gateway.fail_confirmation = False
        out = await svc.convert(test_user, sent_qr.id, ConvertToOrderRequest(shipping=5))
        assert out["order"]["id"] == pending.id
        assert db_session.query(Order).count() == 1
        assert sorted((i.part.part_number, float(i.unit_price)) for i in pending.items) == [("ABC-1", 10.0), ("XYZ-2", 20.0)]
        assert pending.subtotal == Decimal("40.00")
        assert pending.total == Decimal("45.00")
        assert gateway.confirmations[-1]["orderDetails"]["totalAmount"] == 45.0


class TestRepliesAfterDecision:
    @pytest.mark.asyncio
    async def test_losing_supplier_reply_after_conversion_is_stored_only(self, db_session, gateway, test_org, test_user, sent_qr, supplier_one, supplier_two):
        await _quote(db_session, gateway, test_org, sent_qr, supplier_one, {"ABC-1": 100, "XYZ-2": 250}, "r-1", total=450)
        await _quote(db_session, gateway, test_org, sent_qr, supplier_two, {"ABC-1": 90, "XYZ-2": 240}, "r-2", total=420)
        _approve(db_session, test_user, sent_qr)
        await OrderConversionService(db_session, gateway).convert(
            test_user, sent_qr.id, ConvertToOrderRequest(selected_supplier_id=supplier_one.id)
        )
        link = next(l for l in sent_qr.thread_links if l.supplier_id == supplier_two.id)
        before = (link.response_date, link.quoted_amount, sent_qr.response_date, sent_qr.notes, sent_qr.total_amount)

        result = await _quote(db_session, gateway, test_org, sent_qr, supplier_two, {"ABC-1": 1}, "r-9", total=3)

        assert result["classification"] == "stored"
        assert sent_qr.status == QuoteStatus.CONVERTED_TO_ORDER.value
        assert link.status == ThreadLinkStatus.REJECTED.value
        assert (link.response_date, link.quoted_amount, sent_qr.response_date, sent_qr.notes, sent_qr.total_amount) == before
        assert sent_qr.total_amount != Decimal("3.00")
        lines = {i.part_number: float(i.unit_price) for i in sent_qr.items if i.supplier_id == supplier_two.id}
        assert lines == {"ABC-1": 90.0, "XYZ-2": 240.0}
        inbound = [m.external_message_id for m in link.email_thread.messages if m.direction == "INBOUND"]
        assert inbound == ["r-2", "r-9"]

    @pytest.mark.asyncio
    async def test_reopened_request_takes_stored_requote_on_refresh(self, db_session, gateway, test_org, test_user, sent_qr, supplier_one, supplier_two):
        await _priced_and_approved(db_session, gateway, test_org, test_user, sent_qr, supplier_one, supplier_two)
        await _quote(db_session, gateway, test_org, sent_qr, supplier_one, {"ABC-1": 10, "XYZ-2": 20}, "r-3")
        lines = {i.part_number: float(i.unit_price) for i in sent_qr.items if i.supplier_id == supplier_one.id}
        assert lines == {"ABC-1": 100.0, "XYZ-2": 250.0}

        svc = QuoteLifecycleService(db_session, gateway)
        svc.transition_status(test_user, sent_qr.id, StatusChange(status="UNDER_REVIEW"))
        out = await svc.refresh_prices(test_user, sent_qr.id, supplier_one.id)

        assert out["results"][0]["status"] == "refreshed"
        assert gateway.parsed[-1]["emailId"] == "r-3"
        lines = {i.part_number: float(i.unit_price) for i in sent_qr.items if i.supplier_id == supplier_one.id}
        assert lines == {"ABC-1": 10.0, "XYZ-2": 20.0}

    @pytest.mark.asyncio
    async def test_reply_on_cancelled_request_is_stored_only(self, db_session, gateway, test_org, test_user, sent_qr, supplier_one):
        QuoteLifecycleService(db_session).transition_status(test_user, sent_qr.id, StatusChange(status="CANCELLED"))

        total_before = sent_qr.total_amount
        result = await _quote(db_session, gateway, test_org, sent_qr, supplier_one, {"ABC-1": 100}, "r-1", total=200)

        assert result["classification"] == "stored"
        assert sent_qr.status == QuoteStatus.CANCELLED.value
        assert sent_qr.total_amount == total_before
        assert all(i.unit_price is None for i in sent_qr.items)
        link = next(l for l in sent_qr.thread_links if l.supplier_id == supplier_one.id)
        assert link.status == ThreadLinkStatus.SENT.value
