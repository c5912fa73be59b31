"""Row → dict serializers shared by routers and service results."""

from .utils import iso


def _num(v):
    return float(v) if v is not None else None


def supplier_to_dict(s, include_aux: bool = False) -> dict:
    d = {
        "id": s.id,
        "name": s.name,
        "email": s.email,
        "contact_person": s.contact_person,
        "phone": s.phone,
        "type": s.type,
        "city": s.city,
        "state": s.state,
    }
    if include_aux:
        d["auxiliary_emails"] = [{"id": a.id, "email": a.email, "name": a.name} for a in s.auxiliary_emails]
    return d


def vehicle_to_dict(v) -> dict:
    return {
        "id": v.id,
        "vehicle_id": v.vehicle_id,
        "make": v.make,
        "model": v.model,
        "year": v.year,
        "serial_number": v.serial_number,
        "type": v.type,
        "status": v.status,
    }


def part_to_dict(p) -> dict:
    return {
        "id": p.id,
        "part_number": p.part_number,
        "description": p.description,
        "category": p.category,
        "supplier_part_number": p.supplier_part_number,
        "price": _num(p.price),
        "cost": _num(p.cost),
        "stock_quantity": p.stock_quantity,
        "superseded_by": p.superseded_by,
        "supersedes": p.supersedes,
        "supersession_notes": p.supersession_notes,
    }


def quote_item_to_dict(i) -> dict:
    return {
        "id": i.id,
        "supplier_id": i.supplier_id,
        "part_number": i.part_number,
        "description": i.description,
        "quantity": i.quantity,
        "unit_price": _num(i.unit_price),
        "total_price": _num(i.total_price),
        "supplier_part_number": i.supplier_part_number,
        "lead_time": i.lead_time,
        "estimated_delivery_days": i.estimated_delivery_days,
        "availability": i.availability,
        "is_alternative": bool(i.is_alternative),
        "is_superseded": bool(i.is_superseded),
        "original_part_number": i.original_part_number,
        "superseded_by": i.superseded_by,
        "supplier_notes": i.supplier_notes,
    }


def thread_link_to_dict(link) -> dict:
    return {
        "id": link.id,
        "supplier_id": link.supplier_id,
        "supplier_name": link.supplier.name if link.supplier else None,
        "email_thread_id": link.email_thread_id,
        "is_primary": bool(link.is_primary),
        "status": link.status,
        "quoted_amount": _num(link.quoted_amount),
        "response_date": iso(link.response_date),
    }


def quote_request_summary(qr) -> dict:
    return {
        "id": qr.id,
        "quote_number": qr.quote_number,
        "title": qr.title,
        "status": qr.status,
        "supplier_id": qr.supplier_id,
        "supplier_name": qr.supplier.name if qr.supplier else None,
        "vehicle_id": qr.vehicle_id,
        "total_amount": _num(qr.total_amount),
        "request_date": iso(qr.request_date),
        "expiry_date": iso(qr.expiry_date),
        "created_at": iso(qr.created_at),
    }


def quote_request_detail(qr, additional_ids: list[int]) -> dict:
    d = quote_request_summary(qr)
    d.update(
        {
            "description": qr.description,
            "notes": qr.notes,
            "additional_supplier_ids": additional_ids,
            "selected_supplier_id": qr.selected_supplier_id,
            "suggested_fulfillment_method": qr.suggested_fulfillment_method,
            "response_date": iso(qr.response_date),
            "items": [quote_item_to_dict(i) for i in qr.items],
            "thread_links": [thread_link_to_dict(l) for l in qr.thread_links],
        }
    )
    return d


def message_to_dict(m) -> dict:
    return {
        "id": m.id,
        "thread_id": m.thread_id,
        "direction": m.direction,
        "from": m.from_address,
        "to": m.to_addresses or [],
        "subject": m.subject,
        "body": m.body,
        "external_message_id": m.external_message_id,
        "metadata": m.message_metadata,
        "sent_at": iso(m.sent_at),
        "received_at": iso(m.received_at),
        "attachments": [
            {"id": a.id, "filename": a.filename, "content_type": a.content_type, "size": a.size}
            for a in m.attachments
        ],
    }


def thread_to_dict(t, include_messages: bool = False) -> dict:
    d = {
        "id": t.id,
        "subject": t.subject,
        "status": t.status,
        "external_thread_id": t.external_thread_id,
        "quote_request_id": t.quote_request_id,
        "supplier_id": t.supplier_id,
        "supplier_name": t.supplier.name if t.supplier else None,
        "message_count": len(t.messages),
        "created_at": iso(t.created_at),
    }
    if include_messages:
        d["messages"] = [message_to_dict(m) for m in t.messages]
    return d


def order_to_dict(o, include_items: bool = True) -> dict:
    d = {
        "id": o.id,
        "order_number": o.order_number,
        "status": o.status,
        "priority": o.priority,
        "quote_request_id": o.quote_request_id,
        "quote_reference": o.quote_reference,
        "supplier_id": o.supplier_id,
        "supplier_name": o.supplier.name if o.supplier else None,
        "vehicle_id": o.vehicle_id,
        "email_thread_id": o.email_thread_id,
        "fulfillment_method": o.fulfillment_method,
        "partial_fulfillment": bool(o.partial_fulfillment),
        "subtotal": _num(o.subtotal),
        "tax": _num(o.tax),
        "shipping": _num(o.shipping),
        "total": _num(o.total),
        "tracking_number": o.tracking_number,
        "shipping_carrier": o.shipping_carrier,
        "expected_delivery": iso(o.expected_delivery),
        "order_date": iso(o.order_date),
    }
    if include_items:
        d["items"] = [
            {
                "id": i.id,
                "part_id": i.part_id,
                "part_number": i.part.part_number if i.part else None,
                "quantity": i.quantity,
                "unit_price": _num(i.unit_price),
                "total_price": _num(i.total_price),
                "availability": i.availability,
                "fulfillment_method": i.fulfillment_method,
                "expected_delivery": iso(i.expected_delivery),
                "supplier_notes": i.supplier_notes,
            }
            for i in o.items
        ]
    return d
