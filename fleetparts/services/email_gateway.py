"""
email_gateway.py — Email automation gateway client

Talks to the external automation service that writes and delivers
supplier emails and parses supplier replies. Five webhook calls:
  - generate_quote_request_email: RFQ email to one supplier
  - generate_order_confirmation_email: purchase order confirmation
  - generate_follow_up_email: chaser to a supplier on an open quote request
  - generate_order_follow_up_email: chaser to the supplier of a placed order
  - parse_email: structured pricing extraction from a reply

Business Rules:
- Every call carries a short-lived HS512 bearer token (5 minute expiry)
- Calls are bounded by a timeout (150s generation, 600s order confirmation)
- Timeout, transport error, non-2xx or missing URL → ExternalGatewayError
- Webhook responses come in several shapes; extract_webhook_data() flattens them
- An order follow-up answer with success=false is a gateway failure

Called by: services/quote_lifecycle.py, services/order_conversion.py, services/follow_ups.py
Depends on: http_client (shared httpx client), config, errors
"""

import json
import re
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import httpx
from jose import jwt
from loguru import logger

from ..config import Settings, settings as default_settings
from ..errors import ExternalGatewayError
from ..utils import safe_float, safe_int

_JSON_FENCE = re.compile(r"```json\s*\n(.*?)\n\s*```", re.DOTALL)


# ── Response shape normalization ──────────────────────────────────────


def _loads_output(text: str):
    """Parse an ``output`` string: fenced ```json block first, then the whole text."""
    m = _JSON_FENCE.search(text)
    candidate = m.group(1) if m else text
    try:
        return json.loads(candidate)
    except (json.JSONDecodeError, TypeError):
        return None


def _email_wrapper(email: dict, metadata: dict | None = None) -> dict:
    return {
        "emailContent": {
            "subject": email.get("subject", ""),
            "body": email.get("body", ""),
            "bodyHtml": email.get("bodyHtml") or email.get("body", ""),
        },
        "messageId": (metadata or {}).get("messageId"),
        "threadId": (metadata or {}).get("threadId"),
    }


def extract_webhook_data(response) -> dict:
    """Flatten the response shapes the automation service produces.

    Handles: [{"response": {"body": ...}}], [{"output": "```json ...```"}],
    [{"email": {...}}], {"emailContent": ...}, {"email": {...}},
    {"output": "plain text"} and plain objects.
    """
    if not response:
        return {}

    if isinstance(response, list):
        first = response[0] if isinstance(response[0], dict) else {}
        if isinstance(first.get("response"), dict) and "body" in first["response"]:
            body = first["response"]["body"]
            return body if isinstance(body, dict) else {}
        if isinstance(first.get("output"), str):
            parsed = _loads_output(first["output"])
            if isinstance(parsed, dict):
                return parsed
            return {"textOutput": first["output"]}
        if isinstance(first.get("email"), dict) and first["email"].get("subject"):
            return _email_wrapper(first["email"], first.get("metadata"))
        return first

    if not isinstance(response, dict):
        return {}
    if "emailContent" in response:
        return response
    if isinstance(response.get("email"), dict) and response["email"].get("subject"):
        return _email_wrapper(response["email"], response.get("metadata"))
    if isinstance(response.get("output"), str):
        parsed = _loads_output(response["output"])
        if isinstance(parsed, dict):
            return parsed
        return {"textOutput": response["output"]}
    return response


def _email_result(data: dict) -> dict:
    """Normalize a generation response to snake_case keys."""
    content = data.get("emailContent") or {}
    subject = content.get("subject") or data.get("subject") or ""
    body = content.get("body") or data.get("body") or ""
    if not subject and not body:
        raise ExternalGatewayError("Email gateway returned no email content")

    message_id = data.get("messageId") or data.get("id")
    if not message_id:
        message_id = f"generated-{uuid4().hex[:12]}"
        logger.warning("Email gateway returned no message id, using {}", message_id)
    return {
        "subject": subject,
        "body": body,
        "body_html": content.get("bodyHtml") or data.get("bodyHtml") or body,
        "message_id": str(message_id),
        "thread_id": str(data.get("threadId") or message_id),
        "purchase_order_attachment": data.get("purchaseOrderAttachment"),
        "order_updates": data.get("orderUpdates") or {},
    }


def _parsed_item(raw: dict) -> dict | None:
    part_number = str(raw.get("partNumber") or "").strip()
    if not part_number:
        return None
    return {
        "part_number": part_number,
        "description": raw.get("description"),
        "quantity": safe_int(raw.get("quantity")),
        "unit_price": raw.get("unitPrice"),
        "total_price": raw.get("totalPrice"),
        "availability": raw.get("availability"),
        "lead_time": raw.get("leadTime"),
        "estimated_delivery_days": safe_int(raw.get("estimatedDeliveryDays")),
        "supplier_part_number": raw.get("supplierPartNumber"),
        "is_alternative": bool(raw.get("isAlternative")),
        "alternative_reason": raw.get("alternativeReason"),
        "is_superseded": bool(raw.get("isSuperseded")),
        "original_part_number": raw.get("originalPartNumber"),
        "supersession_notes": raw.get("supersessionNotes"),
        "supplier_notes": raw.get("notes"),
    }


def _parse_result(data: dict) -> dict:
    """Normalize a parse response. Plain-text output means nothing was extracted."""
    extracted = data.get("extractedData") or {}
    items = [i for i in (_parsed_item(r) for r in extracted.get("quoteItems") or [] if isinstance(r, dict)) if i]
    return {
        "items": items,
        "total_amount": safe_float(extracted.get("totalAmount")),
        "currency": extracted.get("currency") or "USD",
        "additional_notes": extracted.get("additionalNotes"),
        "confidence": safe_float(data.get("confidence")) or 0.0,
        "suggested_actions": data.get("suggestedActions") or [],
        "raw": data,
    }


# ── Client ────────────────────────────────────────────────────────────


class EmailGateway:
    """Async client for the automation webhooks. One instance per process."""

    def __init__(self, client: httpx.AsyncClient, settings: Settings | None = None):
        self.client = client
        self.settings = settings or default_settings

    def _token(self) -> str:
        now = datetime.now(timezone.utc)
        claims = {
            "source": "fleetparts",
            "iss": self.settings.app_url,
            "iat": now,
            "exp": now + timedelta(minutes=self.settings.gateway_token_ttl_minutes),
        }
        return jwt.encode(claims, self.settings.gateway_webhook_secret or self.settings.secret_key, algorithm="HS512")

    async def _post(self, kind: str, url: str, payload: dict, timeout: float):
        if not url:
            raise ExternalGatewayError(f"{kind} webhook URL is not configured", webhook=kind)

        log = logger.bind(gateway=kind)
        headers = {"Authorization": f"Bearer {self._token()}"}
        try:
            resp = await self.client.post(url, json=payload, headers=headers, timeout=timeout)
        except httpx.TimeoutException:
            log.warning("Gateway {} timed out after {}s", kind, timeout)
            raise ExternalGatewayError(f"{kind} webhook timed out after {timeout:g}s", webhook=kind)
        except httpx.HTTPError as e:
            log.warning("Gateway {} transport error: {}", kind, e)
            raise ExternalGatewayError(f"{kind} webhook unreachable: {e}", webhook=kind)

        if resp.status_code >= 300:
            log.warning("Gateway {} returned {}: {}", kind, resp.status_code, resp.text[:300])
            raise ExternalGatewayError(
                f"{kind} webhook returned HTTP {resp.status_code}",
                webhook=kind,
                upstream_status=resp.status_code,
            )

        try:
            body = resp.json()
        except ValueError:
            body = {"output": resp.text}
        return extract_webhook_data(body)

    async def generate_quote_request_email(self, payload: dict) -> dict:
        data = await self._post(
            "quote_request",
            self.settings.quote_request_webhook_url,
            payload,
            self.settings.gateway_timeout_seconds,
        )
        return _email_result(data)

    async def generate_order_confirmation_email(self, payload: dict) -> dict:
        data = await self._post(
            "order_confirmation",
            self.settings.order_confirmation_webhook_url,
            payload,
            self.settings.order_confirmation_timeout_seconds,
        )
        return _email_result(data)

    async def parse_email(self, payload: dict) -> dict:
        data = await self._post(
            "email_parser",
            self.settings.email_parser_webhook_url,
            payload,
            self.settings.gateway_timeout_seconds,
        )
        return _parse_result(data)

    async def generate_follow_up_email(self, payload: dict) -> dict:
        data = await self._post(
            "follow_up",
            self.settings.follow_up_webhook_url,
            payload,
            self.settings.gateway_timeout_seconds,
        )
        return _email_result(data)

    async def generate_order_follow_up_email(self, payload: dict) -> dict:
        data = await self._post(
            "order_follow_up",
            self.settings.order_follow_up_webhook_url,
            payload,
            self.settings.gateway_timeout_seconds,
        )
        if data.get("success") is False:
            raise ExternalGatewayError(
                data.get("message") or "order_follow_up webhook reported failure", webhook="order_follow_up"
            )
        return _email_result(data)
