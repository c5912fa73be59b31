"""Quote request state machine — transition map and guards.

Every status change on a QuoteRequest goes through transition(); nothing
assigns qr.status directly. Engine-driven moves (send, reply, convert) and
buyer-driven moves (approve, reject, cancel, revise) share one map.

Called by: services/quote_lifecycle.py, services/order_conversion.py
Depends on: models.enums, errors
"""

from __future__ import annotations

from loguru import logger

from ..errors import InvalidStateError
from ..models.enums import QuoteStatus

S = QuoteStatus

# {current_state: allowed next states}
TRANSITIONS: dict[QuoteStatus, frozenset[QuoteStatus]] = {
    S.DRAFT: frozenset({S.SENT, S.CANCELLED}),
    # SENT → SENT: a re-send that reaches suppliers added after the first send
    S.SENT: frozenset({S.SENT, S.RECEIVED, S.UNDER_REVIEW, S.EXPIRED, S.CANCELLED}),
    S.RECEIVED: frozenset(
        {S.RECEIVED, S.UNDER_REVIEW, S.APPROVED, S.REJECTED, S.EXPIRED, S.CANCELLED}
    ),
    S.UNDER_REVIEW: frozenset({S.UNDER_REVIEW, S.APPROVED, S.REJECTED, S.CANCELLED}),
    S.APPROVED: frozenset({S.CONVERTED_TO_ORDER, S.UNDER_REVIEW, S.CANCELLED}),
    S.REJECTED: frozenset({S.UNDER_REVIEW, S.CANCELLED}),
    S.CONVERTED_TO_ORDER: frozenset(),
    S.CANCELLED: frozenset(),
    S.EXPIRED: frozenset(),
}

TERMINAL_STATES = frozenset(s for s, nxt in TRANSITIONS.items() if not nxt)

# Targets a buyer may request through the status endpoint. The rest are
# reached only as a side effect of send, reply reconciliation or conversion.
MANUAL_TARGETS = frozenset({S.UNDER_REVIEW, S.APPROVED, S.REJECTED, S.CANCELLED, S.EXPIRED})

# States a supplier reply may move the request out of.
REPLY_PRICED_SOURCES = frozenset({S.SENT, S.RECEIVED, S.UNDER_REVIEW})
REPLY_ACK_SOURCES = frozenset({S.SENT})


def can_transition(current: str, target: str) -> bool:
    try:
        return QuoteStatus(target) in TRANSITIONS.get(QuoteStatus(current), frozenset())
    except ValueError:
        return False


def allowed_targets(current: str) -> frozenset[QuoteStatus]:
    try:
        return TRANSITIONS[QuoteStatus(current)]
    except ValueError:
        return frozenset()


def transition(qr, target: QuoteStatus | str) -> str:
    """Move qr to target or raise InvalidStateError. Returns the previous status."""
    old = qr.status
    target_value = getattr(target, "value", target)
    if not can_transition(old, target_value):
        allowed = sorted(s.value for s in allowed_targets(old))
        raise InvalidStateError(
            f"Cannot move quote request {qr.quote_number} from {old} to {target_value}",
            current=old,
            allowed=allowed,
        )
    qr.status = target_value
    if old != qr.status:
        logger.info(
            "Quote request {} status {} -> {}", qr.quote_number, old, qr.status
        )
    return old
