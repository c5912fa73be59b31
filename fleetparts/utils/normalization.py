"""Deterministic normalization of supplier-reply values — pure Python, no AI.

Normalizes values the parse gateway extracts from supplier emails:
  - Prices: "$1,234.56" → 1234.56
  - Lead times: "2-3 weeks" → 17 (days, midpoint), "5" → 5
  - Availability: "in stock" → IN_STOCK, "back order" → BACKORDERED

Design: Prefer less data if it means better data. Return None for ambiguous values.
"""

import re
from typing import Any

from ..models.enums import ItemAvailability


# ── Price normalization ───────────────────────────────────────────────


def normalize_price(raw: Any) -> float | None:
    """Parse price string to float. Returns None if ambiguous or not positive."""
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)):
        return float(raw) if raw > 0 else None

    s = str(raw).strip()
    if not s:
        return None

    s = re.sub(r"\b(USD|CAD|US)\b", "", s, flags=re.IGNORECASE)
    s = s.replace("$", "").replace(",", "").strip()

    # Ranges take the lower bound: "12.50-14.00" → 12.50
    if "-" in s and not s.startswith("-"):
        s = s.split("-")[0].strip()

    s = re.sub(r"[/\s]*(ea|each|pc|pcs|unit|units)\.?\s*$", "", s, flags=re.IGNORECASE)

    try:
        val = float(s)
    except ValueError:
        return None
    return val if val > 0 else None


# ── Lead time normalization ───────────────────────────────────────────


def normalize_lead_time(raw: Any) -> int | None:
    """Parse lead time to days. Returns midpoint for ranges. None if ambiguous.

    Handles: "3", "3 days", "2-3 weeks", "1 month", "in stock"
    """
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)):
        return int(raw) if raw >= 0 else None
    s = str(raw).strip().lower()
    if not s:
        return None

    if s in ("stock", "in stock", "immediate", "same day", "today"):
        return 0

    numbers = re.findall(r"(\d+(?:\.\d+)?)", s)
    if not numbers:
        return None
    nums = [float(n) for n in numbers]

    if any(w in s for w in ("week", "wk")):
        multiplier = 7
    elif "month" in s:
        multiplier = 30
    else:
        multiplier = 1

    midpoint = (nums[0] + nums[1]) / 2 if len(nums) >= 2 else nums[0]
    return int(midpoint * multiplier)


# ── Availability normalization ────────────────────────────────────────

_AVAILABILITY_MAP = {
    "in stock": ItemAvailability.IN_STOCK,
    "in_stock": ItemAvailability.IN_STOCK,
    "available": ItemAvailability.IN_STOCK,
    "stock": ItemAvailability.IN_STOCK,
    "backordered": ItemAvailability.BACKORDERED,
    "backorder": ItemAvailability.BACKORDERED,
    "back order": ItemAvailability.BACKORDERED,
    "back ordered": ItemAvailability.BACKORDERED,
    "special order": ItemAvailability.SPECIAL_ORDER,
    "special_order": ItemAvailability.SPECIAL_ORDER,
    "unknown": ItemAvailability.UNKNOWN,
}


def normalize_availability(raw: Any) -> ItemAvailability | None:
    """Map free-text availability to the enum. None when unrecognised."""
    if raw is None:
        return None
    s = str(raw).strip().lower()
    if not s:
        return None
    return _AVAILABILITY_MAP.get(s)
