"""Additional-supplier id codec.

Quote requests store their extra suppliers in one text column. Historic
rows hold any of: a JSON array ("[3, 7]" or '["3","7"]'), a
comma-separated list ("3,7"), or a bare id ("3"). Everything reads and
writes through this module; writes always produce a JSON array.

Usage:
    from fleetparts.utils.supplier_ids import decode_supplier_ids, encode_supplier_ids
    ids = decode_supplier_ids(qr.additional_supplier_ids)   # [3, 7]
    qr.additional_supplier_ids = encode_supplier_ids(ids)   # "[3, 7]"
"""

import json
from typing import Iterable

from . import safe_int


def _dedupe(values: Iterable) -> list[int]:
    """Keep first-seen order, drop blanks, non-integers and repeats."""
    seen: set[int] = set()
    out: list[int] = []
    for v in values:
        n = safe_int(str(v).strip()) if v is not None else None
        if n is None or n in seen:
            continue
        seen.add(n)
        out.append(n)
    return out


def decode_supplier_ids(raw) -> list[int]:
    """Decode a stored value into an ordered, de-duplicated list of ids."""
    if raw is None:
        return []
    if isinstance(raw, (list, tuple)):
        return _dedupe(raw)
    if isinstance(raw, int):
        return [raw]

    s = str(raw).strip()
    if not s:
        return []
    if s.startswith("["):
        try:
            parsed = json.loads(s)
        except json.JSONDecodeError:
            parsed = s.strip("[]").split(",")
        if not isinstance(parsed, list):
            parsed = [parsed]
        return _dedupe(parsed)
    return _dedupe(s.split(","))


def encode_supplier_ids(ids: Iterable | None) -> str | None:
    """Encode ids as a JSON array string, or None when empty."""
    cleaned = _dedupe(ids or [])
    if not cleaned:
        return None
    return json.dumps(cleaned)


def all_supplier_ids(primary_id: int, raw_additional) -> list[int]:
    """Primary supplier first, then additional ones (primary never repeated)."""
    return _dedupe([primary_id, *decode_supplier_ids(raw_additional)])
