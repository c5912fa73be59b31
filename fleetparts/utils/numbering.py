"""Human-readable document numbers.

Quote requests: QR-MM-YYYY-XXXX. Orders: ORD-YYYY-XXXX. The XXXX suffix
is random; uniqueness per organization is enforced by the database and
callers retry on collision.
"""

import random
from datetime import datetime, timezone

_rng = random.SystemRandom()


def _suffix() -> str:
    return f"{_rng.randrange(10000):04d}"


def new_quote_number(now: datetime | None = None) -> str:
    now = now or datetime.now(timezone.utc)
    return f"QR-{now:%m}-{now:%Y}-{_suffix()}"


def new_order_number(now: datetime | None = None) -> str:
    now = now or datetime.now(timezone.utc)
    return f"ORD-{now:%Y}-{_suffix()}"
