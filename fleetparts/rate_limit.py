"""Shared rate limiter (in-memory storage, per worker).

The supplier fan-out endpoint carries its own tighter limit
(settings.rate_limit_send) since every call emails real suppliers.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from .config import settings

limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[settings.rate_limit_default],
    enabled=settings.rate_limit_enabled,
)
