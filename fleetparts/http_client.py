"""Outbound HTTP for the email automation gateway.

One pooled httpx.AsyncClient per process, built from Settings. The
gateway client passes its own per-call timeout (150s for generation,
600s for order confirmations), so the client default only covers
connection setup.

Usage:
    from fleetparts.http_client import http
    resp = await http.post(url, json=payload, timeout=150)
"""

import httpx

from . import __version__
from .config import Settings, settings


def build_client(cfg: Settings = settings) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        timeout=httpx.Timeout(cfg.gateway_timeout_seconds, connect=10),
        limits=httpx.Limits(max_connections=20, max_keepalive_connections=10, keepalive_expiry=30),
        headers={"User-Agent": f"fleetparts/{__version__}"},
        follow_redirects=False,
    )


http = build_client()


async def close_http() -> None:
    """Release pooled connections on shutdown. Safe if the loop already closed."""
    if http.is_closed:
        return
    try:
        await http.aclose()
    except RuntimeError:
        pass
