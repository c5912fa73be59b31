"""
tests/test_security_headers.py — Response headers added by main.py middleware

Every response, success or error, carries the security headers, the API
version and a request id that matches the id in error payloads.

Called by: pytest
Depends on: fleetparts.main (request_id_middleware, exception handlers)
"""

import pytest

EXPECTED = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "X-XSS-Protection": "1; mode=block",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "X-API-Version": "v1",
}


@pytest.mark.parametrize("path", ["/health", "/api/quote-requests", "/api/quote-requests/999999", "/no-such-route"])
def test_headers_on_every_response(client, path):
    resp = client.get(path)
    for name, value in EXPECTED.items():
        assert resp.headers.get(name) == value, name


def test_request_id_is_fresh_per_request(client):
    first = client.get("/health").headers["X-Request-ID"]
    second = client.get("/health").headers["X-Request-ID"]
    assert len(first) == 8
    assert first != second


def test_error_payload_carries_request_id(client):
    resp = client.get("/api/suppliers/999999")
    assert resp.status_code == 404
    body = resp.json()
    assert body["request_id"] == resp.headers["X-Request-ID"]
    assert body["kind"] == "not_found"


def test_unknown_route_uses_http_error_shape(client):
    resp = client.get("/no-such-route")
    assert resp.status_code == 404
    assert set(resp.json()) == {"error", "status_code", "request_id"}


def test_global_exception_handler_registered():
    """Raising through a dependency override propagates out of TestClient, so check registration."""
    from fleetparts.main import app

    assert Exception in app.exception_handlers
