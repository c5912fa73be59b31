"""
main.py — FleetParts procurement API

App wiring only: middleware, exception handlers and router mounts. All
business logic lives in services/.

Business Rules:
- Every response carries X-Request-ID (8 chars), X-API-Version and the OWASP headers
- Log lines emitted while handling a request are tagged with its request id
- Domain errors map to {"error", "kind", "status_code", "request_id"[, "context"]}
- HTTPException maps to {"error", "status_code", "request_id"}
- Unhandled exceptions are logged and answered with a generic 500

Called by: uvicorn (fleetparts.main:app)
Depends on: routers/*, logging_config, startup, http_client, rate_limit
"""

import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from loguru import logger
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from starlette.exceptions import HTTPException
from starlette.middleware.sessions import SessionMiddleware

from . import __version__
from .config import settings
from .errors import FleetPartsError
from .http_client import close_http
from .logging_config import setup_logging
from .rate_limit import limiter
from .routers import catalog, emails, orders, quote_requests, webhooks
from .startup import run_startup_migrations


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    run_startup_migrations()
    logger.info("FleetParts {} started", __version__)
    yield
    await close_http()
    logger.info("FleetParts shut down")


app = FastAPI(title="FleetParts", version=__version__, lifespan=lifespan)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_middleware(
    SessionMiddleware,
    secret_key=settings.secret_key,
    https_only=settings.is_production,
    same_site="lax",
)

_SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "X-XSS-Protection": "1; mode=block",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "X-API-Version": "v1",
}


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "-")


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    request_id = uuid.uuid4().hex[:8]
    request.state.request_id = request_id
    with logger.contextualize(request_id=request_id):
        response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    for name, value in _SECURITY_HEADERS.items():
        response.headers[name] = value
    return response


# ── Exception handlers ────────────────────────────────────────────────


@app.exception_handler(FleetPartsError)
async def domain_error_handler(request: Request, exc: FleetPartsError):
    if exc.http_status >= 500:
        logger.warning("{} {} → {}: {}", request.method, request.url.path, exc.code, exc.detail)
    else:
        logger.info("{} {} → {}: {}", request.method, request.url.path, exc.code, exc.detail)
    return JSONResponse(status_code=exc.http_status, content=exc.to_payload(_request_id(request)))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": str(exc.detail), "status_code": exc.status_code, "request_id": _request_id(request)},
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=422,
        content={
            "error": "Validation error",
            "status_code": 422,
            "request_id": _request_id(request),
            "detail": jsonable_errors(exc),
        },
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.opt(exception=exc).error("Unhandled error on {} {}", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error", "type": type(exc).__name__, "request_id": _request_id(request)},
    )


def jsonable_errors(exc: RequestValidationError) -> list:
    return [{"loc": list(e.get("loc", ())), "msg": e.get("msg", ""), "type": e.get("type", "")} for e in exc.errors()]


# ── Routes ────────────────────────────────────────────────────────────


@app.get("/health")
async def health():
    return {"status": "ok", "version": __version__}


app.include_router(quote_requests.router)
app.include_router(emails.router)
app.include_router(webhooks.router)
app.include_router(orders.router)
app.include_router(catalog.router)
