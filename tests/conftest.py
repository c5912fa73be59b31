"""
conftest.py — Shared Test Fixtures for FleetParts

Provides an in-memory SQLite database, a FastAPI TestClient with auth
overrides, a fake email gateway, and factory fixtures for the core models
(Organization, User, Supplier, Vehicle, QuoteRequest).

Business Rules:
- All tests run against an isolated in-memory DB (no prod data risk)
- Auth is overridden so tests don't need a session cookie
- The email gateway is replaced by FakeEmailGateway (records calls, fails on demand)
- Each test function gets a fresh schema

Called by: all test files via pytest autodiscovery
Depends on: fleetparts.models (Base), fleetparts.database (get_db), fleetparts.dependencies
"""

import os

os.environ["TESTING"] = "1"  # Must be set before importing fleetparts modules
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ["RATE_LIMIT_ENABLED"] = "false"

import asyncio
import base64
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from fleetparts.errors import ExternalGatewayError
from fleetparts.models import Base, Organization, Supplier, User, Vehicle
from fleetparts.schemas.quote_requests import QuoteRequestCreate
from fleetparts.services.email_gateway import _parse_result
from fleetparts.services.quote_lifecycle import QuoteLifecycleService

# ── In-memory SQLite engine ──────────────────────────────────────────

engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestSessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@event.listens_for(engine, "connect")
def _enable_fk(dbapi_conn, _):
    """SQLite ignores FKs by default — turn them on."""
    dbapi_conn.execute("PRAGMA foreign_keys=ON")


# ── Fake gateway ─────────────────────────────────────────────────────


def parse_reply(items=None, total=None, confidence=0.9, notes=None) -> dict:
    """A parse gateway result, built from the camelCase shape the service sends."""
    return _parse_result(
        {
            "extractedData": {
                "quoteItems": items or [],
                "totalAmount": total,
                "currency": "USD",
                "additionalNotes": notes,
            },
            "confidence": confidence,
            "suggestedActions": [],
        }
    )


class FakeEmailGateway:
    """In-memory stand-in for EmailGateway. Records every payload."""

    def __init__(self):
        self.quote_requests: list[dict] = []
        self.confirmations: list[dict] = []
        self.parsed: list[dict] = []
        self.fail_for: set[str] = set()
        self.fail_confirmation = False
        self.fail_parse = False
        self.next_parse = parse_reply(confidence=0.2)
        self.follow_ups: list[dict] = []
        self.order_follow_ups: list[dict] = []
        self.fail_follow_up_for: set[str] = set()
        self.fail_order_follow_up = False

    async def generate_quote_request_email(self, payload: dict) -> dict:
        self.quote_requests.append(payload)
        if payload["supplier"]["email"] in self.fail_for:
            raise ExternalGatewayError("quote_request webhook returned HTTP 500", webhook="quote_request")
        n = len(self.quote_requests)
        return {
            "subject": f"Quote request {payload['quoteNumber']}",
            "body": "Please quote the parts below.",
            "body_html": "<p>Please quote the parts below.</p>",
            "message_id": f"msg-{n}",
            "thread_id": f"thread-{payload['quoteRequestId']}-{payload['supplierId']}",
            "purchase_order_attachment": None,
            "order_updates": {},
        }

    async def generate_order_confirmation_email(self, payload: dict) -> dict:
        self.confirmations.append(payload)
        if self.fail_confirmation:
            raise ExternalGatewayError("order_confirmation webhook timed out after 600s", webhook="order_confirmation")
        thread = payload.get("emailThread") or {}
        return {
            "subject": f"Purchase order {payload['orderNumber']}",
            "body": "Please confirm this order.",
            "body_html": "<p>Please confirm this order.</p>",
            "message_id": f"po-{payload['orderNumber']}",
            "thread_id": thread.get("externalThreadId") or f"po-thread-{payload['orderId']}",
            "purchase_order_attachment": {
                "filename": f"{payload['orderNumber']}.pdf",
                "content": base64.b64encode(b"%PDF").decode(),
                "contentType": "application/pdf",
            },
            "order_updates": {},
        }

    async def generate_follow_up_email(self, payload: dict) -> dict:
        self.follow_ups.append(payload)
        if payload["supplier"]["email"] in self.fail_follow_up_for:
            raise ExternalGatewayError("follow_up webhook returned HTTP 503", webhook="follow_up")
        n = len(self.follow_ups)
        return {
            "subject": f"Following up: {payload['quoteNumber']}",
            "body": "Checking in on our quote request.",
            "body_html": "<p>Checking in on our quote request.</p>",
            "message_id": f"fu-{n}",
            "thread_id": payload["threadId"],
            "purchase_order_attachment": None,
            "order_updates": {},
        }

    async def generate_order_follow_up_email(self, payload: dict) -> dict:
        self.order_follow_ups.append(payload)
        if self.fail_order_follow_up:
            raise ExternalGatewayError("order_follow_up webhook reported failure", webhook="order_follow_up")
        return {
            "subject": f"Order {payload['orderNumber']}: {payload['branch']}",
            "body": "Any update on this order?",
            "body_html": "<p>Any update on this order?</p>",
            "message_id": f"ofu-{len(self.order_follow_ups)}",
            "thread_id": f"po-thread-{payload['orderId']}",
            "purchase_order_attachment": None,
            "order_updates": {},
        }

    async def parse_email(self, payload: dict) -> dict:
        self.parsed.append(payload)
        if self.fail_parse:
            raise ExternalGatewayError("email_parser webhook unreachable", webhook="email_parser")
        return self.next_parse


# ── Fixtures ─────────────────────────────────────────────────────────


@pytest.fixture(autouse=True)
def db_session():
    """Create all tables, yield a session, then tear down."""
    Base.metadata.create_all(bind=engine)
    session = TestSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


def _add(db: Session, obj):
    db.add(obj)
    db.commit()
    db.refresh(obj)
    return obj


@pytest.fixture()
def test_org(db_session: Session) -> Organization:
    return _add(db_session, Organization(name="Metro Transit Fleet", domain="metrofleet.example"))


@pytest.fixture()
def other_org(db_session: Session) -> Organization:
    """A second tenant whose rows must stay invisible to test_org users."""
    return _add(db_session, Organization(name="County Public Works"))


@pytest.fixture()
def test_user(db_session: Session, test_org: Organization) -> User:
    """A standard buyer user."""
    return _add(
        db_session,
        User(
            organization_id=test_org.id,
            email="buyer@metrofleet.example",
            name="Test Buyer",
            role="buyer",
            created_at=datetime.now(timezone.utc),
        ),
    )


@pytest.fixture()
def manager_user(db_session: Session, test_org: Organization) -> User:
    """A manager-role user for thread repair."""
    return _add(
        db_session,
        User(organization_id=test_org.id, email="manager@metrofleet.example", name="Test Manager", role="manager"),
    )


@pytest.fixture()
def other_user(db_session: Session, other_org: Organization) -> User:
    return _add(
        db_session,
        User(organization_id=other_org.id, email="buyer@county.example", name="County Buyer", role="buyer"),
    )


@pytest.fixture()
def supplier_one(db_session: Session, test_org: Organization) -> Supplier:
    """Primary supplier (the Acme dealer)."""
    return _add(
        db_session,
        Supplier(organization_id=test_org.id, name="Acme Truck Parts", email="main@acme.com", contact_person="Dana"),
    )


@pytest.fixture()
def supplier_two(db_session: Session, test_org: Organization) -> Supplier:
    return _add(
        db_session,
        Supplier(organization_id=test_org.id, name="Bolt Fleet Supply", email="sales@bolt.example"),
    )


@pytest.fixture()
def supplier_no_email(db_session: Session, test_org: Organization) -> Supplier:
    return _add(db_session, Supplier(organization_id=test_org.id, name="Walk-in Counter"))


@pytest.fixture()
def foreign_supplier(db_session: Session, other_org: Organization) -> Supplier:
    return _add(db_session, Supplier(organization_id=other_org.id, name="County Vendor", email="v@county.example"))


@pytest.fixture()
def test_vehicle(db_session: Session, test_org: Organization) -> Vehicle:
    return _add(
        db_session,
        Vehicle(organization_id=test_org.id, vehicle_id="BUS-104", make="Gillig", model="Low Floor", year=2019),
    )


@pytest.fixture()
def gateway() -> FakeEmailGateway:
    return FakeEmailGateway()


@pytest.fixture()
def make_quote_request(db_session: Session, test_user: User, supplier_one: Supplier, test_vehicle: Vehicle):
    """Factory: a DRAFT quote request for ABC-1 x2 and XYZ-2 x1, primary supplier_one."""

    def _make(additional=(), items=None, user=None):
        data = QuoteRequestCreate(
            title="Brake service parts",
            supplier_id=supplier_one.id,
            vehicle_id=test_vehicle.id,
            additional_supplier_ids=[s.id for s in additional],
            items=items
            or [
                {"part_number": "ABC-1", "description": "Brake pad set", "quantity": 2},
                {"part_number": "XYZ-2", "description": "Brake rotor", "quantity": 1},
            ],
        )
        return QuoteLifecycleService(db_session).create_quote_request(user or test_user, data)

    return _make


def run_sync(coro):
    """Drive a coroutine from a sync fixture on a private loop."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


@pytest.fixture()
def sent_qr(db_session: Session, gateway: FakeEmailGateway, test_user: User, make_quote_request, supplier_two):
    """A quote request already sent to supplier_one (primary) and supplier_two."""
    qr = make_quote_request(additional=[supplier_two])
    run_sync(QuoteLifecycleService(db_session, gateway).send(test_user, qr.id))
    return qr


@pytest.fixture()
def client(db_session: Session, test_user: User, gateway: FakeEmailGateway) -> TestClient:
    """FastAPI TestClient with auth overridden to return test_user.

    Overrides get_db to use the test session, the role checks to skip
    session auth, and the email gateway with the fake.
    """
    from fleetparts.database import get_db
    from fleetparts.dependencies import get_email_gateway, require_buyer, require_manager, require_user
    from fleetparts.main import app

    def _override_db():
        yield db_session

    def _override_user():
        return test_user

    app.dependency_overrides[get_db] = _override_db
    app.dependency_overrides[require_user] = _override_user
    app.dependency_overrides[require_buyer] = _override_user
    app.dependency_overrides[require_manager] = _override_user
    app.dependency_overrides[get_email_gateway] = lambda: gateway

    with TestClient(app) as c:
        yield c

    app.dependency_overrides.clear()
