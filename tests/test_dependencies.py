"""
test_dependencies.py — Tests for shared FastAPI dependencies.

Tests session auth, the x-agent-key service login, role checks and the
gateway singleton. Uses in-memory SQLite via conftest fixtures.

Called by: pytest
Depends on: fleetparts/dependencies.py, conftest.py
"""

from unittest.mock import MagicMock

import pytest

from fleetparts.config import settings
from fleetparts.dependencies import (
    AGENT_EMAIL,
    get_email_gateway,
    get_user,
    require_buyer,
    require_manager,
    require_user,
)
from fleetparts.errors import ForbiddenError, UnauthorizedError
from fleetparts.models import User
from fleetparts.services.email_gateway import EmailGateway


# ── Helpers ─────────────────────────────────────────────────────────


def _mock_request(session_data=None, headers=None):
    req = MagicMock()
    req.session = dict(session_data or {})
    req.headers = headers or {}
    return req


@pytest.fixture()
def agent_user(db_session, test_org):
    user = User(organization_id=test_org.id, email=AGENT_EMAIL, name="Automation Agent", role="buyer")
    db_session.add(user)
    db_session.commit()
    return user


# ── get_user ────────────────────────────────────────────────────────


class TestGetUser:
    def test_returns_user_when_session_has_id(self, db_session, test_user):
        user = get_user(_mock_request({"user_id": test_user.id}), db_session)
        assert user.id == test_user.id

    def test_returns_none_when_no_session(self, db_session):
        assert get_user(_mock_request({}), db_session) is None

    def test_returns_none_when_user_not_found(self, db_session):
        assert get_user(_mock_request({"user_id": 99999}), db_session) is None


# ── require_user ────────────────────────────────────────────────────


class TestRequireUser:
    def test_session_user(self, db_session, test_user):
        assert require_user(_mock_request({"user_id": test_user.id}), db_session) is test_user

    def test_anonymous_is_unauthorized(self, db_session):
        with pytest.raises(UnauthorizedError):
            require_user(_mock_request(), db_session)

    def test_deactivated_user_is_forbidden(self, db_session, test_user):
        test_user.is_active = False
        db_session.commit()
        request = _mock_request({"user_id": test_user.id})
        with pytest.raises(ForbiddenError):
            require_user(request, db_session)
        assert request.session == {}

    def test_agent_key_logs_in_agent(self, db_session, agent_user, monkeypatch):
        monkeypatch.setattr(settings, "agent_api_key", "s3cret")
        user = require_user(_mock_request(headers={"x-agent-key": "s3cret"}), db_session)
        assert user.email == AGENT_EMAIL

    def test_wrong_agent_key_is_unauthorized(self, db_session, agent_user, monkeypatch):
        monkeypatch.setattr(settings, "agent_api_key", "s3cret")
        with pytest.raises(UnauthorizedError):
            require_user(_mock_request(headers={"x-agent-key": "guess"}), db_session)

    def test_agent_key_ignored_when_unconfigured(self, db_session, agent_user, monkeypatch):
        monkeypatch.setattr(settings, "agent_api_key", "")
        with pytest.raises(UnauthorizedError):
            require_user(_mock_request(headers={"x-agent-key": ""}), db_session)


# ── Role checks ─────────────────────────────────────────────────────


class TestRoles:
    def test_buyer_passes_buyer_check(self, db_session, test_user):
        assert require_buyer(_mock_request({"user_id": test_user.id}), db_session) is test_user

    def test_viewer_fails_buyer_check(self, db_session, test_user):
        test_user.role = "viewer"
        db_session.commit()
        with pytest.raises(ForbiddenError):
            require_buyer(_mock_request({"user_id": test_user.id}), db_session)

    def test_buyer_fails_manager_check(self, db_session, test_user):
        with pytest.raises(ForbiddenError):
            require_manager(_mock_request({"user_id": test_user.id}), db_session)

    def test_manager_passes_manager_check(self, db_session, manager_user):
        assert require_manager(_mock_request({"user_id": manager_user.id}), db_session) is manager_user


def test_email_gateway_is_shared():
    first = get_email_gateway()
    assert isinstance(first, EmailGateway)
    assert get_email_gateway() is first
