"""
Tests for admin session handling.
"""
import pytest

from admin_auth import AdminSessionStore, generate_session_id, to_base36
from conftest import make_settings
from errors import BadRequestError, UnauthorizedError


class FakeClock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return AdminSessionStore(make_settings(admin_emails="Admin@FusionForge.com, ops@fusionforge.com",
                                           admin_session_hours=1), clock)


class TestSessionIds:

    def test_base36(self):
        assert to_base36(0) == "0"
        assert to_base36(35) == "z"
        assert to_base36(36) == "10"

    def test_session_id_shape(self):
        sid = generate_session_id(1.0)
        assert sid[:64].isalnum() and len(sid[:64]) == 64
        assert sid.endswith(to_base36(1000))
        assert generate_session_id(1.0) != sid


class TestLogin:

    def test_allow_list_is_case_insensitive(self, store):
        session = store.login("  ADMIN@fusionforge.com ")
        assert session.email == "admin@fusionforge.com"
        assert store.active_count() == 1

    def test_missing_email(self, store):
        with pytest.raises(BadRequestError, match="Email is required"):
            store.login("")

    def test_unknown_email(self, store):
        with pytest.raises(UnauthorizedError) as exc:
            store.login("intruder@example.com")
        assert exc.value.status_code == 401


class TestValidation:

    def test_validate_extends_expiry(self, store, clock):
        session = store.login("ops@fusionforge.com")
        clock.now += 1800
        assert store.validate(session.id) is not None
        clock.now += 3000  # past the original expiry, within the extended one
        assert store.validate(session.id) is not None

    def test_expired_sessions_are_purged(self, store, clock):
        session = store.login("ops@fusionforge.com")
        clock.now += 3601
        assert store.validate(session.id) is None
        assert store.active_count() == 0

    def test_unknown_or_missing_id(self, store):
        assert store.validate(None) is None
        assert store.validate("nope") is None

    def test_logout(self, store):
        session = store.login("ops@fusionforge.com")
        assert store.logout(session.id) is True
        assert store.validate(session.id) is None
        assert store.logout(session.id) is False
