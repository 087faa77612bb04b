"""Tests for auth/types.py - domain models."""

from datetime import timedelta

from auth.types import AuthSession, SessionView, User
from utils.timezone import now_utc


def _session(**overrides) -> AuthSession:
    now = now_utc()
    fields = dict(
        id=1,
        user_id=7,
        token="a" * 64,
        created_at=now,
        last_seen_at=now,
        expires_at=now + timedelta(days=1),
    )
    fields.update(overrides)
    return AuthSession(**fields)


class TestUser:
    def test_password_hash_excluded_from_dump(self):
        user = User(id=1, email="a@example.com", password_hash="secret", created_at=now_utc())
        assert "password_hash" not in user.model_dump()

    def test_missing_feature_flag_is_off(self):
        user = User(id=1, email="a@example.com", created_at=now_utc(), feature_flags={"beta": True})
        assert user.is_feature_enabled("beta") is True
        assert user.is_feature_enabled("unknown") is False


class TestAuthSession:
    """Active iff not revoked and not yet expired."""

    def test_active_session(self):
        session = _session()
        assert session.is_active(now_utc())
        assert session.status_at(now_utc()) == "active"

    def test_expired_session(self):
        session = _session(expires_at=now_utc() - timedelta(seconds=1))
        assert not session.is_active(now_utc())
        assert session.status_at(now_utc()) == "expired"

    def test_revoked_wins_over_expired(self):
        past = now_utc() - timedelta(days=2)
        session = _session(expires_at=past, revoked_at=past)
        assert session.status_at(now_utc()) == "revoked"

    def test_token_excluded_from_dump(self):
        assert "token" not in _session().model_dump()


class TestSessionView:
    def test_flags_current_session(self):
        view = SessionView.from_session(_session(id=5), now_utc(), current_session_id=5)
        assert view.is_current is True
        assert view.status == "active"

    def test_other_session_not_current(self):
        view = SessionView.from_session(_session(id=5), now_utc(), current_session_id=6)
        assert view.is_current is False

    def test_no_current_session(self):
        assert SessionView.from_session(_session(), now_utc()).is_current is False
