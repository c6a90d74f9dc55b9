from datetime import datetime, timedelta

from models.session import Session

NOW = datetime(2026, 3, 1, 12, 0, 0)
IDLE = 3600


def _session(**overrides):
    values = dict(
        created_at=NOW - timedelta(minutes=10),
        last_seen_at=NOW - timedelta(minutes=5),
        expires_at=NOW + timedelta(days=1),
        revoked=False,
    )
    values.update(overrides)
    return Session(**values)


def test_fresh_session_is_usable():
    assert _session().is_usable(NOW, IDLE) is True


def test_revoked_session_is_not_usable():
    assert _session(revoked=True).is_usable(NOW, IDLE) is False


def test_expired_session_is_not_usable():
    assert _session(expires_at=NOW).is_usable(NOW, IDLE) is False


def test_idle_session_is_not_usable():
    assert _session(last_seen_at=NOW - timedelta(seconds=IDLE)).is_usable(NOW, IDLE) is False


def test_falls_back_to_created_at():
    assert _session(last_seen_at=None).is_usable(NOW, IDLE) is True


def test_revoked_cookie_no_longer_authenticates(client, logged_in_client):
    token = client.get("/api/auth/csrf-token").get_json()["token"]
    client.post("/api/auth/logout", headers={"X-CSRF-Token": token})

    assert client.get("/api/auth/csrf-token").status_code == 401
