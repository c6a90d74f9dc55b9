"""
Shared fixtures: an app on in-memory SQLite, a seeded user, a controllable
clock for the lockout windows and login helpers.
"""
from datetime import datetime, timedelta

import pytest
from flask import jsonify, request

from app import create_app
from config import TestingConfig
from models import db
from models.login_attempt import LoginAttempt
from models.user import User
from security.password import hash_password

PASSWORD = "correct horse battery staple"


class FakeClock:
    def __init__(self, start):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def app():
    app = create_app(TestingConfig)

    # A plain state-changing endpoint guarded by the app-wide CSRF hook
    @app.route("/api/test/echo", methods=["GET", "POST", "PUT", "PATCH", "DELETE"])
    def echo():
        return jsonify(method=request.method, body=request.get_json(silent=True)), 200

    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def clock(monkeypatch):
    clock = FakeClock(datetime(2026, 3, 1, 12, 0, 0))
    monkeypatch.setattr("security.bruteforce.utcnow", clock)
    return clock


@pytest.fixture
def user(app):
    row = User(username="alice", email="alice@example.com", password_hash=hash_password(PASSWORD))
    db.session.add(row)
    db.session.commit()
    return row


@pytest.fixture
def make_user(app):
    def _make(username, password=PASSWORD):
        row = User(username=username, email=f"{username}@example.com", password_hash=hash_password(password))
        db.session.add(row)
        db.session.commit()
        return row
    return _make


def login(client, username, password=PASSWORD, ip="203.0.113.7"):
    return client.post(
        "/api/auth/login",
        json={"username": username, "password": password},
        headers={"X-Forwarded-For": ip},
    )


def attempt_row(identifier, identifier_type):
    db.session.expire_all()
    return LoginAttempt.query.filter_by(identifier=identifier, identifier_type=identifier_type).first()


@pytest.fixture
def logged_in_client(client, user):
    resp = login(client, "alice")
    assert resp.status_code == 200
    return client
