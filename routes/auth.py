import logging

from flask import Blueprint, request, jsonify, g, current_app
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError

from models import db
from models.login_attempt import IDENTIFIER_USERNAME, IDENTIFIER_IP
from models.user import User
from security.bruteforce import check_login_attempt, record_failed_attempt, clear_login_attempts
from security.csrf import generate_csrf_token, issue_csrf_token, clear_csrf_cookie
from security.password import verify_password
from security.session import create_session, revoke_session, session_cookie_name
from utils.audit import log_event
from utils.auth_context import login_required, current_user
from utils.logging_config import sanitize
from utils.request_info import client_ip

logger = logging.getLogger(__name__)

auth_bp = Blueprint("auth", __name__, url_prefix="/api/auth")


def _lockout_message(minutes_remaining) -> str:
    if not minutes_remaining:
        return "Too many failed attempts. Please try again later."
    unit = "minute" if minutes_remaining == 1 else "minutes"
    return f"Too many failed attempts. Try again in {minutes_remaining} {unit}."


def _internal_error():
    db.session.rollback()
    return jsonify(success=False, error="Internal server error"), 500


@auth_bp.post("/login")
def login():
    data = request.get_json(silent=True) or {}
    username = data.get("username")
    password = data.get("password")

    if not isinstance(username, str) or not username.strip() or not isinstance(password, str) or not password:
        return jsonify(success=False, error="Username and password are required"), 400

    username = username.strip()
    ip = client_ip()

    try:
        for identifier, identifier_type in ((username, IDENTIFIER_USERNAME), (ip, IDENTIFIER_IP)):
            check = check_login_attempt(identifier, identifier_type)
            if not check.allowed:
                log_event("LOGIN_LOCKED", metadata={
                    "username": username,
                    "identifier_type": identifier_type,
                    "reason": check.reason,
                    "minutes_remaining": check.minutes_remaining,
                })
                return jsonify(
                    success=False,
                    error=_lockout_message(check.minutes_remaining),
                    retry_after_minutes=check.minutes_remaining,
                    lock_reason=check.lock_reason,
                ), 429

        user = User.query.filter(func.lower(User.username) == username.lower()).first()
        if not verify_password(password, user.password_hash if user else None):
            record_failed_attempt(username, IDENTIFIER_USERNAME)
            record_failed_attempt(ip, IDENTIFIER_IP)
            log_event("LOGIN_FAIL", user_id=user.id if user else None, metadata={"username": username})
            return jsonify(success=False, error="Invalid username or password"), 401

        clear_login_attempts(username, IDENTIFIER_USERNAME)
        clear_login_attempts(ip, IDENTIFIER_IP)

        raw_token = create_session(user.id)
        log_event("LOGIN_SUCCESS", user_id=user.id)
    except SQLAlchemyError:
        logger.exception("Login failed on a database error for user=%s", sanitize(username))
        return _internal_error()

    resp = jsonify(success=True, user=user.to_dict())
    resp.set_cookie(
        session_cookie_name(),
        raw_token,
        httponly=True,
        secure=current_app.config.get("SESSION_COOKIE_SECURE", False),
        samesite=current_app.config.get("SESSION_COOKIE_SAMESITE", "Lax"),
        max_age=current_app.config.get("SESSION_LIFETIME_SECONDS", 30 * 24 * 60 * 60),
        path="/",
    )
    return resp, 200


@auth_bp.post("/logout")
@login_required
def logout():
    cookie_name = session_cookie_name()
    try:
        revoke_session(request.cookies.get(cookie_name))
        log_event("LOGOUT", user_id=g.user.id)
    except SQLAlchemyError:
        logger.exception("Logout failed on a database error")
        return _internal_error()

    resp = jsonify(ok=True, message="Logged out")
    resp.delete_cookie(cookie_name, path="/")
    clear_csrf_cookie(resp)
    return resp, 200


@auth_bp.get("/me")
def me():
    user = current_user()
    if user is None:
        return jsonify(authenticated=False), 200
    return jsonify(authenticated=True, **user.to_dict()), 200


@auth_bp.get("/csrf-token")
@login_required
def csrf_token():
    token = generate_csrf_token()
    resp = jsonify(token.to_dict())
    issue_csrf_token(resp, token.token)
    return resp, 200
