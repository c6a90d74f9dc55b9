"""
Double-submit cookie CSRF protection.

The token lives in an HttpOnly ``csrf_token`` cookie and is also handed to
the client in a JSON body so it can echo it back in ``X-CSRF-Token``. A
state-changing request is accepted only when both copies are present and
identical. Nothing is stored server-side.
"""
import logging
import secrets
import time
from dataclasses import dataclass

from flask import request, jsonify, current_app

from utils.auth_context import current_user
from utils.audit import log_event
from utils.logging_config import sanitize

logger = logging.getLogger(__name__)

CSRF_COOKIE = "csrf_token"
CSRF_HEADER = "X-CSRF-Token"
CSRF_ERROR_CODE = "CSRF_INVALID"
CSRF_TOKEN_BYTES = 32
DEFAULT_TTL_SECONDS = 60 * 60

PROTECTED_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})


@dataclass(frozen=True)
class CsrfToken:
    token: str
    expires_at: int  # epoch millis

    def to_dict(self) -> dict:
        return {"token": self.token, "expiresAt": self.expires_at}


def _ttl_seconds() -> int:
    try:
        return int(current_app.config.get("CSRF_TOKEN_TTL_SECONDS", DEFAULT_TTL_SECONDS))
    except RuntimeError:
        return DEFAULT_TTL_SECONDS


def generate_csrf_token() -> CsrfToken:
    # token_urlsafe is base64url without padding
    token = secrets.token_urlsafe(CSRF_TOKEN_BYTES)
    expires_at = int(time.time() * 1000) + _ttl_seconds() * 1000
    return CsrfToken(token=token, expires_at=expires_at)


def issue_csrf_token(resp, token: str):
    # Host-only cookie: no Domain attribute
    resp.set_cookie(
        CSRF_COOKIE,
        token,
        max_age=_ttl_seconds(),
        httponly=True,
        secure=current_app.config.get("SESSION_COOKIE_SECURE", False),
        samesite="Strict",
        path="/",
    )
    return resp


def clear_csrf_cookie(resp):
    resp.delete_cookie(CSRF_COOKIE, path="/", httponly=True, samesite="Strict")
    return resp


def constant_time_equals(a: str, b: str) -> bool:
    """Compare two tokens without leaking how many leading bytes matched."""
    a_bytes = a.encode("utf-8")
    b_bytes = b.encode("utf-8")
    if len(a_bytes) != len(b_bytes):
        return False

    diff = 0
    for x, y in zip(a_bytes, b_bytes):
        diff |= x ^ y
    return diff == 0


def csrf_enforced() -> bool:
    return bool(current_app.config.get("ENFORCE_CSRF", True))


def verify_csrf_token() -> bool:
    if not csrf_enforced():
        logger.warning("CSRF enforcement disabled; accepting %s %s unchecked", request.method, sanitize(request.path))
        return True

    header_token = request.headers.get(CSRF_HEADER)
    cookie_token = request.cookies.get(CSRF_COOKIE)

    if not header_token or not cookie_token:
        logger.debug("CSRF: missing token in header or cookie")
        return False

    if not constant_time_equals(header_token, cookie_token):
        logger.debug("CSRF: token mismatch")
        return False

    return True


def csrf_failure():
    """
    Returns an error response for a state-changing request that must not
    reach its handler, or None to let it through.
    """
    if request.method not in PROTECTED_METHODS:
        return None

    user = current_user()
    if user is None:
        return jsonify(error="Unauthorized"), 401

    if verify_csrf_token():
        return None

    logger.warning(
        "CSRF validation failed: method=%s url=%s user=%s",
        request.method, sanitize(request.url), sanitize(user.username),
    )
    log_event("CSRF_REJECTED", user_id=user.id, metadata={"method": request.method, "path": request.path})
    return jsonify(
        error="Invalid CSRF token. Please refresh the page and try again.",
        code=CSRF_ERROR_CODE,
    ), 403
