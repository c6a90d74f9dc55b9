"""
Store-backed brute-force protection for the login endpoint.

Failed attempts are counted per identifier (lower-cased username or client
IP) in the ``login_attempts`` table so every worker process sees the same
counters. Lockouts escalate with failure volume:

* 5 failures in 15 minutes  -> locked for 15 minutes
* 10 failures in 1 hour     -> locked for 1 hour
* 20 failures in 24 hours   -> locked for 24 hours (security alert)

A single ``window_start``/``attempt_count`` pair feeds all three windows:
the count applies to every window that ``window_start`` still falls into.
"""
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy import or_
from sqlalchemy.dialects import postgresql, sqlite

from models import db
from models.login_attempt import LoginAttempt, IDENTIFIER_TYPES, IDENTIFIER_USERNAME
from utils.logging_config import sanitize
from utils.timeutil import utcnow, epoch_millis

logger = logging.getLogger(__name__)
security_log = logging.getLogger("security")

# (max failures, window minutes, lock minutes), most severe first
DEFAULT_LOCKOUT_TIERS = (
    (20, 24 * 60, 24 * 60),
    (10, 60, 60),
    (5, 15, 15),
)
DEFAULT_RETENTION_HOURS = 24
ALERT_LOCK_MINUTES = 24 * 60

REASON_LOCKED = "account_locked"
REASON_RATE_LIMIT = "rate_limit_exceeded"

_DIALECT_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


@dataclass
class LoginCheck:
    allowed: bool
    reason: str | None = None
    unlock_time: datetime | None = None
    minutes_remaining: int | None = None
    attempts: int | None = None
    lock_reason: str | None = None

    def to_dict(self) -> dict:
        data = {"allowed": self.allowed}
        if self.reason is not None:
            data["reason"] = self.reason
        if self.unlock_time is not None:
            data["unlockTime"] = epoch_millis(self.unlock_time)
        if self.minutes_remaining is not None:
            data["minutesRemaining"] = self.minutes_remaining
        if self.attempts is not None:
            data["attempts"] = self.attempts
        if self.lock_reason is not None:
            data["lockReason"] = self.lock_reason
        return data


def normalize_identifier(identifier: str, identifier_type: str) -> str:
    if identifier_type not in IDENTIFIER_TYPES:
        raise ValueError(f"Unknown identifier type: {identifier_type!r}")
    if not isinstance(identifier, str) or not identifier.strip():
        raise ValueError("Identifier must be a non-empty string")
    identifier = identifier.strip()
    if identifier_type == IDENTIFIER_USERNAME:
        return identifier.lower()
    return identifier


def _lockout_tiers():
    return current_app.config.get("LOGIN_LOCKOUT_TIERS", DEFAULT_LOCKOUT_TIERS)


def _describe_minutes(minutes: int) -> str:
    if minutes % 60 == 0:
        hours = minutes // 60
        return f"{hours} hour" if hours == 1 else f"{hours} hours"
    return f"{minutes} minute" if minutes == 1 else f"{minutes} minutes"


def _minutes_until(moment: datetime, now: datetime) -> int:
    return math.ceil((moment - now).total_seconds() / 60)


def _find(identifier: str, identifier_type: str):
    return LoginAttempt.query.filter_by(identifier=identifier, identifier_type=identifier_type)


def check_login_attempt(identifier: str, identifier_type: str = "ip") -> LoginCheck:
    """
    Decide whether a login attempt for *identifier* may proceed.

    The only write performed here is setting ``locked_until`` when a
    threshold is crossed.
    """
    identifier = normalize_identifier(identifier, identifier_type)
    now = utcnow()

    locked = (
        _find(identifier, identifier_type)
        .filter(LoginAttempt.locked_until > now)
        .order_by(LoginAttempt.locked_until.desc())
        .first()
    )
    if locked:
        return LoginCheck(
            allowed=False,
            reason=REASON_LOCKED,
            unlock_time=locked.locked_until,
            minutes_remaining=_minutes_until(locked.locked_until, now),
            attempts=locked.attempt_count,
        )

    row = _find(identifier, identifier_type).first()
    if not row:
        return LoginCheck(allowed=True)

    count = row.attempt_count or 0
    for max_failures, window_minutes, lock_minutes in _lockout_tiers():
        in_window = row.window_start > now - timedelta(minutes=window_minutes)
        if not in_window or count < max_failures:
            continue

        lock_until = now + timedelta(minutes=lock_minutes)
        lock_reason = f"{max_failures}+ attempts in {_describe_minutes(window_minutes)}"

        # never pull an existing lock earlier
        (
            _find(identifier, identifier_type)
            .filter(or_(LoginAttempt.locked_until.is_(None), LoginAttempt.locked_until < lock_until))
            .update({LoginAttempt.locked_until: lock_until}, synchronize_session=False)
        )
        db.session.commit()

        if lock_minutes >= ALERT_LOCK_MINUTES:
            security_log.critical(
                "SECURITY ALERT: %d failed login attempts from %s=%s in %s",
                count, identifier_type, sanitize(identifier), _describe_minutes(window_minutes),
            )
        logger.warning(
            "Login locked: %s=%s reason=%s until=%s",
            identifier_type, sanitize(identifier), lock_reason, lock_until.isoformat(),
        )
        return LoginCheck(
            allowed=False,
            reason=REASON_RATE_LIMIT,
            unlock_time=lock_until,
            minutes_remaining=_minutes_until(lock_until, now),
            attempts=count,
            lock_reason=lock_reason,
        )

    return LoginCheck(allowed=True)


def record_failed_attempt(identifier: str, identifier_type: str = "ip") -> None:
    """Insert-or-increment the failure row in one statement."""
    identifier = normalize_identifier(identifier, identifier_type)
    now = utcnow()

    dialect = db.engine.dialect.name
    insert = _DIALECT_INSERTS.get(dialect)
    if insert is None:
        raise NotImplementedError(f"No atomic upsert for database dialect {dialect!r}")

    stmt = insert(LoginAttempt).values(
        identifier=identifier,
        identifier_type=identifier_type,
        attempt_count=1,
        window_start=now,
        last_attempt=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["identifier", "identifier_type"],
        set_={
            "attempt_count": LoginAttempt.attempt_count + 1,
            "last_attempt": now,
        },
    )
    db.session.execute(stmt)
    db.session.commit()

    logger.info("Failed login attempt recorded: %s=%s", identifier_type, sanitize(identifier))


def clear_login_attempts(identifier: str, identifier_type: str = "ip") -> int:
    """Forget all failures for *identifier*. Safe to call when nothing is stored."""
    identifier = normalize_identifier(identifier, identifier_type)
    removed = _find(identifier, identifier_type).delete(synchronize_session=False)
    db.session.commit()

    if removed:
        logger.info("Cleared %d login attempt record(s) for %s=%s", removed, identifier_type, sanitize(identifier))
    return removed


def cleanup_old_attempts() -> int:
    """
    Delete stale rows: window older than the retention period and no active lock.
    Meant for a periodic job, not the request path.
    """
    now = utcnow()
    hours = current_app.config.get("LOGIN_ATTEMPT_RETENTION_HOURS", DEFAULT_RETENTION_HOURS)
    cutoff = now - timedelta(hours=hours)

    removed = (
        LoginAttempt.query
        .filter(LoginAttempt.window_start < cutoff)
        .filter(or_(LoginAttempt.locked_until.is_(None), LoginAttempt.locked_until < now))
        .delete(synchronize_session=False)
    )
    db.session.commit()

    if removed:
        logger.info("Cleaned up %d old login attempt record(s)", removed)
    return removed
