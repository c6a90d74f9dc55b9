import os

BASE_DIR = os.path.abspath(os.path.dirname(__file__))


def _engine_options(database_url: str, timeout_seconds: int) -> dict:
    # Bound every store round-trip so a stuck database fails the request
    if database_url.startswith("sqlite"):
        return {"connect_args": {"timeout": timeout_seconds}}
    if database_url.startswith("postgresql"):
        return {
            "pool_pre_ping": True,
            "connect_args": {
                "connect_timeout": timeout_seconds,
                "options": f"-c statement_timeout={timeout_seconds * 1000}",
            },
        }
    return {"pool_pre_ping": True}


class Config:
    # Secrets
    SECRET_KEY = os.getenv("SECRET_KEY", "dev-only-change-me")

    APP_ENV = os.getenv("APP_ENV", "development")
    IS_PRODUCTION = APP_ENV == "production"

    # SQLite database file stored next to the app as birdtext.db
    SQLALCHEMY_DATABASE_URI = os.getenv(
        "DATABASE_URL",
        "sqlite:///" + os.path.join(BASE_DIR, "birdtext.db")
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    DB_TIMEOUT_SECONDS = int(os.getenv("DB_TIMEOUT_SECONDS", "5"))
    SQLALCHEMY_ENGINE_OPTIONS = _engine_options(SQLALCHEMY_DATABASE_URI, DB_TIMEOUT_SECONDS)

    # Session cookie name for our auth token
    AUTH_COOKIE_NAME = "session"
    # Flask's own signed-cookie session is unused; keep it off the auth cookie name
    SESSION_COOKIE_NAME = "birdtext_flask"

    # 30 days session lifetime
    SESSION_LIFETIME_SECONDS = 30 * 24 * 60 * 60

    # Idle timeout: 7 days
    IDLE_TIMEOUT_SECONDS = 7 * 24 * 60 * 60

    # Session/cookie security defaults
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = "Lax"
    SESSION_COOKIE_SECURE = IS_PRODUCTION

    # CSRF (double-submit cookie). Only the literal "false" turns enforcement off.
    ENFORCE_CSRF = os.getenv("ENFORCE_CSRF", "true").strip().lower() != "false"
    CSRF_TOKEN_TTL_SECONDS = 60 * 60

    # Brute-force protection: (max failures, window minutes, lock minutes),
    # most severe first
    LOGIN_LOCKOUT_TIERS = (
        (20, 24 * 60, 24 * 60),
        (10, 60, 60),
        (5, 15, 15),
    )
    LOGIN_ATTEMPT_RETENTION_HOURS = 24

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

    # Basic app settings
    DEBUG = False


class TestingConfig(Config):
    TESTING = True
    SECRET_KEY = "test-secret"
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    SQLALCHEMY_ENGINE_OPTIONS = _engine_options("sqlite://", 5)
    SESSION_COOKIE_SECURE = False
    ENFORCE_CSRF = True
    IS_PRODUCTION = False
    APP_ENV = "testing"
    LOG_LEVEL = "DEBUG"
