import logging

from flask import Flask, request

from config import Config
from routes import health_bp, auth_bp

from models import db
from flask_migrate import Migrate
from utils.auth_context import load_current_user
from utils.logging_config import configure_logging
from security.csrf import csrf_failure

logger = logging.getLogger(__name__)

# Anonymous bootstrap endpoints: no session exists yet, so there is nothing to forge
CSRF_EXEMPT_PATHS = {
    "/api/auth/login",
    "/health",
}


def create_app(config_object=Config):
    app = Flask(__name__)
    app.config.from_object(config_object)

    configure_logging(app)
    if not app.config.get("ENFORCE_CSRF", True):
        level = logging.ERROR if app.config.get("IS_PRODUCTION") else logging.WARNING
        logger.log(level, "CSRF enforcement is DISABLED (ENFORCE_CSRF=false); every mutating request is accepted")

    # Register routes
    app.register_blueprint(health_bp)
    app.register_blueprint(auth_bp)

    # Database init
    db.init_app(app)

    # Migrations
    Migrate(app, db)

    @app.before_request
    def _load_user():
        load_current_user()

    @app.before_request
    def _csrf_protect():
        if request.path in CSRF_EXEMPT_PATHS:
            return None
        return csrf_failure()

    @app.after_request
    def add_security_headers(resp):
        resp.headers["X-Content-Type-Options"] = "nosniff"
        resp.headers["X-Frame-Options"] = "DENY"
        resp.headers["Referrer-Policy"] = "no-referrer"
        resp.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none';"
        return resp

    register_cli(app)

    return app

#-------------------------
import click
from sqlalchemy import func
from models.user import User
from security.bruteforce import cleanup_old_attempts
from security.password import hash_password


def register_cli(app):
    @app.cli.command("create-user")
    @click.argument("username")
    @click.argument("email", required=False)
    @click.password_option()
    def create_user(username, email, password):
        """Create a login account (bootstrap)."""
        username = username.strip()
        if User.query.filter(func.lower(User.username) == username.lower()).first():
            click.echo(f"User {username} already exists", err=True)
            raise SystemExit(1)

        try:
            password_hash = hash_password(password)
        except ValueError as e:
            click.echo(str(e), err=True)
            raise SystemExit(1)

        db.session.add(User(username=username, email=email, password_hash=password_hash))
        db.session.commit()
        click.echo(f"Created user {username}")

    @app.cli.command("cleanup-login-attempts")
    def cleanup_login_attempts():
        """Delete stale, unlocked login attempt records."""
        removed = cleanup_old_attempts()
        click.echo(f"Removed {removed} login attempt record(s)")

#-------------------------


if __name__ == "__main__":
    app = create_app()
    # Run locally
    app.run(host="127.0.0.1", port=5002)
