from models.db import db

IDENTIFIER_USERNAME = "username"
IDENTIFIER_IP = "ip"
IDENTIFIER_TYPES = (IDENTIFIER_USERNAME, IDENTIFIER_IP)


class LoginAttempt(db.Model):
    __tablename__ = "login_attempts"
    __table_args__ = (
        # upsert key for record_failed_attempt
        db.UniqueConstraint("identifier", "identifier_type", name="uq_login_attempts_identifier"),
    )

    id = db.Column(db.Integer, primary_key=True)

    # username (lower-cased) or client IP, tracked independently
    identifier = db.Column(db.String(255), nullable=False)
    identifier_type = db.Column(db.String(16), nullable=False)

    attempt_count = db.Column(db.Integer, default=0, nullable=False)
    window_start = db.Column(db.DateTime, nullable=False, index=True)
    last_attempt = db.Column(db.DateTime, nullable=False)
    locked_until = db.Column(db.DateTime, nullable=True, index=True)

    def __repr__(self):
        return f"<LoginAttempt {self.identifier_type}={self.identifier} count={self.attempt_count}>"
