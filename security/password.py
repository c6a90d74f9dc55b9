import bcrypt

# bcrypt only looks at the first 72 bytes and newer releases refuse anything longer
MAX_PASSWORD_BYTES = 72

# Checked against when the username does not exist so both paths pay the bcrypt cost
_DUMMY_HASH = bcrypt.hashpw(b"unused-password", bcrypt.gensalt(rounds=12))


def password_too_long(plain_password: str) -> bool:
    return len(plain_password.encode("utf-8")) > MAX_PASSWORD_BYTES


def hash_password(plain_password: str) -> str:
    if not isinstance(plain_password, str) or len(plain_password) == 0:
        raise ValueError("Password must be a non-empty string")
    if password_too_long(plain_password):
        raise ValueError(f"Password must be at most {MAX_PASSWORD_BYTES} bytes")

    hashed = bcrypt.hashpw(plain_password.encode("utf-8"), bcrypt.gensalt(rounds=12))
    return hashed.decode("utf-8")


def verify_password(plain_password: str, password_hash: str | None) -> bool:
    if not plain_password:
        return False

    candidate = plain_password.encode("utf-8")
    too_long = len(candidate) > MAX_PASSWORD_BYTES
    if too_long or not password_hash:
        # same bcrypt work for unknown users and oversized passwords
        bcrypt.checkpw(candidate[:MAX_PASSWORD_BYTES], _DUMMY_HASH)
        return False
    try:
        return bcrypt.checkpw(candidate, password_hash.encode("utf-8"))
    except ValueError:
        # malformed stored hash
        return False
