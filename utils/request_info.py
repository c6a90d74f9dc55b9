from flask import request


def client_ip() -> str:
    """First hop of X-Forwarded-For, then CF-Connecting-IP, then the socket peer."""
    # Clients can set these headers; deploy behind a proxy that overwrites them
    forwarded = request.headers.get("X-Forwarded-For", "")
    first = forwarded.split(",")[0].strip()
    if first:
        return first
    return request.headers.get("CF-Connecting-IP") or request.remote_addr or "unknown"


def user_agent() -> str | None:
    ua = request.headers.get("User-Agent")
    return ua[:255] if ua else None
