"""
CSRF token manager for API clients.

Caches the token handed out by ``GET /api/auth/csrf-token``, refreshes it
shortly before it expires and attaches it as ``X-CSRF-Token`` to every
request. When the server rejects a request with ``code: CSRF_INVALID`` the
token is refreshed and the request is sent exactly once more.

Cookies (session and ``csrf_token``) live on the underlying
``httpx.Client``, so they are always sent along.
"""
import logging
import time

import httpx

logger = logging.getLogger(__name__)

CSRF_HEADER = "X-CSRF-Token"
CSRF_ERROR_CODE = "CSRF_INVALID"
DEFAULT_TOKEN_PATH = "/api/auth/csrf-token"

# Stale this long before the real expiry
EXPIRY_MARGIN_MS = 60_000
BACKOFF_BASE_MS = 1_000
BACKOFF_MAX_MS = 30_000


class CsrfTokenError(Exception):
    """Raised when a fresh CSRF token could not be obtained."""

    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.status_code = status_code


def backoff_ms(failed_attempts: int) -> int:
    return min(BACKOFF_BASE_MS * (2 ** failed_attempts), BACKOFF_MAX_MS)


def is_csrf_rejection(response: httpx.Response) -> bool:
    if response.status_code != 403:
        return False
    try:
        data = response.json()
    except ValueError:
        return False
    if not isinstance(data, dict):
        return False
    error = data.get("error")
    return data.get("code") == CSRF_ERROR_CODE or (isinstance(error, str) and "CSRF" in error)


class CsrfTokenManager:
    def __init__(
        self,
        base_url: str = "",
        token_path: str = DEFAULT_TOKEN_PATH,
        http: httpx.Client | None = None,
        timeout: float = 10.0,
        clock=time.time,
        sleep=time.sleep,
    ):
        self._owns_http = http is None
        self.http = http or httpx.Client(base_url=base_url, timeout=timeout)
        self.token_path = token_path
        self.timeout = timeout
        self._clock = clock
        self._sleep = sleep

        self.token: str | None = None
        self.expires_at: int | None = None
        self.failed_attempts = 0
        self.last_attempt_ms = 0

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _cached_token(self) -> str | None:
        if self.token and self.expires_at and self._now_ms() < self.expires_at - EXPIRY_MARGIN_MS:
            return self.token
        return None

    def _wait_for_backoff(self):
        if self.failed_attempts <= 0:
            return
        elapsed = self._now_ms() - self.last_attempt_ms
        wait_ms = backoff_ms(self.failed_attempts) - elapsed
        if wait_ms > 0:
            logger.warning("CSRF: rate limited, waiting %.1fs before retry", wait_ms / 1000)
            self._sleep(wait_ms / 1000)

    def _fail(self, message, status_code=None) -> CsrfTokenError:
        self.failed_attempts += 1
        logger.error("CSRF token fetch failed (attempt %d): %s", self.failed_attempts, message)
        return CsrfTokenError(message, status_code=status_code)

    def get_token(self) -> str:
        cached = self._cached_token()
        if cached:
            return cached

        self._wait_for_backoff()
        self.last_attempt_ms = self._now_ms()

        try:
            response = self.http.get(self.token_path, timeout=self.timeout)
        except httpx.HTTPError as exc:
            raise self._fail(f"Failed to fetch CSRF token: {exc}") from exc

        if not response.is_success:
            raise self._fail(
                f"Failed to fetch CSRF token (status: {response.status_code})",
                status_code=response.status_code,
            )

        try:
            data = response.json()
            token = data["token"]
            expires_at = int(data["expiresAt"])
        except (ValueError, KeyError, TypeError) as exc:
            raise self._fail(f"Malformed CSRF token response: {exc}") from exc

        self.token = token
        self.expires_at = expires_at
        self.failed_attempts = 0
        return token

    def refresh_token(self) -> str:
        self.token = None
        self.expires_at = None
        return self.get_token()

    def _send(self, method, url, token, headers, kwargs) -> httpx.Response:
        headers = dict(headers or {})
        headers[CSRF_HEADER] = token
        return self.http.request(method, url, headers=headers, **kwargs)

    def request(self, method: str, url: str, headers=None, **kwargs) -> httpx.Response:
        """
        Send *method* to *url* with the CSRF header attached. A CSRF rejection
        triggers one token refresh and one resend; whatever the resend returns
        is handed back unchanged.
        """
        response = self._send(method, url, self.get_token(), headers, kwargs)
        if not is_csrf_rejection(response):
            return response

        logger.info("CSRF token rejected for %s %s, refreshing", method, url)
        token = self.refresh_token()
        return self._send(method, url, token, headers, kwargs)

    def post(self, url, **kwargs):
        return self.request("POST", url, **kwargs)

    def put(self, url, **kwargs):
        return self.request("PUT", url, **kwargs)

    def patch(self, url, **kwargs):
        return self.request("PATCH", url, **kwargs)

    def delete(self, url, **kwargs):
        return self.request("DELETE", url, **kwargs)

    def close(self):
        if self._owns_http:
            self.http.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
