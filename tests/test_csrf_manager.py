"""Client-side CSRF token manager: caching, backoff and retry-once."""
import httpx
import pytest

from client.csrf_manager import (
    CsrfTokenError,
    CsrfTokenManager,
    backoff_ms,
    is_csrf_rejection,
)
from conftest import PASSWORD

BASE_URL = "http://testserver"
HOUR_MS = 3_600_000


class ManualClock:
    def __init__(self, seconds=1_000_000.0):
        self.seconds = seconds
        self.sleeps = []

    def __call__(self):
        return self.seconds

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.seconds += seconds


class FakeServer:
    """Token endpoint plus a mutating endpoint that checks X-CSRF-Token."""

    def __init__(self, clock):
        self.clock = clock
        self.issued = []
        self.token_status = 200
        self.accept = True
        self.sent_headers = []

    def __call__(self, request):
        if request.url.path == "/api/auth/csrf-token":
            if self.token_status != 200:
                return httpx.Response(self.token_status, json={"error": "nope"})
            token = f"token-{len(self.issued) + 1}"
            self.issued.append(token)
            return httpx.Response(200, json={"token": token, "expiresAt": int(self.clock() * 1000) + HOUR_MS})

        header = request.headers.get("X-CSRF-Token")
        self.sent_headers.append(header)
        if self.accept and header == (self.issued[-1] if self.issued else None):
            return httpx.Response(200, json={"ok": True})
        return httpx.Response(403, json={"error": "Invalid CSRF token.", "code": "CSRF_INVALID"})


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def server(clock):
    return FakeServer(clock)


@pytest.fixture
def manager(server, clock):
    http = httpx.Client(base_url=BASE_URL, transport=httpx.MockTransport(server))
    mgr = CsrfTokenManager(http=http, clock=clock, sleep=clock.sleep)
    yield mgr
    http.close()


def test_backoff_schedule():
    assert backoff_ms(0) == 1_000
    assert backoff_ms(1) == 2_000
    assert backoff_ms(4) == 16_000
    assert backoff_ms(5) == 30_000
    assert backoff_ms(20) == 30_000


def test_token_is_cached(manager, server):
    assert manager.get_token() == "token-1"
    assert manager.get_token() == "token-1"
    assert server.issued == ["token-1"]


def test_token_refetched_inside_expiry_margin(manager, server, clock):
    manager.get_token()

    clock.seconds += 3600 - 61
    assert manager.get_token() == "token-1"

    clock.seconds += 2
    assert manager.get_token() == "token-2"


def test_fetch_failure_raises_and_counts(manager, server):
    server.token_status = 500

    with pytest.raises(CsrfTokenError) as excinfo:
        manager.get_token()

    assert excinfo.value.status_code == 500
    assert manager.failed_attempts == 1
    assert manager.token is None


def test_backoff_waits_between_failed_fetches(manager, server, clock):
    server.token_status = 503
    with pytest.raises(CsrfTokenError):
        manager.get_token()

    clock.seconds += 0.5
    with pytest.raises(CsrfTokenError):
        manager.get_token()

    assert clock.sleeps == [pytest.approx(1.5)]
    assert manager.failed_attempts == 2


def test_success_resets_failure_counter(manager, server, clock):
    server.token_status = 503
    for _ in range(3):
        with pytest.raises(CsrfTokenError):
            manager.get_token()

    server.token_status = 200
    assert manager.get_token() == "token-1"
    assert manager.failed_attempts == 0
    # waited 2s, 4s, then 8s before the successful fetch
    assert clock.sleeps == [pytest.approx(2.0), pytest.approx(4.0), pytest.approx(8.0)]


def test_no_wait_once_backoff_elapsed(manager, server, clock):
    server.token_status = 503
    with pytest.raises(CsrfTokenError):
        manager.get_token()

    clock.seconds += 5
    server.token_status = 200
    manager.get_token()
    assert clock.sleeps == []


def test_transport_error_is_wrapped(clock):
    def broken(request):
        raise httpx.ConnectError("connection refused", request=request)

    http = httpx.Client(base_url=BASE_URL, transport=httpx.MockTransport(broken))
    mgr = CsrfTokenManager(http=http, clock=clock, sleep=clock.sleep)

    with pytest.raises(CsrfTokenError) as excinfo:
        mgr.get_token()

    assert isinstance(excinfo.value.__cause__, httpx.ConnectError)
    assert mgr.failed_attempts == 1


def test_malformed_token_response(clock):
    http = httpx.Client(base_url=BASE_URL, transport=httpx.MockTransport(lambda r: httpx.Response(200, json={})))
    mgr = CsrfTokenManager(http=http, clock=clock, sleep=clock.sleep)

    with pytest.raises(CsrfTokenError):
        mgr.get_token()


def test_request_attaches_header(manager, server):
    resp = manager.post("/api/messages/send", json={"body": "hi"}, headers={"X-Trace": "1"})

    assert resp.status_code == 200
    assert server.sent_headers == ["token-1"]


def test_csrf_rejection_refreshes_and_retries_once(manager, server):
    manager.token = "expired"
    manager.expires_at = 10**15

    resp = manager.post("/api/messages/send", json={})

    assert resp.status_code == 200
    assert server.sent_headers == ["expired", "token-1"]
    assert manager.token == "token-1"


def test_second_rejection_is_returned_as_is(manager, server):
    server.accept = False

    resp = manager.delete("/api/contacts/1")

    assert resp.status_code == 403
    assert resp.json()["code"] == "CSRF_INVALID"
    assert server.sent_headers == ["token-1", "token-2"]


def test_plain_403_is_not_retried(clock):
    sent = []

    def handler(request):
        if request.url.path == "/api/auth/csrf-token":
            return httpx.Response(200, json={"token": "t", "expiresAt": int(clock() * 1000) + HOUR_MS})
        sent.append(request)
        return httpx.Response(403, json={"error": "Forbidden"})

    http = httpx.Client(base_url=BASE_URL, transport=httpx.MockTransport(handler))
    mgr = CsrfTokenManager(http=http, clock=clock, sleep=clock.sleep)

    assert mgr.put("/api/contacts/1", json={}).status_code == 403
    assert len(sent) == 1


def test_refresh_failure_propagates(manager, server):
    server.accept = False
    manager.get_token()
    server.token_status = 500

    with pytest.raises(CsrfTokenError):
        manager.patch("/api/contacts/1", json={})


@pytest.mark.parametrize("status, body, expected", [
    (403, {"code": "CSRF_INVALID"}, True),
    (403, {"error": "CSRF validation failed"}, True),
    (403, {"error": "Forbidden"}, False),
    (401, {"code": "CSRF_INVALID"}, False),
])
def test_is_csrf_rejection(status, body, expected):
    assert is_csrf_rejection(httpx.Response(status, json=body)) is expected


def test_is_csrf_rejection_with_non_json_body():
    assert is_csrf_rejection(httpx.Response(403, text="<html>forbidden</html>")) is False


def test_end_to_end_against_app(app, user):
    http = httpx.Client(base_url=BASE_URL, transport=httpx.WSGITransport(app=app))
    manager = CsrfTokenManager(http=http)
    try:
        assert http.post("/api/auth/login", json={"username": "alice", "password": PASSWORD}).status_code == 200

        # the browser holds a valid cookie but the request carries no header
        http.get("/api/auth/csrf-token")
        rejected = http.post("/api/test/echo", json={"n": 1})
        assert rejected.status_code == 403
        assert rejected.json()["code"] == "CSRF_INVALID"

        # the manager's cached token is stale relative to the cookie
        manager.token = "stale-token"
        manager.expires_at = 10**15
        resp = manager.post("/api/test/echo", json={"n": 1})

        assert resp.status_code == 200
        assert resp.json() == {"method": "POST", "body": {"n": 1}}
        assert manager.token != "stale-token"
    finally:
        http.close()
