"""
Pytest configuration and shared fixtures.

The app runs on in-memory SQLite with a fakeredis-backed scan queue, so no
database server, broker or network is needed. HTTP targets are served by
FakeSession, which maps URLs to canned requests.Response objects.
"""

from urllib.parse import urljoin

import fakeredis
import pytest
import requests
from requests.structures import CaseInsensitiveDict

from webscan import create_app
from webscan.auth.tokens import create_access_token
from webscan.billing.plans import default_scan_limit
from webscan.extensions import db
from webscan.models import Requester, Scan, now_utc
from webscan.queue import ScanQueue

TEST_CONFIG = {
    "TESTING": True,
    "WEBSCAN_ENV": "development",
    "SECRET_KEY": "test-secret",
    "SQLALCHEMY_DATABASE_URI": "sqlite://",
    "SCHEDULER_ENABLED": False,
    "DAILY_RESET_TZ": "UTC",
    "DUPLICATE_WINDOW_SECONDS": 300,
}


# ---------------------------------------------------------------------------
# Queue
# ---------------------------------------------------------------------------

class FakeClock:
    """Epoch-seconds clock the tests move by hand."""

    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def redis_client():
    client = fakeredis.FakeRedis(decode_responses=True)
    yield client
    client.flushall()


@pytest.fixture
def scan_queue(redis_client, clock):
    return ScanQueue(redis_client, name="test-queue", max_attempts=3, clock=clock)


# ---------------------------------------------------------------------------
# App / DB
# ---------------------------------------------------------------------------

@pytest.fixture
def app(scan_queue):
    app = create_app(TEST_CONFIG, scan_queue=scan_queue)
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_requester(app):
    def _make(requester_id="user-1", plan="free", scan_limit=None):
        requester = Requester(
            id=requester_id,
            email=f"{requester_id}@example.com",
            plan=plan,
            scan_limit=default_scan_limit(plan) if scan_limit is None else scan_limit,
        )
        db.session.add(requester)
        db.session.commit()
        return requester
    return _make


@pytest.fixture
def make_scan(app):
    """Insert a scan row directly, bypassing admission."""
    def _make(url="https://example.com", requester_id=None, status="pending",
              created_at=None, is_public_scan=None, **fields):
        scan = Scan(
            url=url,
            domain=url.split("://", 1)[-1].split("/", 1)[0],
            requester_id=requester_id,
            is_public_scan=(requester_id is None) if is_public_scan is None else is_public_scan,
            status=status,
            created_at=created_at or now_utc(),
            **fields,
        )
        db.session.add(scan)
        db.session.commit()
        return scan
    return _make


@pytest.fixture
def auth_headers(app):
    def _headers(requester_id):
        token = create_access_token(
            secret_key=app.config["SECRET_KEY"], requester_id=requester_id
        )
        return {"Authorization": f"Bearer {token}"}
    return _headers


# ---------------------------------------------------------------------------
# HTTP stubs
# ---------------------------------------------------------------------------

class _RawHeaders:
    def __init__(self, set_cookies):
        self._set_cookies = list(set_cookies)

    def getlist(self, name):
        if name.lower() == "set-cookie":
            return list(self._set_cookies)
        return []


class _Raw:
    def __init__(self, set_cookies):
        self.headers = _RawHeaders(set_cookies)

    def close(self):
        pass

    def release_conn(self):
        pass


def build_response(url, status=200, headers=None, body=b"", set_cookies=()):
    resp = requests.Response()
    resp.url = url
    resp.status_code = status
    resp.headers = CaseInsensitiveDict(headers or {})
    if set_cookies:
        resp.headers["Set-Cookie"] = ", ".join(set_cookies)
    resp._content = body
    resp._content_consumed = True
    resp.raw = _Raw(set_cookies)
    return resp


class FakeSession:
    """
    Stand-in for requests.Session.

    Unknown URLs answer 404. `unreachable=True` makes every request raise
    ConnectionError. With allow_redirects, 3xx responses carrying a Location
    are followed up to `max_redirects`, then TooManyRedirects is raised.
    """

    REDIRECT_STATUSES = (301, 302, 303, 307, 308)

    def __init__(self, unreachable=False):
        self.max_redirects = 30
        self.routes = {}
        self.errors = {}
        self.calls = []
        self.unreachable = unreachable
        self.closed = False

    def add(self, url, **response):
        self.routes[url] = response
        return self

    def raise_for(self, url, exc):
        self.errors[url] = exc
        return self

    def get(self, url, **kwargs):
        self.calls.append((url, kwargs))
        if self.unreachable:
            raise requests.ConnectionError(f"Failed to establish a new connection to {url}")
        hops = 0
        while True:
            if url in self.errors:
                raise self.errors[url]
            route = self.routes.get(url, {"status": 404})
            location = (route.get("headers") or {}).get("Location")
            if not (kwargs.get("allow_redirects", True)
                    and route.get("status") in self.REDIRECT_STATUSES and location):
                return build_response(url, **route)
            if hops >= self.max_redirects:
                raise requests.TooManyRedirects(f"Exceeded {self.max_redirects} redirects.")
            hops += 1
            url = urljoin(url, location)

    def close(self):
        self.closed = True


@pytest.fixture
def http():
    return FakeSession()
