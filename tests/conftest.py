"""
Shared test fixtures for the gateway test suite.

Key fixtures:
- sessions / make_session: an isolated SessionStore and a factory that adds
  sessions to it, standing in for the external session manager
- make_auth_header: "Bearer <token>" strings
- make_catalog / upstream: a fake IntelligenceBank catalog served through
  httpx.MockTransport, recording every upstream request
- gateway: a ResourceGateway wired to the fake upstream
- clock / upload_store: an UploadStore in a temporary directory driven by a
  controllable clock

Testing approach:
- test_cursor.py, test_uris.py, test_auth.py: pure unit tests
- test_resources.py: ResourceGateway against the fake upstream
- test_uploads.py: UploadStore lifecycle, including real timer expiry
- test_server.py: the HTTP surface through httpx.ASGITransport (in-memory,
  no real server needed)
"""

import re
import time
from urllib.parse import unquote

import httpx
import pytest

from ib_gateway.resources import ResourceGateway
from ib_gateway.sessions import AuthSession, IBSession, SessionStatus, SessionStore, SessionTokens
from ib_gateway.upstream import IntelligenceBankClient
from ib_gateway.uploads import UploadStore

TEST_CLIENT_ID = "BnK4JV"
TEST_API_URL = "https://apius.intelligencebank.test"
TEST_PRODUCT_KEY = "test-product-key"

_LIMIT_PATTERN = re.compile(r"/resource\.limit\((\d+),(\d+)\)")


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------
@pytest.fixture
def sessions():
    return SessionStore()


@pytest.fixture
def make_session(sessions):
    """
    Factory fixture that registers a session in the store.

    Usage in tests:
        def test_something(make_session):
            session = make_session(token="abc", sid_expiry=time.time() - 1)
    """

    def _make_session(
        token: str = "test-access-token",
        status: SessionStatus = SessionStatus.COMPLETED,
        sid: str = "test-sid-0123456789",
        sid_expiry: float | None = None,
        client_id: str = TEST_CLIENT_ID,
        api_v3_url: str = TEST_API_URL,
    ) -> AuthSession:
        session = AuthSession(
            session_id=SessionStore.generate_session_id(),
            status=status,
            tokens=SessionTokens(access_token=token),
            ib_session=IBSession(
                sid=sid, client_id=client_id, api_v3_url=api_v3_url, sid_expiry=sid_expiry
            ),
        )
        return sessions.add(session)

    return _make_session


@pytest.fixture
def make_auth_header():
    def _make_auth_header(token: str = "test-access-token") -> str:
        return f"Bearer {token}"

    return _make_auth_header


# ---------------------------------------------------------------------------
# Fake upstream catalog
# ---------------------------------------------------------------------------
def make_record(index: int, **overrides) -> dict:
    """One upstream resource row, in the IntelligenceBank wire shape."""
    record = {
        "_id": f"res-{index:04d}",
        "name": f"Asset {index}",
        "folder": "folder-1",
        "folderPath": [{"_id": "folder-1", "name": "Brand Assets"}],
        "file": {
            "type": "png",
            "name": f"asset-{index}.png",
            "size": 1_258_291,
            "hash": f"hash-{index}",
        },
        "thumbnail": f"https://cdn.intelligencebank.test/thumb/{index}.png",
        "fancyFileType": "PNG Image",
        "fancyFileSize": "1.2 MB",
        "createTime": "2024-01-02T08:00:00Z",
        "lastUpdateTime": "2024-03-05T10:30:00Z",
        "tags": ["logo", "brand"],
        "allowedActions": ["view", "download"],
        "creatorName": "Jo Citizen",
    }
    record.update(overrides)
    return record


@pytest.fixture
def make_catalog():
    def _make_catalog(count: int, **overrides) -> list[dict]:
        return [make_record(i, **overrides) for i in range(count)]

    return _make_catalog


class FakeUpstream:
    """
    Serves a list of records the way the listing endpoint does.

    Attributes:
        records: The full catalog, newest first
        requests: Every request received, for assertions
        status_code: Set to a non-200 value to simulate upstream failures
        payload: Set to override the JSON body returned
    """

    def __init__(self, records: list[dict] | None = None):
        self.records = records or []
        self.requests: list[httpx.Request] = []
        self.status_code = 200
        self.payload = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.status_code != 200:
            return httpx.Response(self.status_code, json={"message": "upstream error"})
        if self.payload is not None:
            return httpx.Response(200, json=self.payload)

        match = _LIMIT_PATTERN.search(unquote(request.url.path))
        offset, limit = int(match.group(1)), int(match.group(2))

        keywords = request.url.params.get("searchParams[keywords]", "")
        rows = [r for r in self.records if keywords.lower() in r["name"].lower()]

        return httpx.Response(
            200,
            json={
                "response": {
                    "rows": rows[offset : offset + limit],
                    "offset": offset,
                    "count": len(rows),
                }
            },
        )

    def window(self, index: int = -1) -> tuple[int, int]:
        """(offset, limit) of a recorded request."""
        match = _LIMIT_PATTERN.search(unquote(self.requests[index].url.path))
        return int(match.group(1)), int(match.group(2))


@pytest.fixture
def upstream():
    return FakeUpstream()


@pytest.fixture
async def http_client(upstream):
    async with httpx.AsyncClient(transport=httpx.MockTransport(upstream)) as client:
        yield client


@pytest.fixture
def gateway(http_client):
    return ResourceGateway(IntelligenceBankClient(http_client, product_key=TEST_PRODUCT_KEY))


# ---------------------------------------------------------------------------
# Upload store
# ---------------------------------------------------------------------------
class FakeClock:
    """A clock that only moves when told to."""

    def __init__(self, start: float | None = None):
        self.now = start if start is not None else time.time()

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
async def upload_store(tmp_path, clock):
    store = UploadStore(upload_dir=tmp_path / "uploads", clock=clock)
    await store.initialize()
    yield store
    await store.cleanup_all()
