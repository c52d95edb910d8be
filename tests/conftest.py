"""
pytest configuration and shared fixtures for the Whispr Map tests.

Key concern: tests must not reach a real whisper backend, catalog host or
IP lookup service. We achieve this by:
  1. Pointing every source URL at the fake host ``whispers.test``.
  2. Routing all outbound httpx traffic through an ``httpx.MockTransport``
     backed by FakeWhisperSource (an in-memory stand-in for the backend).
  3. Overriding the get_session_store dependency with a store wired to
     that transport.
"""

import os

import httpx
import pytest
from httpx import ASGITransport, AsyncClient

# Set env vars BEFORE importing the app so Settings picks them up correctly
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("MAP_ACCESS_TOKEN", "test-map-token")
os.environ.setdefault("WHISPERS_URL", "http://whispers.test/whispers")
os.environ.setdefault("CATALOG_SOURCE", "http://whispers.test/catalog.json")
os.environ.setdefault("MEDIA_BASE_URL", "http://media.test/whispers/")


def _raw_whisper(whisper_id, location="40.7,-74.0", data_type="text", **extra):
    """A whisper document shaped like the Go backend's JSON."""
    doc = {
        "_id": whisper_id,
        "Location": location,
        "DataType": data_type,
        "Data": f"whisper {whisper_id}",
        "MaxListens": 5,
        "AmountListens": 0,
        "Emotions": ["joy"],
    }
    doc.update(extra)
    return doc


class FakeWhisperSource:
    """
    In-memory whisper backend + static catalog + IP lookup.

    Tests mutate the public attributes between calls to script what the
    next request sees.
    """

    def __init__(self) -> None:
        self.http_status = 200
        self.envelope: object = {"status": 200, "message": "success", "data": {"data": []}}
        self.catalog: object = []
        self.ip_lookup: object = {"status": "success", "lat": 48.85, "lon": 2.35}
        self.requests: list[httpx.Request] = []
        self.transport = httpx.MockTransport(self._handle)

    def set_whispers(self, items) -> None:
        self.http_status = 200
        self.envelope = {"status": 200, "message": "success", "data": {"data": list(items)}}

    def fail(self, http_status: int = 500) -> None:
        self.http_status = http_status

    def whisper_requests(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path == "/whispers"]

    def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == "/whispers":
            if self.http_status >= 400:
                return httpx.Response(self.http_status, text="backend unavailable")
            return httpx.Response(self.http_status, json=self.envelope)
        if path == "/catalog.json":
            return httpx.Response(200, json=self.catalog)
        if path == "/ip":
            return httpx.Response(200, json=self.ip_lookup)
        return httpx.Response(404, text="not found")


def _make_record(whisper_id, lat=1.0, lng=1.0, **extra):
    from whispr.models.whisper import Coordinate, WhisperKind, WhisperRecord

    fields = {
        "id": whisper_id,
        "raw_location": f"{lat},{lng}",
        "kind": WhisperKind.TEXT,
        "body": f"body of {whisper_id}",
        "listen_cap": 5,
        "position": Coordinate(latitude=lat, longitude=lng),
    }
    fields.update(extra)
    return WhisperRecord(**fields)


@pytest.fixture()
def raw_whisper():
    """Factory fixture: raw_whisper("id", location="1,2", DataType=...)."""
    return _raw_whisper


@pytest.fixture()
def make_record():
    """Factory fixture for already-normalized WhisperRecords."""
    return _make_record


@pytest.fixture()
def defaults():
    from whispr.models.whisper import Coordinate
    from whispr.services.reconciler import MapDefaults

    return MapDefaults(center=Coordinate(latitude=51, longitude=49), zoom=10)


@pytest.fixture()
def empty_state(defaults):
    from whispr.services.reconciler import initial_state

    return initial_state(defaults, map_token="test-map-token")


@pytest.fixture()
def source():
    return FakeWhisperSource()


@pytest.fixture(autouse=True)
def reset_rate_limit():
    """Rate-limit counters must not bleed from one test into the next."""
    from whispr.core.rate_limit import limiter

    limiter.reset()
    yield


@pytest.fixture()
def store(source):
    from whispr.core.sessions import SessionStore

    s = SessionStore(transport=source.transport)
    yield s
    s.close_all()


@pytest.fixture()
async def client(store):
    """
    HTTPX async test client wired to the FastAPI app.

    Usage:
        async def test_something(client):
            response = await client.get("/health")
            assert response.status_code == 200
    """
    from whispr.core.sessions import get_session_store
    from whispr.main import app

    app.dependency_overrides[get_session_store] = lambda: store
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
