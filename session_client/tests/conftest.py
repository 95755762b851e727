"""
Pytest configuration for session_client. In-memory SQLite so tests don't touch the
filesystem; a fake marketplace API behind httpx.MockTransport; a controllable clock.
"""
import asyncio
import base64
import inspect
import json
import os

os.environ["SESSION_DATABASE_URL"] = "sqlite:///:memory:"

import httpx
import jwt
import pytest

from session_client.config import LOGIN_PATH, REFRESH_TOKEN_PATH
from session_client.credential_store import InMemoryCredentialStore
from session_client.session import SessionContext

BASE_URL = "https://api.test"
_SIGNING_SECRET = "test-signing-secret-not-used-by-the-client"


def make_jwt(exp: int | None, /, **claims) -> str:
    payload = {"sub": "user-1", **claims}
    if exp is not None:
        payload["exp"] = exp
    return jwt.encode(payload, _SIGNING_SECRET, algorithm="HS256")


def _b64(raw: str) -> str:
    return base64.urlsafe_b64encode(raw.encode()).rstrip(b"=").decode()


def make_raw_jwt(payload_json: str) -> str:
    """Token whose payload segment is the given JSON text verbatim (e.g. an exp of 1e999)."""
    header = _b64('{"alg":"HS256","typ":"JWT"}')
    return f"{header}.{_b64(payload_json)}.c2ln"


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeBackend:
    """Marketplace API double: refresh-token and login endpoints plus ad-hoc routes."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.refresh_calls = 0
        self.refresh_status = 200
        self.refresh_body = None  # overrides the success envelope when set
        self.refresh_delay = 0.0
        self.rotate_refresh = False
        self.access_ttl = 3600
        self.refresh_tokens_seen: list[str] = []
        self.routes = {}
        self.requests: list[httpx.Request] = []

    def route(self, method: str, path: str, handler) -> None:
        self.routes[(method, path)] = handler

    def login_response(self, access_ttl: int = 3600, refresh_token: str = "opaque-refresh-token-abc123") -> dict:
        now = int(self.clock())
        return {
            "is_success": True,
            "status_code": 200,
            "message": "Login successful",
            "data": {
                "accessToken": make_jwt(now + access_ttl, email="tho@example.com", fullName="Nguyen Van Tho", isVerify=True),
                "refreshToken": refresh_token,
                "id": "user-1",
            },
        }

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == REFRESH_TOKEN_PATH:
            return await self._refresh(request)
        handler = self.routes.get((request.method, request.url.path))
        if handler is None:
            return httpx.Response(404, json={"message": "Not found"})
        response = handler(request)
        if inspect.isawaitable(response):
            response = await response
        return response

    async def _refresh(self, request: httpx.Request) -> httpx.Response:
        self.refresh_calls += 1
        call = self.refresh_calls
        self.refresh_tokens_seen.append(json.loads(request.content)["refreshToken"])
        if self.refresh_delay:
            await asyncio.sleep(self.refresh_delay)
        if self.refresh_status != 200:
            return httpx.Response(self.refresh_status, json={"message": "Invalid refresh token"})
        if self.refresh_body is not None:
            return httpx.Response(200, json=self.refresh_body)
        data = {"accessToken": make_jwt(int(self.clock()) + self.access_ttl, jti=f"renewed-{call}")}
        if self.rotate_refresh:
            data["refreshToken"] = f"rotated-refresh-{call}"
        return httpx.Response(200, json={"is_success": True, "status_code": 200, "message": "OK", "data": data})

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))

    def calls_to(self, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path == path]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def backend(clock):
    return FakeBackend(clock)


@pytest.fixture
def store():
    return InMemoryCredentialStore()


@pytest.fixture
def session(store, backend, clock):
    """Session wired to the fake backend; short grace window and timer period for tests."""
    return SessionContext.create(
        store,
        backend.client(),
        base_url=BASE_URL,
        grace_seconds=0.05,
        proactive_interval_seconds=0.02,
        clock=clock,
    )


@pytest.fixture
def token_factory():
    return make_jwt


@pytest.fixture
def raw_token_factory():
    return make_raw_jwt


@pytest.fixture
def logged_in_tokens(clock):
    """(access, refresh) as a fresh login would store them: access valid 3600s, opaque refresh."""
    return make_jwt(int(clock()) + 3600), "opaque-refresh-token-abc123"


@pytest.fixture
def login_route(backend):
    backend.route("POST", LOGIN_PATH, lambda request: httpx.Response(200, json=backend.login_response()))
    return backend
