# shopedge/tests/conftest.py
import json

import httpx
import pytest
from prometheus_client import CollectorRegistry

from shopedge.config import Settings
from shopedge.identity import IdentityClient

SECRET = "unit-test-session-secret"


class FakeClock:
    def __init__(self, t: float = 1_700_000_000.0):
        self.t = float(t)

    def __call__(self) -> float:
        return self.t

    def advance(self, seconds: float) -> None:
        self.t += seconds


class FakeAuthority:
    """Identity authority stand-in served through httpx.MockTransport."""

    def __init__(self):
        self.calls = []
        self.refresh_status = 200
        self.down = False
        self.refreshed_token = "tok-2"

    def count(self, path: str) -> int:
        return sum(1 for p in self.calls if p == path)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.calls.append(path)
        if self.down:
            raise httpx.ConnectError("authority down", request=request)

        if path == "/auth/login":
            body = json.loads(request.content or b"{}")
            if body.get("password") != "open-sesame":
                return httpx.Response(401, json={"message": "Invalid credentials"})
            return httpx.Response(
                200,
                json={
                    "userId": "u-1",
                    "token": "tok-1",
                    "firstName": "Lina",
                    "lastName": "Adel",
                    "address": "12 Nile St",
                },
            )
        if path == "/auth/refresh":
            if self.refresh_status != 200:
                return httpx.Response(self.refresh_status, json={"message": "refresh refused"})
            return httpx.Response(200, json={"accessToken": self.refreshed_token})
        if path == "/auth/logout":
            return httpx.Response(200, json={})
        return httpx.Response(404)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def authority():
    return FakeAuthority()


@pytest.fixture
def identity(authority):
    return IdentityClient("http://identity.test", timeout=2.0, transport=authority.transport())


@pytest.fixture
def settings():
    return Settings(session_secret=SECRET)


@pytest.fixture
def registry():
    return CollectorRegistry()


@pytest.fixture
def clean_env(monkeypatch):
    import os

    for key in list(os.environ):
        if key.startswith("SHOPEDGE_"):
            monkeypatch.delenv(key, raising=False)
    return monkeypatch
