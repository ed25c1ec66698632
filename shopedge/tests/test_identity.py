# shopedge/tests/test_identity.py
import asyncio
import json

import httpx
import pytest

from shopedge.errors import IdentityRejected, SessionExpiredUnrefreshable, UpstreamUnavailable
from shopedge.identity import IdentityClient


def _client(handler):
    return IdentityClient("http://identity.test/", timeout=1.0, transport=httpx.MockTransport(handler))


def _run(client, coro_fn):
    async def go():
        try:
            return await coro_fn(client)
        finally:
            await client.aclose()

    return asyncio.run(go())


def test_login_maps_profile():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"userId": 42, "token": "tok-1", "lastMobileDigit": "89", "firstName": "Omar"})

    profile = _run(_client(handler), lambda c: c.login("01012345689", "secret"))
    assert seen == {"path": "/auth/login", "body": {"mobile": "01012345689", "password": "secret"}}
    assert profile.user_id == "42"
    assert profile.access_token == "tok-1"
    assert profile.mobile == "89"
    assert profile.first_name == "Omar"
    assert profile.address is None


def test_login_rejected():
    def handler(request):
        return httpx.Response(401, json={"message": "Invalid credentials"})

    with pytest.raises(IdentityRejected) as ei:
        _run(_client(handler), lambda c: c.login("010", "bad"))
    assert ei.value.upstream_status == 401
    assert str(ei.value) == "Invalid credentials"


def test_login_server_error_is_upstream_unavailable():
    with pytest.raises(UpstreamUnavailable):
        _run(_client(lambda r: httpx.Response(502)), lambda c: c.login("010", "pw"))


def test_login_response_without_token_is_rejected():
    with pytest.raises(IdentityRejected):
        _run(_client(lambda r: httpx.Response(200, json={"userId": "u"})), lambda c: c.login("010", "pw"))


def test_refresh_sends_bearer_and_accepts_either_token_field():
    seen = []

    def handler(request):
        seen.append((request.headers.get("authorization"), json.loads(request.content)))
        return httpx.Response(200, json={"token": "tok-9"})

    assert _run(_client(handler), lambda c: c.refresh("tok-1")) == "tok-9"
    assert seen == [("Bearer tok-1", {"token": "tok-1"})]

    assert _run(_client(lambda r: httpx.Response(200, json={"accessToken": "tok-3"})), lambda c: c.refresh("x")) == "tok-3"


def test_refresh_refusal_is_not_an_outage():
    with pytest.raises(SessionExpiredUnrefreshable) as ei:
        _run(_client(lambda r: httpx.Response(401)), lambda c: c.refresh("tok-1"))
    assert not isinstance(ei.value, UpstreamUnavailable)


def test_refresh_timeout_is_upstream_unavailable():
    def handler(request):
        raise httpx.ReadTimeout("slow authority", request=request)

    with pytest.raises(UpstreamUnavailable):
        _run(_client(handler), lambda c: c.refresh("tok-1"))


def test_refresh_connection_error_is_upstream_unavailable():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(UpstreamUnavailable):
        _run(_client(handler), lambda c: c.refresh("tok-1"))


def test_logout_never_raises():
    def down(request):
        raise httpx.ConnectError("refused", request=request)

    assert _run(_client(down), lambda c: c.logout("tok-1")) is False
    assert _run(_client(lambda r: httpx.Response(500)), lambda c: c.logout("tok-1")) is False
    assert _run(_client(lambda r: httpx.Response(204)), lambda c: c.logout("tok-1")) is True
