# shopedge/tests/test_session.py
import asyncio
import dataclasses
import json

import pytest

from shopedge.errors import SessionExpiredUnrefreshable, UpstreamUnavailable
from shopedge.identity import IdentityProfile
from shopedge.session import SessionCodec, SessionRecord, SessionResolver, public_view

PROFILE = IdentityProfile(
    user_id="u-1",
    access_token="tok-1",
    mobile="01000000000",
    first_name="Lina",
    last_name="Adel",
    address="12 Nile St",
)


class _Identity:
    """Duck-typed identity client with a controllable refresh."""

    def __init__(self, *, result="tok-2", error=None, delay=0.0):
        self.result = result
        self.error = error
        self.delay = delay
        self.refresh_calls = 0

    async def refresh(self, access_token):
        self.refresh_calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.result


def _resolver(clock, identity=None, **kw):
    return SessionResolver(SessionCodec("s3cret"), identity or _Identity(), clock=clock, **kw)


# ---------------- codec ----------------


def test_codec_round_trip(clock):
    r = _resolver(clock)
    record = r.issue(PROFILE)
    assert r.codec.decode(r.encode(record)) == record


def test_tampered_cookie_decodes_to_none(clock):
    codec = SessionCodec("s3cret")
    value = codec.encode(_resolver(clock).issue(PROFILE))
    body, sig = value.split(".")
    flipped = body[:-1] + ("A" if body[-1] != "A" else "B")
    assert codec.decode(f"{flipped}.{sig}") is None
    assert codec.decode(f"{body}.{'0' * len(sig)}") is None


def test_wrong_key_and_garbage(clock):
    value = SessionCodec("s3cret").encode(_resolver(clock).issue(PROFILE))
    assert SessionCodec("other").decode(value) is None
    assert SessionCodec("s3cret").decode("not-a-cookie") is None
    assert SessionCodec("s3cret").decode("") is None
    assert SessionCodec("s3cret").decode(None) is None


def test_non_ascii_cookie_decodes_to_none(clock):
    codec = SessionCodec("s3cret")
    value = codec.encode(_resolver(clock).issue(PROFILE))
    assert codec.decode("abc.\u00e9\u00e9") is None
    assert codec.decode("\u00e9.abc") is None
    assert codec.decode(value + "\u00e9") is None

    res = asyncio.run(_resolver(clock).resolve("abc.\u00c3\u00a9"))
    assert res.record is None
    assert res.outcome == "invalid"
    assert res.torn_down


def test_cookie_format(clock):
    codec = SessionCodec("s3cret")
    value = codec.encode(_resolver(clock).issue(PROFILE))
    assert value.count(".") == 1
    assert len(value.split(".")[1]) == 64


# ---------------- issue / public view ----------------


def test_issue_stamps_lifetime(clock):
    record = _resolver(clock, lifetime_s=3600).issue(PROFILE)
    assert record.issued_at == clock.t
    assert record.expires_at == clock.t + 3600
    assert record.access_token == "tok-1"


def test_public_view_never_contains_access_token(clock):
    record = _resolver(clock).issue(PROFILE)
    view = public_view(record)
    assert "access_token" not in dataclasses.asdict(view)
    assert "tok-1" not in json.dumps(view.as_dict())
    assert view.as_dict()["firstName"] == "Lina"


# ---------------- resolve ----------------


def test_resolve_absent_and_invalid(clock):
    r = _resolver(clock)
    absent = asyncio.run(r.resolve(None))
    assert absent.record is None and absent.outcome == "absent" and not absent.torn_down
    invalid = asyncio.run(r.resolve("forged.cookie"))
    assert invalid.record is None and invalid.outcome == "invalid" and invalid.torn_down


def test_resolve_valid_session_does_not_refresh(clock):
    identity = _Identity()
    r = _resolver(clock, identity)
    record = r.issue(PROFILE)
    res = asyncio.run(r.resolve(r.encode(record)))
    assert res.record == record
    assert not res.refreshed
    assert identity.refresh_calls == 0


def test_expired_session_is_refreshed(clock):
    identity = _Identity(result="tok-2")
    r = _resolver(clock, identity)
    record = r.issue(PROFILE)
    clock.advance(24 * 3600 + 1)

    res = asyncio.run(r.resolve(r.encode(record)))
    assert res.refreshed
    assert res.outcome == "refreshed"
    assert res.record.access_token == "tok-2"
    assert res.record.expires_at > record.expires_at
    assert res.record.issued_at == clock.t
    assert res.record.id == record.id
    assert identity.refresh_calls == 1


def test_expired_session_with_rejected_refresh_is_absent(clock):
    identity = _Identity(error=SessionExpiredUnrefreshable("refused"))
    r = _resolver(clock, identity, refresh_cache_ttl_s=0)
    cookie = r.encode(r.issue(PROFILE))
    clock.advance(24 * 3600 + 1)

    for _ in range(3):
        res = asyncio.run(r.resolve(cookie))
        assert res.record is None
        assert res.outcome == "rejected"
        assert res.torn_down
    # one attempt per request, never retried within a request
    assert identity.refresh_calls == 3


def test_upstream_outage_is_distinguished(clock):
    identity = _Identity(error=UpstreamUnavailable("timeout"))
    r = _resolver(clock, identity)
    cookie = r.encode(r.issue(PROFILE))
    clock.advance(24 * 3600 + 1)

    res = asyncio.run(r.resolve(cookie))
    assert res.record is None
    assert res.outcome == "upstream_unavailable"


def test_concurrent_refreshes_share_one_upstream_call(clock):
    identity = _Identity(result="tok-2", delay=0.02)
    r = _resolver(clock, identity)
    cookie = r.encode(r.issue(PROFILE))
    clock.advance(24 * 3600 + 1)

    async def burst():
        return await asyncio.gather(*(r.resolve(cookie) for _ in range(5)))

    results = asyncio.run(burst())
    assert identity.refresh_calls == 1
    assert {res.record.access_token for res in results} == {"tok-2"}
    assert r.inflight()[0] == 0


def test_refresh_outcome_cache_expires(clock):
    identity = _Identity(result="tok-2")
    r = _resolver(clock, identity, refresh_cache_ttl_s=5.0)

    assert asyncio.run(r.refresh("tok-1")) == "tok-2"
    assert asyncio.run(r.refresh("tok-1")) == "tok-2"
    assert identity.refresh_calls == 1

    clock.advance(6.0)
    asyncio.run(r.refresh("tok-1"))
    assert identity.refresh_calls == 2


def test_cached_refusal_is_raised_again(clock):
    identity = _Identity(error=SessionExpiredUnrefreshable("refused"))
    r = _resolver(clock, identity)

    for _ in range(2):
        with pytest.raises(SessionExpiredUnrefreshable):
            asyncio.run(r.refresh("tok-1"))
    assert identity.refresh_calls == 1


def test_record_expiry_boundary():
    rec = SessionRecord(id="u", mobile="m", access_token="t", issued_at=0.0, expires_at=10.0)
    assert not rec.is_expired(9.999)
    assert rec.is_expired(10.0)


def test_login_then_refresh_through_identity_client(settings, identity, authority, clock):
    r = SessionResolver.from_settings(settings, identity, clock=clock)

    async def flow():
        try:
            record = r.issue(await identity.login("01012345678", "open-sesame"))
            cookie = r.encode(record)
            clock.advance(settings.session_lifetime_s)
            return record, await r.resolve(cookie)
        finally:
            await identity.aclose()

    record, res = asyncio.run(flow())
    assert record.first_name == "Lina"
    assert res.refreshed
    assert res.record.access_token == "tok-2"
    assert res.record.expires_at == clock.t + settings.session_lifetime_s
    assert authority.count("/auth/refresh") == 1
