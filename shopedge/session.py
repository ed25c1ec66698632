# FILE: shopedge/session.py
from __future__ import annotations

import asyncio
import base64
import hmac
import json
import logging
import time
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, Optional, Tuple

from blake3 import blake3

from .config import Settings
from .errors import SessionExpiredUnrefreshable, UpstreamUnavailable
from .identity import IdentityClient, IdentityProfile

_logger = logging.getLogger(__name__)

_MAC_CTX = "shopedge:session"
_KDF_CTX = "shopedge 2024 session cookie key v1"
_PAYLOAD_VERSION = 1

# Resolution outcomes.
OUTCOME_ABSENT = "absent"
OUTCOME_INVALID = "invalid"
OUTCOME_VALID = "valid"
OUTCOME_REFRESHED = "refreshed"
OUTCOME_REJECTED = "rejected"
OUTCOME_UPSTREAM = "upstream_unavailable"

_TORN_DOWN = frozenset({OUTCOME_INVALID, OUTCOME_REJECTED, OUTCOME_UPSTREAM})

# Resolution outcome -> session refresh metric label.
REFRESH_METRIC_LABELS = {
    OUTCOME_REFRESHED: "ok",
    OUTCOME_REJECTED: "rejected",
    OUTCOME_UPSTREAM: "upstream_unavailable",
}


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SessionRecord:
    id: str
    mobile: str
    access_token: str
    issued_at: float
    expires_at: float
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    address: Optional[str] = None

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


@dataclass(frozen=True)
class PublicSession:
    """Outward view of a session. Never carries the access token."""

    id: str
    mobile: str
    first_name: Optional[str]
    last_name: Optional[str]
    address: Optional[str]
    expires_at: float

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "mobile": self.mobile,
            "firstName": self.first_name,
            "lastName": self.last_name,
            "address": self.address,
            "expiresAt": int(self.expires_at * 1000),
        }


@dataclass(frozen=True)
class SessionResolution:
    record: Optional[SessionRecord]
    refreshed: bool
    outcome: str

    @property
    def torn_down(self) -> bool:
        """A cookie was presented but no longer yields a session."""
        return self.outcome in _TORN_DOWN


def public_view(record: SessionRecord) -> PublicSession:
    return PublicSession(
        id=record.id,
        mobile=record.mobile,
        first_name=record.first_name,
        last_name=record.last_name,
        address=record.address,
        expires_at=record.expires_at,
    )


# ---------------------------------------------------------------------------
# Cookie codec
# ---------------------------------------------------------------------------


def _hmac_blake3(key: bytes, ctx: str, data: bytes) -> str:
    """Domain-separated keyed blake3; returns hex string."""
    h = blake3(key=key)
    ctx_b = ctx.encode("utf-8")
    h.update(len(ctx_b).to_bytes(4, "big") + ctx_b)
    h.update(data)
    return h.hexdigest()


def _b64e(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64d(text: str) -> bytes:
    return base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))


class SessionCodec:
    """
    Signed session cookie: base64url(JSON payload) "." hex(keyed blake3 MAC).

    The MAC key is derived from the configured secret. Anything malformed,
    tampered with, or signed under another key decodes to None.
    """

    def __init__(self, secret: str):
        if not secret:
            raise ValueError("session secret must not be empty")
        self._key = blake3(secret.encode("utf-8"), derive_key_context=_KDF_CTX).digest()

    def _mac(self, body: str) -> str:
        return _hmac_blake3(self._key, _MAC_CTX, body.encode("ascii"))

    def encode(self, record: SessionRecord) -> str:
        payload = {
            "v": _PAYLOAD_VERSION,
            "id": record.id,
            "mobile": record.mobile,
            "first_name": record.first_name,
            "last_name": record.last_name,
            "address": record.address,
            "access_token": record.access_token,
            "iat": record.issued_at,
            "exp": record.expires_at,
        }
        body = _b64e(json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8"))
        return f"{body}.{self._mac(body)}"

    def decode(self, value: Optional[str]) -> Optional[SessionRecord]:
        if not value or "." not in value or not value.isascii():
            return None
        body, _, sig = value.rpartition(".")
        if not body or not hmac.compare_digest(self._mac(body), sig.lower()):
            return None
        try:
            data = json.loads(_b64d(body))
        except ValueError:
            return None
        if not isinstance(data, dict) or data.get("v") != _PAYLOAD_VERSION:
            return None
        try:
            record = SessionRecord(
                id=str(data["id"]),
                mobile=str(data.get("mobile") or ""),
                access_token=str(data["access_token"]),
                issued_at=float(data["iat"]),
                expires_at=float(data["exp"]),
                first_name=data.get("first_name"),
                last_name=data.get("last_name"),
                address=data.get("address"),
            )
        except (KeyError, TypeError, ValueError):
            return None
        if not record.id or not record.access_token:
            return None
        return record


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------


@dataclass
class _CachedRefresh:
    expires: float
    token: Optional[str] = None
    error: Optional[SessionExpiredUnrefreshable] = None


class SessionResolver:
    """
    Session lifecycle: issue on login, resolve per request, refresh once on
    expiry.

    Refreshes are deduplicated per access token: concurrent callers share
    one in-flight upstream call, and the outcome is remembered for
    `refresh_cache_ttl_s` so that a burst of requests carrying the same
    expired cookie produces a single upstream refresh.
    """

    def __init__(
        self,
        codec: SessionCodec,
        identity: IdentityClient,
        *,
        lifetime_s: float = 24 * 60 * 60,
        refresh_cache_ttl_s: float = 5.0,
        clock: Callable[[], float] = time.time,
    ):
        self.codec = codec
        self.identity = identity
        self.lifetime_s = float(lifetime_s)
        self.refresh_cache_ttl_s = float(max(0.0, refresh_cache_ttl_s))
        self._clock = clock
        self._lock = asyncio.Lock()
        self._inflight: Dict[str, "asyncio.Task[str]"] = {}
        self._recent: Dict[str, _CachedRefresh] = {}
        # Upstream calls actually made (dedup hits excluded).
        self.upstream_refreshes = 0

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        identity: IdentityClient,
        *,
        clock: Callable[[], float] = time.time,
    ) -> "SessionResolver":
        return cls(
            SessionCodec(settings.session_secret),
            identity,
            lifetime_s=settings.session_lifetime_s,
            refresh_cache_ttl_s=settings.refresh_cache_ttl_s,
            clock=clock,
        )

    def now(self) -> float:
        return self._clock()

    # ------------- lifecycle -------------

    def issue(self, profile: IdentityProfile) -> SessionRecord:
        now = self._clock()
        return SessionRecord(
            id=profile.user_id,
            mobile=profile.mobile,
            access_token=profile.access_token,
            issued_at=now,
            expires_at=now + self.lifetime_s,
            first_name=profile.first_name,
            last_name=profile.last_name,
            address=profile.address,
        )

    def encode(self, record: SessionRecord) -> str:
        return self.codec.encode(record)

    async def resolve(self, cookie_value: Optional[str]) -> SessionResolution:
        if not cookie_value:
            return SessionResolution(None, False, OUTCOME_ABSENT)

        record = self.codec.decode(cookie_value)
        if record is None:
            _logger.info("session cookie failed verification")
            return SessionResolution(None, False, OUTCOME_INVALID)

        now = self._clock()
        if not record.is_expired(now):
            return SessionResolution(record, False, OUTCOME_VALID)

        try:
            new_token = await self.refresh(record.access_token)
        except UpstreamUnavailable:
            _logger.warning("session refresh failed: identity authority unavailable")
            return SessionResolution(None, False, OUTCOME_UPSTREAM)
        except SessionExpiredUnrefreshable:
            _logger.info("session expired and was not refreshed")
            return SessionResolution(None, False, OUTCOME_REJECTED)

        now = self._clock()
        refreshed = replace(
            record,
            access_token=new_token,
            issued_at=now,
            expires_at=max(now + self.lifetime_s, record.expires_at + 1.0),
        )
        return SessionResolution(refreshed, True, OUTCOME_REFRESHED)

    # ------------- refresh -------------

    def _cached(self, access_token: str) -> Optional[_CachedRefresh]:
        entry = self._recent.get(access_token)
        if entry is None:
            return None
        if entry.expires <= self._clock():
            self._recent.pop(access_token, None)
            return None
        return entry

    def _remember(self, access_token: str, task: "asyncio.Task[str]") -> None:
        self._inflight.pop(access_token, None)
        if task.cancelled() or self.refresh_cache_ttl_s <= 0:
            return
        now = self._clock()
        for key in [k for k, v in self._recent.items() if v.expires <= now]:
            del self._recent[key]
        exc = task.exception()
        entry = _CachedRefresh(expires=now + self.refresh_cache_ttl_s)
        if exc is None:
            entry.token = task.result()
        elif isinstance(exc, SessionExpiredUnrefreshable):
            entry.error = exc
        else:
            return
        self._recent[access_token] = entry

    async def _call_upstream(self, access_token: str) -> str:
        self.upstream_refreshes += 1
        return await self.identity.refresh(access_token)

    async def refresh(self, access_token: str) -> str:
        """
        New access token for `access_token`.

        Raises SessionExpiredUnrefreshable (or its UpstreamUnavailable
        subclass) when the authority does not extend the session.
        """
        async with self._lock:
            cached = self._cached(access_token)
            if cached is None:
                task = self._inflight.get(access_token)
                if task is None:
                    task = asyncio.ensure_future(self._call_upstream(access_token))
                    self._inflight[access_token] = task
                    task.add_done_callback(lambda t, tok=access_token: self._remember(tok, t))
        if cached is not None:
            if cached.error is not None:
                raise type(cached.error)(str(cached.error))
            return cached.token or ""
        return await asyncio.shield(task)

    def inflight(self) -> Tuple[int, int]:
        """(in-flight refreshes, cached outcomes)."""
        return len(self._inflight), len(self._recent)


__all__ = [
    "SessionRecord",
    "PublicSession",
    "SessionResolution",
    "SessionCodec",
    "SessionResolver",
    "public_view",
]
