# FILE: shopedge/decision.py
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple, Union
from urllib.parse import parse_qs, urlencode

from .errors import RateLimitExceeded, ValidationFailed
from .logging import bind, log_security_event
from .metrics import EdgeMetrics
from .paths import PathClassifier
from .ratelimit import RateLimiter
from .session import REFRESH_METRIC_LABELS, SessionRecord, SessionResolver
from .validation import RequestValidator

_logger = logging.getLogger(__name__)

UNKNOWN_CLIENT = "unknown"


# ---------------------------------------------------------------------------
# Request view & decisions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RequestView:
    """What the engine may read from a request. `headers` lookups are lowercase."""

    method: str
    path: str
    query_string: str = ""
    headers: Mapping[str, str] = field(default_factory=dict)
    cookies: Mapping[str, str] = field(default_factory=dict)
    client_host: Optional[str] = None


@dataclass(frozen=True)
class Continue:
    kind = "continue"


@dataclass(frozen=True)
class RedirectLocale:
    locale: str
    location: str
    kind = "redirect_locale"


@dataclass(frozen=True)
class RedirectSignin:
    callback_url: str
    location: str
    kind = "redirect_signin"


@dataclass(frozen=True)
class RedirectCompleteProfile:
    location: str
    kind = "redirect_complete_profile"


@dataclass(frozen=True)
class RedirectHome:
    callback_url: Optional[str]
    location: str
    kind = "redirect_home"


@dataclass(frozen=True)
class Reject:
    status: int
    reason: str
    retry_after: Optional[int] = None
    errors: Tuple[str, ...] = ()
    kind = "reject"


Decision = Union[Continue, RedirectLocale, RedirectSignin, RedirectCompleteProfile, RedirectHome, Reject]
Redirect = (RedirectLocale, RedirectSignin, RedirectCompleteProfile, RedirectHome)


@dataclass(frozen=True)
class EdgeOutcome:
    decision: Decision
    # Session in effect for this request, if one was resolved.
    session: Optional[SessionRecord] = None
    # Set only when the session was silently refreshed; the cookie must be re-issued.
    refreshed_record: Optional[SessionRecord] = None
    # A session cookie was presented but no longer yields a session.
    clear_session: bool = False
    session_outcome: Optional[str] = None


def client_identity(headers: Mapping[str, str], peer: Optional[str], *, trust_proxy_headers: bool = True) -> str:
    """
    Best-effort client key: CF-Connecting-IP, first X-Forwarded-For entry,
    X-Real-IP, then the socket peer. Never authenticated.
    """
    if trust_proxy_headers:
        cf = (headers.get("cf-connecting-ip") or "").strip()
        if cf:
            return cf
        xff = (headers.get("x-forwarded-for") or "").split(",")[0].strip()
        if xff:
            return xff
        real = (headers.get("x-real-ip") or "").strip()
        if real:
            return real
    return (peer or "").strip() or UNKNOWN_CLIENT


def safe_callback(value: Optional[str]) -> Optional[str]:
    """Same-site relative path or None."""
    if not value or not value.startswith("/"):
        return None
    if value.startswith("//") or value.startswith("/\\"):
        return None
    if any(ch in value for ch in ("\r", "\n", "\t")):
        return None
    return value


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class DecisionEngine:
    """
    Runs classification, rate limiting, validation and session resolution
    for one request and returns exactly one decision.

    Order:
      1. static/internal            -> Continue
      2. auth API route             -> Continue
      3. rate limit                 -> Reject(429)
      4. validation                 -> Reject(400)
      5. missing locale             -> RedirectLocale (query preserved)
      6. resolve session (refresh on expiry)
      7. protected, no session      -> RedirectSignin
      8. auth page, session present -> RedirectCompleteProfile | RedirectHome
      9.                            -> Continue

    Unexpected exceptions fail closed as Reject(503, "internal_edge_error").
    """

    def __init__(
        self,
        *,
        classifier: PathClassifier,
        limiter: RateLimiter,
        validator: RequestValidator,
        resolver: SessionResolver,
        session_cookie_name: str = "session-token",
        profile_cookie_name: str = "profile-completed",
        trust_proxy_headers: bool = True,
        metrics: Optional[EdgeMetrics] = None,
    ):
        self.classifier = classifier
        self.limiter = limiter
        self.validator = validator
        self.resolver = resolver
        self.session_cookie_name = session_cookie_name
        self.profile_cookie_name = profile_cookie_name
        self.trust_proxy_headers = bool(trust_proxy_headers)
        self.metrics = metrics

    async def decide(self, view: RequestView) -> EdgeOutcome:
        t0 = time.perf_counter()
        try:
            outcome = await self._decide(view)
        except Exception:
            _logger.exception("edge decision failed for %s %s", view.method, view.path)
            log_security_event(
                _logger,
                event="edge_exception",
                reason="internal_edge_error",
                client_ip=view.client_host,
                level=logging.ERROR,
            )
            outcome = EdgeOutcome(Reject(503, "internal_edge_error"))
        self._record(view, outcome, time.perf_counter() - t0)
        return outcome

    # ------------- pipeline -------------

    async def _decide(self, view: RequestView) -> EdgeOutcome:
        path = view.path or "/"
        cls = self.classifier

        if cls.is_static_or_internal(path):
            return EdgeOutcome(Continue())
        if cls.is_auth_api_route(path):
            return EdgeOutcome(Continue())

        identity = client_identity(view.headers, view.client_host, trust_proxy_headers=self.trust_proxy_headers)

        rejected = self._check_rate(identity, path)
        if rejected is not None:
            return EdgeOutcome(rejected)

        result = self.validator.validate(view.method, view.headers)
        if not result.is_valid:
            err = ValidationFailed(result.errors)
            log_security_event(
                _logger,
                event="validation_failed",
                reason=err.reason,
                client_ip=identity,
                extra={"errors": ", ".join(err.errors)},
            )
            return EdgeOutcome(Reject(err.status, err.reason, errors=tuple(err.errors)))

        is_api = path.startswith("/api/")
        locale = cls.get_locale_from_path(path)
        if locale is None:
            locale = cls.negotiate_locale(view.headers.get("accept-language"))
            if not is_api:
                location = cls.localize_path(path, locale)
                if view.query_string:
                    location = f"{location}?{view.query_string}"
                return EdgeOutcome(RedirectLocale(locale=locale, location=location))
        bind(locale=locale)

        resolution = await self.resolver.resolve(view.cookies.get(self.session_cookie_name))
        record = resolution.record
        refreshed = record if resolution.refreshed else None
        clear = resolution.torn_down
        so = resolution.outcome

        if cls.is_protected_path(path) and record is None:
            location = f"/{locale}/signin?" + urlencode({"callbackUrl": path})
            return EdgeOutcome(RedirectSignin(callback_url=path, location=location), None, None, clear, so)

        if cls.is_auth_page(path) and record is not None:
            has_profile = bool(view.cookies.get(self.profile_cookie_name))
            if not has_profile and not cls.is_complete_profile_page(path):
                decision: Decision = RedirectCompleteProfile(location=f"/{locale}/complete-profile")
            else:
                raw = (parse_qs(view.query_string).get("callbackUrl") or [None])[0]
                callback = safe_callback(raw)
                target = cls.localize_path(callback, locale) if callback else f"/{locale}"
                decision = RedirectHome(callback_url=callback, location=target)
            return EdgeOutcome(decision, record, refreshed, clear, so)

        return EdgeOutcome(Continue(), record, refreshed, clear, so)

    def _check_rate(self, identity: str, path: str) -> Optional[Reject]:
        tier = self.classifier.rate_limit_tier(path)
        bind(tier=tier.value)
        result = self.limiter.check(identity, tier)
        if self.metrics is not None:
            self.metrics.set_tracked_keys(self.limiter.tracked_keys())
        if result.allowed:
            return None
        err = RateLimitExceeded(self.limiter.retry_after_seconds(result), tier=tier.value)
        log_security_event(
            _logger,
            event="rate_limited",
            reason="capacity_exhausted" if result.capacity_exhausted else err.reason,
            client_ip=identity,
            extra={"tier": err.tier, "retry_after": err.retry_after},
        )
        if self.metrics is not None:
            self.metrics.observe_rate_limited(err.tier)
        return Reject(err.status, err.reason, retry_after=err.retry_after)

    # ------------- observability -------------

    def _record(self, view: RequestView, outcome: EdgeOutcome, latency_s: float) -> None:
        decision = outcome.decision
        fields: Dict[str, Any] = {"decision": decision.kind}
        if isinstance(decision, Reject):
            fields["reason"] = decision.reason
        bind(**fields)

        if isinstance(decision, Continue):
            _logger.debug("edge continue %s", view.path)
        elif isinstance(decision, Redirect):
            _logger.info("edge %s %s -> %s", decision.kind, view.path, decision.location)

        if self.metrics is None:
            return
        self.metrics.observe_decision(decision.kind, latency_s)
        if isinstance(decision, Reject):
            self.metrics.observe_reject(decision.reason)
        refresh_label = REFRESH_METRIC_LABELS.get(outcome.session_outcome or "")
        if refresh_label:
            self.metrics.observe_refresh(refresh_label)


__all__ = [
    "RequestView",
    "Continue",
    "RedirectLocale",
    "RedirectSignin",
    "RedirectCompleteProfile",
    "RedirectHome",
    "Reject",
    "Decision",
    "EdgeOutcome",
    "DecisionEngine",
    "client_identity",
    "safe_callback",
]
