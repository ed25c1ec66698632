# FILE: shopedge/errors.py
from __future__ import annotations

from typing import List, Optional, Sequence


class EdgeError(Exception):
    """
    Base class for recoverable edge-layer failures.

    Every subclass carries a short machine-readable `reason` tag (used for
    metrics labels and log fields) and the HTTP status it maps to when it
    is surfaced to a client.
    """

    status: int = 500
    reason: str = "edge_error"

    def __init__(self, message: str = "", *, reason: Optional[str] = None):
        super().__init__(message or self.reason)
        if reason:
            self.reason = reason


class RateLimitExceeded(EdgeError):
    status = 429
    reason = "rate_limited"

    def __init__(self, retry_after: int, *, tier: str = "general"):
        super().__init__(f"rate limit exceeded for tier {tier}")
        self.retry_after = int(retry_after)
        self.tier = tier


class ValidationFailed(EdgeError):
    status = 400
    reason = "validation_failed"

    def __init__(self, errors: Sequence[str]):
        super().__init__("; ".join(errors) or "invalid request")
        self.errors: List[str] = list(errors)


class SessionExpiredUnrefreshable(EdgeError):
    """
    The session expired and the identity authority refused to extend it.

    Not a failure from the system's point of view: the session is torn down
    and the user is sent back to sign-in.
    """

    status = 401
    reason = "session_expired"


class UpstreamUnavailable(SessionExpiredUnrefreshable):
    """Identity authority unreachable or timed out (dependency outage)."""

    status = 503
    reason = "upstream_unavailable"


class IdentityRejected(EdgeError):
    """The identity authority answered with an explicit error."""

    status = 401
    reason = "identity_rejected"

    def __init__(self, message: str = "", *, upstream_status: Optional[int] = None):
        super().__init__(message or "rejected by identity authority")
        self.upstream_status = upstream_status


__all__ = [
    "EdgeError",
    "RateLimitExceeded",
    "ValidationFailed",
    "SessionExpiredUnrefreshable",
    "UpstreamUnavailable",
    "IdentityRejected",
]
