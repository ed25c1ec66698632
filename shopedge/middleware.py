# FILE: shopedge/middleware.py
from __future__ import annotations

import logging
import re
from typing import Iterable, Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, PlainTextResponse, RedirectResponse, Response

from .config import Settings
from .decision import Continue, DecisionEngine, EdgeOutcome, Redirect, Reject, RequestView
from .headers import SecurityHeaders
from .logging import log_security_event
from .session import SessionRecord, SessionResolver, public_view

_logger = logging.getLogger(__name__)

# Operational endpoints answered without running the edge pipeline.
DEFAULT_SKIP_PATHS = (r"^/healthz$", r"^/metrics$")


# ---------------------------------------------------------------------------
# Session cookie helpers
# ---------------------------------------------------------------------------


def set_session_cookie(response: Response, settings: Settings, resolver: SessionResolver, record: SessionRecord) -> None:
    response.set_cookie(
        settings.session_cookie_name,
        resolver.encode(record),
        max_age=int(settings.session_lifetime_s),
        path="/",
        httponly=True,
        samesite="strict",
        secure=settings.secure_cookies,
    )


def clear_session_cookie(response: Response, settings: Settings) -> None:
    response.delete_cookie(
        settings.session_cookie_name,
        path="/",
        httponly=True,
        samesite="strict",
        secure=settings.secure_cookies,
    )


# ---------------------------------------------------------------------------
# Middleware
# ---------------------------------------------------------------------------


class EdgeMiddleware(BaseHTTPMiddleware):
    """
    Runs the edge decision for every request and turns it into a response.

    Continue hands the request to the application; any other decision is
    answered here. Every response, including errors raised further down,
    leaves with the security header set. A silently refreshed session is
    re-issued as a cookie; a session that can no longer be resolved is
    cleared.

    Downstream handlers see `request.state.edge_decision` and
    `request.state.session` (the public view, or None). The access token is
    never placed on request state.
    """

    def __init__(
        self,
        app,
        *,
        engine: DecisionEngine,
        security_headers: SecurityHeaders,
        settings: Settings,
        skip_paths: Iterable[str] = DEFAULT_SKIP_PATHS,
    ):
        super().__init__(app)
        self.engine = engine
        self.security_headers = security_headers
        self.settings = settings
        self._skip = [re.compile(p) for p in skip_paths]

    @staticmethod
    def _view(request: Request) -> RequestView:
        return RequestView(
            method=request.method,
            path=request.url.path,
            query_string=request.url.query,
            headers=request.headers,
            cookies=request.cookies,
            client_host=request.client.host if request.client else None,
        )

    @staticmethod
    def _materialize(outcome: EdgeOutcome) -> Optional[Response]:
        decision = outcome.decision
        if isinstance(decision, Continue):
            return None
        if isinstance(decision, Redirect):
            return RedirectResponse(decision.location, status_code=307)
        if isinstance(decision, Reject):
            if decision.status == 429:
                retry = int(decision.retry_after or 1)
                return JSONResponse(
                    {"error": "Rate limit exceeded", "retryAfter": retry},
                    status_code=429,
                    headers={"Retry-After": str(retry)},
                )
            if decision.status == 400:
                return PlainTextResponse("Bad Request", status_code=400)
            return JSONResponse({"error": decision.reason}, status_code=decision.status)
        raise TypeError(f"unknown edge decision {decision!r}")

    async def dispatch(self, request: Request, call_next):
        if any(rx.match(request.url.path) for rx in self._skip):
            response = await call_next(request)
            self.security_headers.apply(response.headers)
            return response

        try:
            outcome = await self.engine.decide(self._view(request))
            request.state.edge_decision = outcome.decision
            request.state.session = public_view(outcome.session) if outcome.session else None

            response = self._materialize(outcome)
            if response is None:
                response = await call_next(request)

            if outcome.refreshed_record is not None:
                set_session_cookie(response, self.settings, self.engine.resolver, outcome.refreshed_record)
            elif outcome.clear_session:
                clear_session_cookie(response, self.settings)
        except Exception:
            _logger.exception("unhandled exception in EdgeMiddleware.dispatch")
            log_security_event(
                _logger,
                event="edge_exception",
                reason="internal_edge_error",
                client_ip=request.client.host if request.client else None,
                level=logging.ERROR,
            )
            response = JSONResponse({"error": "internal_edge_error"}, status_code=503)

        self.security_headers.apply(response.headers)
        return response


__all__ = ["EdgeMiddleware", "set_session_cookie", "clear_session_cookie"]
