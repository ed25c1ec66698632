# FILE: shopedge/service_http.py
from __future__ import annotations

import contextlib
import os
import re
import time
from typing import Callable, Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from prometheus_client import CollectorRegistry
from starlette.background import BackgroundTask

from .config import Settings, load_settings
from .decision import DecisionEngine
from .errors import IdentityRejected, UpstreamUnavailable
from .headers import SecurityHeaders
from .identity import IdentityClient
from .logging import RequestLogMiddleware, get_logger
from .metrics import EdgeMetrics
from .middleware import EdgeMiddleware, clear_session_cookie, set_session_cookie
from .paths import PathClassifier
from .ratelimit import RateLimiter
from .schemas import HealthResponse, LoginRequest, LogoutResponse, SessionEnvelope
from .session import REFRESH_METRIC_LABELS, SessionResolver, public_view
from .validation import RequestValidator


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------


def create_app(
    settings: Optional[Settings] = None,
    *,
    identity_client: Optional[IdentityClient] = None,
    identity_transport: Optional[httpx.AsyncBaseTransport] = None,
    registry: Optional[CollectorRegistry] = None,
    rate_clock: Callable[[], float] = time.monotonic,
    session_clock: Callable[[], float] = time.time,
) -> FastAPI:
    """
    Build the storefront edge service.

    Every request passes the edge pipeline (EdgeMiddleware) before reaching
    a route. Shared state (rate-limit windows, refresh dedup, identity
    client) is created here, once per app, and hangs off `app.state`.

    Routes:
      - POST /api/auth/login, POST /api/auth/logout, GET /api/auth/session
      - GET /healthz, GET /metrics
    """
    settings = settings or load_settings()
    logger = get_logger("shopedge.http", settings.log_level)

    metrics = EdgeMetrics(registry)
    metrics.publish_build(version=settings.version, config_hash=settings.config_hash(), profile=settings.profile)

    classifier = PathClassifier(settings.locales, settings.default_locale)
    limiter = RateLimiter.from_settings(settings, clock=rate_clock)
    validator = RequestValidator.from_settings(settings)
    identity = identity_client or IdentityClient.from_settings(settings, transport=identity_transport)
    resolver = SessionResolver.from_settings(settings, identity, clock=session_clock)
    engine = DecisionEngine(
        classifier=classifier,
        limiter=limiter,
        validator=validator,
        resolver=resolver,
        session_cookie_name=settings.session_cookie_name,
        profile_cookie_name=settings.profile_cookie_name,
        trust_proxy_headers=settings.trust_proxy_headers,
        metrics=metrics,
    )
    security_headers = SecurityHeaders.from_settings(settings)
    mobile_patterns = [re.compile(p) for p in settings.mobile_patterns]

    @contextlib.asynccontextmanager
    async def lifespan(_app: FastAPI):
        limiter.start()
        logger.info(
            "edge service started",
            extra={"profile": settings.profile, "config_hash": settings.config_hash()},
        )
        try:
            yield
        finally:
            limiter.stop()
            await identity.aclose()

    docs = not settings.hardened
    app = FastAPI(
        title=settings.app_name,
        version=settings.version,
        lifespan=lifespan,
        openapi_url="/openapi.json" if docs else None,
        docs_url="/docs" if docs else None,
        redoc_url=None,
    )
    app.state.settings = settings
    app.state.limiter = limiter
    app.state.resolver = resolver
    app.state.engine = engine
    app.state.metrics = metrics
    app.state.identity = identity

    # Added last = outermost: request log wraps the edge pipeline.
    app.add_middleware(EdgeMiddleware, engine=engine, security_headers=security_headers, settings=settings)
    app.add_middleware(RequestLogMiddleware, logger_name="shopedge.http")

    # -----------------------------------------------------------------------
    # Authentication API (bypasses rate limiting and validation at the edge)
    # -----------------------------------------------------------------------

    @app.post("/api/auth/login", response_model=SessionEnvelope)
    async def login(body: LoginRequest):
        if not body.mobile_matches(mobile_patterns):
            raise RequestValidationError(
                [{"type": "value_error", "loc": ("body", "mobile"), "msg": "Invalid mobile number", "input": body.mobile}]
            )
        try:
            profile = await identity.login(body.mobile, body.password)
        except UpstreamUnavailable:
            return JSONResponse({"error": "Identity service unavailable"}, status_code=503)
        except IdentityRejected as e:
            logger.info("login rejected", extra={"upstream_status": e.upstream_status})
            return JSONResponse({"error": str(e)}, status_code=401)

        record = resolver.issue(profile)
        response = JSONResponse({"session": public_view(record).as_dict()})
        set_session_cookie(response, settings, resolver, record)
        return response

    @app.post("/api/auth/logout", response_model=LogoutResponse)
    async def logout(request: Request):
        record = resolver.codec.decode(request.cookies.get(settings.session_cookie_name))
        task = BackgroundTask(identity.logout, record.access_token) if record is not None else None
        response = JSONResponse({"ok": True}, background=task)
        clear_session_cookie(response, settings)
        return response

    @app.get("/api/auth/session", response_model=SessionEnvelope)
    async def session(request: Request):
        resolution = await resolver.resolve(request.cookies.get(settings.session_cookie_name))
        label = REFRESH_METRIC_LABELS.get(resolution.outcome)
        if label:
            metrics.observe_refresh(label)

        record = resolution.record
        body = {"session": public_view(record).as_dict() if record is not None else None}
        response = JSONResponse(body)
        if resolution.refreshed and record is not None:
            set_session_cookie(response, settings, resolver, record)
        elif resolution.torn_down:
            clear_session_cookie(response, settings)
        return response

    # -----------------------------------------------------------------------
    # Operational endpoints
    # -----------------------------------------------------------------------

    @app.get("/healthz", response_model=HealthResponse)
    def healthz():
        return HealthResponse(
            status="ok",
            version=settings.version,
            config_hash=settings.config_hash(),
            profile=settings.profile,
        )

    @app.get("/metrics")
    def metrics_endpoint() -> Response:
        metrics.set_tracked_keys(limiter.tracked_keys())
        return Response(metrics.render(), media_type=metrics.content_type)

    return app


def run() -> None:
    import uvicorn

    uvicorn.run(
        create_app(),
        host=os.environ.get("SHOPEDGE_HOST", "127.0.0.1"),
        port=int(os.environ.get("SHOPEDGE_PORT", "8000")),
        log_config=None,
    )


if __name__ == "__main__":
    run()
