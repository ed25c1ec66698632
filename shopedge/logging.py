# FILE: shopedge/logging.py
from __future__ import annotations

import contextlib
import contextvars
import datetime as _dt
import ipaddress
import json
import logging
import os
import sys
import time
import traceback
import uuid
from typing import Any, Dict, FrozenSet, Iterator, Optional

SCHEMA = "shopedge.log.v1"
DEFAULT_MAX_FIELD = 4096

# Header names whose values are replaced by "***".
_REDACT_KEYS = frozenset(
    {
        "authorization",
        "proxy-authorization",
        "cookie",
        "set-cookie",
        "x-api-key",
        "x-auth-token",
        "x-access-token",
    }
)

# `extra=` keys that are dropped outright.
_FORBIDDEN_META_KEYS = frozenset(
    {"password", "token", "access_token", "accesstoken", "session_token", "cookie", "cookies", "body"}
)

# Attributes every LogRecord carries, derived from the running interpreter.
_RECORD_ATTRS: FrozenSet[str] = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "taskName"}

# Promoted to top-level keys when found on the record or in the bound context.
_ENVELOPE_FIELDS = (
    "req_id",
    "client",
    "path",
    "method",
    "status",
    "tier",
    "decision",
    "reason",
    "locale",
    "latency_ms",
    "event",
)

_log_ctx: contextvars.ContextVar[Dict[str, Any]] = contextvars.ContextVar("shopedge_log_ctx", default={})


def bind(**fields: Any) -> None:
    """Add fields to the current request's log context. None values are skipped."""
    cur = dict(_log_ctx.get())
    cur.update({str(k): v for k, v in fields.items() if v is not None})
    _log_ctx.set(cur)


@contextlib.contextmanager
def log_context(**fields: Any) -> Iterator[None]:
    """Scope for `bind`: whatever is bound inside is dropped on exit."""
    token = _log_ctx.set({})
    try:
        bind(**fields)
        yield
    finally:
        _log_ctx.reset(token)


def anonymize_ip(ip: str) -> str:
    """Coarse prefix of an address: /24 for IPv4, first three groups for IPv6."""
    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        return "*"
    if addr.version == 4:
        return ".".join(ip.split(".")[:3] + ["x"])
    groups = addr.compressed.split(":")
    return ":".join(groups[:3]) + ":*" if len(groups) >= 3 else "*"


def scrub_dict(d: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Copy of a header-like dict with credential values masked, recursively."""
    out: Dict[str, Any] = {}
    for k, v in (d or {}).items():
        if str(k).lower() in _REDACT_KEYS:
            out[k] = "***"
        elif isinstance(v, dict):
            out[k] = scrub_dict(v)
        else:
            out[k] = v
    return out


class JSONFormatter(logging.Formatter):
    """
    One compact JSON object per record.

    Top level: schema, service, env, ts, lvl, logger, msg, then any of the
    envelope fields (request id, client, path, method, status, tier,
    decision, reason, locale, latency_ms, event) found on the record or in
    the bound context. Remaining `extra=` values go under "meta", except
    keys that could carry credentials.
    """

    def __init__(
        self,
        *,
        service: str = "shopedge",
        env: Optional[str] = None,
        max_field: int = DEFAULT_MAX_FIELD,
        include_stack: bool = True,
    ):
        super().__init__()
        self.service = service
        self.env = env or os.environ.get("SHOPEDGE_PROFILE", "dev")
        self.max_field = max(256, int(max_field))
        self.include_stack = include_stack

    def _clip(self, v: Any) -> Any:
        if isinstance(v, str) and len(v) > self.max_field:
            return v[: self.max_field] + "...<truncated>"
        return v

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        ctx = _log_ctx.get()
        now = _dt.datetime.fromtimestamp(record.created, _dt.timezone.utc)
        evt: Dict[str, Any] = {
            "schema": SCHEMA,
            "service": self.service,
            "env": self.env,
            "ts": now.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "lvl": record.levelname,
            "logger": record.name,
            "msg": self._clip(record.getMessage()),
        }
        for name in _ENVELOPE_FIELDS:
            v = getattr(record, name, None)
            if v is None:
                v = ctx.get(name)
            if v is not None:
                evt[name] = self._clip(v)

        if record.exc_info and self.include_stack:
            exc_type, exc_val, exc_tb = record.exc_info
            evt["exc_type"] = getattr(exc_type, "__name__", str(exc_type))
            evt["exc_message"] = self._clip(str(exc_val))
            evt["stack"] = "".join(traceback.format_exception(exc_type, exc_val, exc_tb))[: self.max_field]

        meta = {
            k: self._clip(scrub_dict(v) if isinstance(v, dict) else v)
            for k, v in record.__dict__.items()
            if k not in _RECORD_ATTRS
            and k not in evt
            and not k.startswith("_")
            and k.lower() not in _FORBIDDEN_META_KEYS
        }
        if meta:
            evt["meta"] = meta
        return json.dumps(evt, ensure_ascii=False, separators=(",", ":"), default=str)


def configure_json_logging(level: str = "INFO", *, include_uvicorn: bool = True, stream: Any = None) -> logging.Logger:
    """Route the root logger (and uvicorn's loggers) through a single JSON handler."""
    lvl = getattr(logging, (level or "INFO").upper(), logging.INFO)
    handler = logging.StreamHandler(stream=stream or sys.stderr)
    handler.setFormatter(JSONFormatter())
    handler.setLevel(lvl)

    targets = [logging.getLogger()]
    if include_uvicorn:
        targets += [logging.getLogger(n) for n in ("uvicorn", "uvicorn.error", "uvicorn.access")]
    for lg in targets:
        lg.setLevel(lvl)
        lg.handlers = [handler]
        if lg.name != "root":
            lg.propagate = False
    return targets[0]


def ensure_request_id(headers: Optional[Dict[str, str]] = None) -> str:
    """Reuse an upstream request id (x-request-id, x-amzn-trace-id, cf-ray) or mint one; bind it."""
    rid = ""
    for k in ("x-request-id", "x-amzn-trace-id", "cf-ray"):
        rid = ((headers or {}).get(k) or "")[:128]
        if rid:
            break
    rid = rid or uuid.uuid4().hex[:16]
    bind(req_id=rid)
    return rid


def log_security_event(
    logger: logging.Logger,
    *,
    event: str,
    reason: str,
    client_ip: Optional[str] = None,
    extra: Optional[Dict[str, Any]] = None,
    level: int = logging.WARNING,
) -> None:
    """
    Emit a structured edge-security event (rate limit, validation reject,
    fail-closed fault). Only coarse metadata is recorded; client addresses
    are anonymized.
    """
    fields: Dict[str, Any] = {"event": event, "reason": reason}
    if client_ip is not None:
        fields["client"] = anonymize_ip(client_ip)
    for k, v in (extra or {}).items():
        if v is None or str(k).lower() in _FORBIDDEN_META_KEYS:
            continue
        fields[str(k)] = v
    logger.log(level, "edge_security_event", extra=fields)


class RequestLogMiddleware:
    """
    Outermost ASGI layer: opens a log context per request, echoes or mints
    `x-request-id`, and writes one `http.finish` line with status and
    latency. Bodies are never logged; headers only scrubbed, and only when
    `log_headers` is set.
    """

    def __init__(self, app, *, logger_name: str = "shopedge.http", log_headers: bool = False):
        self.app = app
        self.log = logging.getLogger(logger_name)
        self.log_headers = bool(log_headers)

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            return await self.app(scope, receive, send)

        headers = {k.decode("latin1").lower(): v.decode("latin1") for k, v in (scope.get("headers") or [])}
        with log_context(path=scope.get("path", ""), method=scope.get("method", "")):
            rid = ensure_request_id(headers)
            if self.log_headers:
                self.log.info("http.start", extra={"headers": scrub_dict(headers)})

            status: Dict[str, Any] = {"code": None}
            t0 = time.perf_counter()

            async def _send(message):
                if message["type"] == "http.response.start":
                    status["code"] = message.get("status")
                    raw = list(message.get("headers") or [])
                    if not any(k.lower() == b"x-request-id" for k, _ in raw):
                        raw.append((b"x-request-id", rid.encode("latin1")))
                        message["headers"] = raw
                await send(message)

            try:
                await self.app(scope, receive, _send)
            finally:
                self.log.info(
                    "http.finish",
                    extra={"status": status["code"], "latency_ms": round((time.perf_counter() - t0) * 1000.0, 3)},
                )


_configured = False


def get_logger(name: str = "shopedge", level: Optional[str] = None) -> logging.Logger:
    """Named logger; the first call installs JSON output on the root logger."""
    global _configured
    if not _configured:
        configure_json_logging(level=level or os.environ.get("SHOPEDGE_LOG_LEVEL", "INFO"))
        _configured = True
    return logging.getLogger(name)


__all__ = [
    "bind",
    "log_context",
    "anonymize_ip",
    "configure_json_logging",
    "get_logger",
    "ensure_request_id",
    "log_security_event",
    "JSONFormatter",
    "RequestLogMiddleware",
    "scrub_dict",
]
