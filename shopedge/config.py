# shopedge/config.py
from __future__ import annotations

import json
import logging
import os
import re
import secrets
from typing import Any, Dict, FrozenSet, Tuple

import yaml
from blake3 import blake3
from pydantic import BaseModel, ConfigDict, model_validator


_log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Env helpers
# ---------------------------------------------------------------------------


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    v = raw.strip().lower()
    return v in ("1", "true", "yes", "on")


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_list(name: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return tuple(x.strip() for x in raw.split(",") if x.strip())


def _load_yaml_mapping(path: str) -> Dict[str, Any]:
    """
    Load a top-level mapping from YAML.

    Missing files and non-mapping documents are ignored; a file that exists
    but cannot be parsed is logged and ignored as well.
    """
    if not path or not os.path.exists(path):
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            doc = yaml.safe_load(f)
    except (OSError, yaml.YAMLError):
        _log.warning("failed to load YAML config from %s", path, exc_info=True)
        return {}
    if not isinstance(doc, dict):
        return {}
    return {str(k): v for k, v in doc.items()}


# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

HARDENED_PROFILES: FrozenSet[str] = frozenset({"production", "prod", "hardened"})

# Accepted subscriber numbers (Egyptian operators), matched after separators are stripped.
_DEFAULT_MOBILE_PATTERNS: Tuple[str, ...] = (
    r"^(\+2)?010[0-9]{8}$",
    r"^(\+2)?011[0-9]{8}$",
    r"^(\+2)?012[0-9]{8}$",
    r"^(\+2)?015[0-9]{8}$",
)

_DEFAULT_CSP: Dict[str, Tuple[str, ...]] = {
    "default-src": ("'self'",),
    "script-src": (
        "'self'",
        "'unsafe-inline'",
        "'unsafe-eval'",
        "https://apis.google.com",
        "https://www.google-analytics.com",
    ),
    "style-src": ("'self'", "'unsafe-inline'", "https://fonts.googleapis.com"),
    "font-src": ("'self'", "https://fonts.gstatic.com"),
    "img-src": ("'self'", "data:", "https:"),
    "connect-src": ("'self'", "https://www.google-analytics.com"),
    "frame-ancestors": ("'none'",),
}

# Values the hardened profile swaps in when the field still holds its dev default.
_HARDENED_OVERRIDES: Dict[str, Tuple[Any, Any]] = {
    "session_lifetime_s": (24 * 60 * 60, 12 * 60 * 60),
    "hsts_max_age": (31_536_000, 63_072_000),
    "identity_timeout_s": (10.0, 5.0),
    "session_cookie_name": ("session-token", "__Secure-session-token"),
    "secure_cookies": (False, True),
}


# ---------------------------------------------------------------------------
# Settings model
# ---------------------------------------------------------------------------


class Settings(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    # --- Core / identity --------------------------------------------------

    app_name: str = "shopedge"
    version: str = "0.1.0"
    # "dev" or a hardened profile name ("production").
    profile: str = "dev"
    log_level: str = "INFO"

    # --- Locales ----------------------------------------------------------

    locales: Tuple[str, ...] = ("en", "ar")
    default_locale: str = "en"

    # --- Rate limiting (fixed window per identity and tier) ---------------

    rate_auth_max: int = 10
    rate_auth_window_s: float = 15 * 60.0
    rate_api_max: int = 100
    rate_api_window_s: float = 60.0
    rate_general_max: int = 200
    rate_general_window_s: float = 60.0

    rate_sweep_interval_s: float = 5 * 60.0
    rate_max_tracked_keys: int = 10_000
    rate_evict_batch: int = 100

    # Read client identity from CF-Connecting-IP / X-Forwarded-For / X-Real-IP.
    trust_proxy_headers: bool = True

    # --- Request validation -----------------------------------------------

    min_user_agent_length: int = 10
    max_payload_bytes: int = 10 * 1024 * 1024
    extra_suspicious_user_agents: Tuple[str, ...] = ()
    mobile_patterns: Tuple[str, ...] = _DEFAULT_MOBILE_PATTERNS

    # --- Session ------------------------------------------------------------

    session_secret: str = ""
    session_lifetime_s: int = 24 * 60 * 60
    session_cookie_name: str = "session-token"
    secure_cookies: bool = False
    profile_cookie_name: str = "profile-completed"
    # How long a refresh outcome is shared by requests carrying the same token.
    refresh_cache_ttl_s: float = 5.0

    # --- Identity authority -------------------------------------------------

    identity_base_url: str = "http://localhost:8080"
    identity_timeout_s: float = 10.0

    # --- Security headers ---------------------------------------------------

    hsts_max_age: int = 31_536_000
    csp_directives: Dict[str, Tuple[str, ...]] = dict(_DEFAULT_CSP)

    @model_validator(mode="after")
    def _check_invariants(self) -> "Settings":
        if self.default_locale not in self.locales:
            raise ValueError("default_locale must be one of locales")
        for name in ("rate_auth", "rate_api", "rate_general"):
            if getattr(self, f"{name}_max") <= 0 or getattr(self, f"{name}_window_s") <= 0:
                raise ValueError(f"{name} limits must be positive")
        auth_rate = self.rate_auth_max / self.rate_auth_window_s
        for name in ("rate_api", "rate_general"):
            other_max = getattr(self, f"{name}_max")
            other_rate = other_max / getattr(self, f"{name}_window_s")
            if self.rate_auth_max >= other_max or auth_rate > other_rate:
                raise ValueError(f"auth tier must be stricter than {name[5:]} tier")
        if self.rate_max_tracked_keys <= 0 or self.rate_evict_batch <= 0:
            raise ValueError("rate limiter capacity settings must be positive")
        for pattern in self.mobile_patterns:
            try:
                re.compile(pattern)
            except re.error as e:
                raise ValueError(f"invalid mobile pattern {pattern!r}: {e}") from e
        return self

    # ------------------------------------------------------------------ #
    # Derived helpers
    # ------------------------------------------------------------------ #

    @property
    def hardened(self) -> bool:
        return self.profile.lower() in HARDENED_PROFILES

    def config_hash(self) -> str:
        """
        Stable digest of the effective settings, safe to expose.

        The session secret is excluded.
        """
        payload = self.model_dump(mode="json", exclude={"session_secret"})
        blob = json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")
        return blake3(blob).hexdigest()[:16]


# ---------------------------------------------------------------------------
# Loading / merging
# ---------------------------------------------------------------------------


def _apply_profile(merged: Dict[str, Any]) -> None:
    if str(merged.get("profile", "dev")).lower() not in HARDENED_PROFILES:
        return
    for key, (dev_value, hardened_value) in _HARDENED_OVERRIDES.items():
        if merged.get(key) == dev_value:
            merged[key] = hardened_value


def load_settings(**overrides: Any) -> Settings:
    """
    Load Settings from defaults, optional YAML, and environment variables.

    Priority:
      1. Settings defaults (in-code).
      2. YAML file pointed to by SHOPEDGE_CONFIG_PATH.
      3. Hardened-profile adjustments (only for fields still at dev defaults).
      4. Environment variables (SHOPEDGE_*), with bounds.
      5. Keyword overrides (tests, embedding applications).
    """
    merged: Dict[str, Any] = Settings().model_dump()

    yaml_doc = _load_yaml_mapping(os.environ.get("SHOPEDGE_CONFIG_PATH", "").strip())
    merged.update(yaml_doc)

    merged["profile"] = os.environ.get("SHOPEDGE_PROFILE", merged["profile"])
    if "profile" in overrides:
        merged["profile"] = overrides["profile"]
    _apply_profile(merged)

    merged["log_level"] = os.environ.get("SHOPEDGE_LOG_LEVEL", merged["log_level"])
    merged["locales"] = _env_list("SHOPEDGE_LOCALES", tuple(merged["locales"]))
    merged["default_locale"] = os.environ.get("SHOPEDGE_DEFAULT_LOCALE", merged["default_locale"])

    for tier in ("auth", "api", "general"):
        key_max, key_win = f"rate_{tier}_max", f"rate_{tier}_window_s"
        new_max = _env_int(f"SHOPEDGE_RATE_{tier.upper()}_MAX", merged[key_max])
        if new_max > 0:
            merged[key_max] = new_max
        new_win = _env_float(f"SHOPEDGE_RATE_{tier.upper()}_WINDOW", merged[key_win])
        if new_win > 0.0:
            merged[key_win] = new_win

    sweep = _env_float("SHOPEDGE_RATE_SWEEP_INTERVAL", merged["rate_sweep_interval_s"])
    if 1.0 <= sweep <= 3600.0:
        merged["rate_sweep_interval_s"] = sweep
    cap = _env_int("SHOPEDGE_RATE_MAX_KEYS", merged["rate_max_tracked_keys"])
    if cap > 0:
        merged["rate_max_tracked_keys"] = cap
    merged["trust_proxy_headers"] = _env_bool("SHOPEDGE_TRUST_PROXY_HEADERS", merged["trust_proxy_headers"])

    max_payload = _env_int("SHOPEDGE_MAX_PAYLOAD_BYTES", merged["max_payload_bytes"])
    if max_payload > 0:
        merged["max_payload_bytes"] = max_payload
    merged["extra_suspicious_user_agents"] = _env_list(
        "SHOPEDGE_SUSPICIOUS_USER_AGENTS", tuple(merged["extra_suspicious_user_agents"])
    )

    merged["session_secret"] = os.environ.get("SHOPEDGE_SESSION_SECRET", merged["session_secret"])
    lifetime = _env_int("SHOPEDGE_SESSION_LIFETIME", merged["session_lifetime_s"])
    if 60 <= lifetime <= 30 * 24 * 60 * 60:
        merged["session_lifetime_s"] = lifetime

    merged["identity_base_url"] = os.environ.get("SHOPEDGE_IDENTITY_BASE_URL", merged["identity_base_url"])
    timeout = _env_float("SHOPEDGE_IDENTITY_TIMEOUT", merged["identity_timeout_s"])
    if 0.1 <= timeout <= 60.0:
        merged["identity_timeout_s"] = timeout

    merged.update(overrides)

    if not merged.get("session_secret"):
        if str(merged["profile"]).lower() in HARDENED_PROFILES:
            raise ValueError("SHOPEDGE_SESSION_SECRET is required in the hardened profile")
        _log.warning("no session secret configured; using an ephemeral one (sessions will not survive restart)")
        merged["session_secret"] = secrets.token_hex(32)

    return Settings(**merged)


__all__ = ["Settings", "load_settings", "HARDENED_PROFILES"]
