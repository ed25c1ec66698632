# FILE: shopedge/paths.py
from __future__ import annotations

import re
from enum import Enum
from typing import List, Optional, Sequence, Tuple

from .ratelimit import Tier

DEFAULT_LOCALES: Tuple[str, ...] = ("en", "ar")
DEFAULT_LOCALE = "en"

AUTH_API_PREFIX = "/api/auth/"
API_PREFIX = "/api/"

_STATIC_PREFIXES: Tuple[str, ...] = ("/_next/", "/static/", "/api/_")

# Segment names under /{locale}/ (matched on a segment boundary).
_PUBLIC_EXACT = ("about", "contact", "signin", "signup", "forgot-password", "reset-password")
_PUBLIC_TREES = ("products", "categories", "search")
_PROTECTED_TREES = ("checkout", "profile", "orders", "settings", "dashboard", "complete-profile")
_AUTH_PAGES = ("signin", "signup", "complete-profile")
_AUTH_TIER_PAGES = ("signin", "signup", "forgot-password", "reset-password", "complete-profile")

_PUBLIC_API_PREFIXES = ("/api/auth/", "/api/public/")
_PROTECTED_API_PREFIXES = ("/api/protected/", "/api/user/")

_LANG_ITEM = re.compile(r"^\s*([A-Za-z]{1,8}(?:-[A-Za-z0-9]{1,8})*|\*)\s*(?:;\s*q\s*=\s*([0-9.]+))?\s*$")


class PathClass(str, Enum):
    STATIC = "static"
    AUTH_API = "auth_api"
    LOCALE_MISSING = "locale_missing"
    PROTECTED = "protected"
    AUTH_PAGE = "auth_page"
    PUBLIC = "public"
    UNCLASSIFIED = "unclassified"


def _alt(names: Sequence[str]) -> str:
    return "|".join(re.escape(n) for n in names)


class PathClassifier:
    """
    Pure path predicates for the edge pipeline.

    Operates on the URL path string only; no I/O and no request state.
    Regexes are compiled once per supported-locale set.
    """

    def __init__(self, locales: Sequence[str] = DEFAULT_LOCALES, default_locale: str = DEFAULT_LOCALE):
        if not locales:
            raise ValueError("at least one locale is required")
        self.locales: Tuple[str, ...] = tuple(locales)
        self.default_locale = default_locale if default_locale in self.locales else self.locales[0]

        loc = _alt(self.locales)
        self._locale_prefix = re.compile(rf"^/({loc})(?:/|$)")
        self._public = [
            re.compile(rf"^/(?:{loc})/?$"),
            re.compile(rf"^/(?:{loc})/(?:{_alt(_PUBLIC_EXACT)})/?$"),
            re.compile(rf"^/(?:{loc})/(?:{_alt(_PUBLIC_TREES)})(?:/|$)"),
        ]
        self._protected = re.compile(rf"^/(?:{loc})/(?:{_alt(_PROTECTED_TREES)})(?:/|$)")
        self._auth_page = re.compile(rf"^/(?:{loc})/(?:{_alt(_AUTH_PAGES)})/?$")
        self._complete_profile = re.compile(rf"^/(?:{loc})/complete-profile/?$")
        self._auth_tier = re.compile(rf"^(?:/(?:{loc}))?/(?:{_alt(_AUTH_TIER_PAGES)})(?:/|$)")

    # ------------- predicates -------------

    def has_locale_prefix(self, path: str) -> bool:
        return self._locale_prefix.match(path or "") is not None

    def get_locale_from_path(self, path: str) -> Optional[str]:
        m = self._locale_prefix.match(path or "")
        return m.group(1) if m else None

    def is_static_or_internal(self, path: str) -> bool:
        p = path or "/"
        if p.startswith(_STATIC_PREFIXES):
            return True
        last = p.rstrip("/").rsplit("/", 1)[-1]
        return "." in last

    def is_auth_api_route(self, path: str) -> bool:
        return (path or "").startswith(AUTH_API_PREFIX)

    def is_public_path(self, path: str) -> bool:
        p = path or ""
        if p.startswith(_PUBLIC_API_PREFIXES):
            return True
        return any(rx.match(p) for rx in self._public)

    def is_protected_path(self, path: str) -> bool:
        p = path or ""
        if p.startswith(_PROTECTED_API_PREFIXES):
            return True
        return self._protected.match(p) is not None

    def is_auth_page(self, path: str) -> bool:
        return self._auth_page.match(path or "") is not None

    def is_complete_profile_page(self, path: str) -> bool:
        return self._complete_profile.match(path or "") is not None

    def rate_limit_tier(self, path: str) -> Tier:
        p = path or ""
        if self._auth_tier.match(p):
            return Tier.AUTH
        if p.startswith(API_PREFIX):
            return Tier.API
        return Tier.GENERAL

    def classify(self, path: str) -> PathClass:
        """Single label; the cheapest, most specific check wins."""
        if self.is_static_or_internal(path):
            return PathClass.STATIC
        if self.is_auth_api_route(path):
            return PathClass.AUTH_API
        if not (path or "").startswith(API_PREFIX) and not self.has_locale_prefix(path):
            return PathClass.LOCALE_MISSING
        if self.is_protected_path(path):
            return PathClass.PROTECTED
        if self.is_auth_page(path):
            return PathClass.AUTH_PAGE
        if self.is_public_path(path):
            return PathClass.PUBLIC
        return PathClass.UNCLASSIFIED

    # ------------- locale handling -------------

    def negotiate_locale(self, accept_language: Optional[str]) -> str:
        """
        Best supported locale for an Accept-Language header.

        Ranges are ordered by q-value (ties keep header order); each range is
        matched exactly, then by primary subtag. `*` or no match falls back
        to the default locale.
        """
        for tag in parse_accept_language(accept_language):
            if tag == "*":
                return self.default_locale
            for candidate in (tag, tag.split("-", 1)[0]):
                if candidate in self.locales:
                    return candidate
        return self.default_locale

    def localize_path(self, path: str, locale: str) -> str:
        """Prefix `/{locale}` unless the path already carries a supported locale."""
        p = path or "/"
        if not p.startswith("/"):
            p = "/" + p
        if self.has_locale_prefix(p):
            return p
        if p == "/":
            return f"/{locale}"
        return f"/{locale}{p}"


def parse_accept_language(header: Optional[str]) -> List[str]:
    """Language ranges from an Accept-Language header, best first, q=0 dropped."""
    ranked: List[Tuple[float, int, str]] = []
    for idx, part in enumerate((header or "").split(",")):
        m = _LANG_ITEM.match(part)
        if not m:
            continue
        try:
            q = float(m.group(2)) if m.group(2) is not None else 1.0
        except ValueError:
            continue
        if q <= 0.0:
            continue
        ranked.append((-min(q, 1.0), idx, m.group(1).lower()))
    ranked.sort()
    return [tag for _, _, tag in ranked]


__all__ = [
    "PathClass",
    "PathClassifier",
    "parse_accept_language",
    "DEFAULT_LOCALES",
    "DEFAULT_LOCALE",
    "AUTH_API_PREFIX",
]
