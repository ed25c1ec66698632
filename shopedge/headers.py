# FILE: shopedge/headers.py
from __future__ import annotations

from typing import Dict, Iterable, Mapping, MutableMapping, Optional, Tuple

from .config import Settings


def build_csp(directives: Mapping[str, Iterable[str]]) -> str:
    """`directive src1 src2; ...` in mapping order. Empty source lists emit the bare directive."""
    parts = []
    for name, sources in directives.items():
        srcs = " ".join(s for s in sources if s)
        parts.append(f"{name} {srcs}" if srcs else name)
    return "; ".join(parts)


class SecurityHeaders:
    """
    Fixed browser hardening header set attached to every edge response.

    Values are assigned, never appended, so applying the set twice yields
    the same headers as applying it once.
    """

    def __init__(
        self,
        *,
        hsts_max_age: int = 31_536_000,
        csp_directives: Optional[Mapping[str, Iterable[str]]] = None,
    ):
        self.hsts_max_age = int(max(0, hsts_max_age))
        csp = build_csp(csp_directives or {"default-src": ("'self'",), "frame-ancestors": ("'none'",)})
        self._headers: Tuple[Tuple[str, str], ...] = (
            ("X-Frame-Options", "DENY"),
            ("X-Content-Type-Options", "nosniff"),
            ("Referrer-Policy", "strict-origin-when-cross-origin"),
            ("X-XSS-Protection", "1; mode=block"),
            ("Permissions-Policy", "camera=(), microphone=(), geolocation=()"),
            ("Strict-Transport-Security", f"max-age={self.hsts_max_age}; includeSubDomains; preload"),
            ("Content-Security-Policy", csp),
            ("X-Permitted-Cross-Domain-Policies", "none"),
            ("Cross-Origin-Embedder-Policy", "require-corp"),
            ("Cross-Origin-Opener-Policy", "same-origin"),
            ("Cross-Origin-Resource-Policy", "same-origin"),
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "SecurityHeaders":
        return cls(hsts_max_age=settings.hsts_max_age, csp_directives=settings.csp_directives)

    def as_dict(self) -> Dict[str, str]:
        return dict(self._headers)

    def apply(self, headers: MutableMapping[str, str]) -> MutableMapping[str, str]:
        for name, value in self._headers:
            headers[name] = value
        return headers


__all__ = ["SecurityHeaders", "build_csp"]
