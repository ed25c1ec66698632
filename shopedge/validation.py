# FILE: shopedge/validation.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, List, Mapping, Tuple

from .config import Settings

# Known scanner signatures (matched as case-insensitive substrings).
SUSPICIOUS_USER_AGENTS: Tuple[str, ...] = (
    "sqlmap",
    "nikto",
    "netsparker",
    "acunetix",
    "burpsuite",
)

MUTATING_METHODS = frozenset({"POST", "PUT", "PATCH"})


@dataclass
class ValidationResult:
    is_valid: bool
    errors: List[str] = field(default_factory=list)


class RequestValidator:
    """
    Stateless request-shape checks against abuse heuristics.

    Every check runs; failures accumulate in `errors`. Only headers are
    inspected, the body is never read.
    """

    def __init__(
        self,
        *,
        min_user_agent_length: int = 10,
        max_payload_bytes: int = 10 * 1024 * 1024,
        extra_signatures: Iterable[str] = (),
    ):
        self.min_user_agent_length = int(min_user_agent_length)
        self.max_payload_bytes = int(max_payload_bytes)
        self.signatures: Tuple[str, ...] = tuple(
            s.lower() for s in (*SUSPICIOUS_USER_AGENTS, *extra_signatures) if s
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "RequestValidator":
        return cls(
            min_user_agent_length=settings.min_user_agent_length,
            max_payload_bytes=settings.max_payload_bytes,
            extra_signatures=settings.extra_suspicious_user_agents,
        )

    def validate(self, method: str, headers: Mapping[str, str]) -> ValidationResult:
        errors: List[str] = []

        user_agent = headers.get("user-agent") or ""
        if len(user_agent.strip()) < self.min_user_agent_length:
            errors.append("Invalid User-Agent")

        ua = user_agent.lower()
        if ua and any(sig in ua for sig in self.signatures):
            errors.append("Suspicious User-Agent detected")

        if method.upper() in MUTATING_METHODS:
            raw = headers.get("content-length")
            if raw is not None and raw.strip() != "":
                try:
                    declared = int(raw.strip())
                except ValueError:
                    errors.append("Invalid Content-Length")
                else:
                    if declared < 0:
                        errors.append("Invalid Content-Length")
                    elif declared > self.max_payload_bytes:
                        errors.append("Request payload too large")

        return ValidationResult(is_valid=not errors, errors=errors)


__all__ = ["RequestValidator", "ValidationResult", "SUSPICIOUS_USER_AGENTS"]
