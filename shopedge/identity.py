# FILE: shopedge/identity.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from .config import Settings
from .errors import IdentityRejected, SessionExpiredUnrefreshable, UpstreamUnavailable

_logger = logging.getLogger(__name__)

_DEFAULT_HEADERS = {
    "Accept": "application/json",
    "Cache-Control": "no-store",
}


@dataclass(frozen=True)
class IdentityProfile:
    """Identity fields returned by the authority on a successful login."""

    user_id: str
    access_token: str
    mobile: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    address: Optional[str] = None


class IdentityClient:
    """
    Async client for the identity authority.

    Endpoints:
      - POST /auth/login    {mobile, password} -> {userId, token, ...}
      - POST /auth/refresh  bearer + {token}   -> {accessToken | token}
      - POST /auth/logout   bearer             (fire-and-forget)

    Each call has a fixed timeout and is attempted once. Timeouts and
    connection errors surface as `UpstreamUnavailable`; explicit refusals
    as `IdentityRejected` (login) or `SessionExpiredUnrefreshable`
    (refresh). Tokens and passwords are never logged.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = float(timeout)
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(self.timeout),
            headers=_DEFAULT_HEADERS,
            transport=transport,
        )

    @classmethod
    def from_settings(
        cls, settings: Settings, *, transport: Optional[httpx.AsyncBaseTransport] = None
    ) -> "IdentityClient":
        return cls(settings.identity_base_url, timeout=settings.identity_timeout_s, transport=transport)

    async def aclose(self) -> None:
        await self._client.aclose()

    # ------------- transport -------------

    async def _post(
        self,
        path: str,
        *,
        json_body: Optional[Dict[str, Any]] = None,
        bearer: Optional[str] = None,
        operation: str,
    ) -> httpx.Response:
        headers: Dict[str, str] = {}
        if bearer:
            headers["Authorization"] = f"Bearer {bearer}"
        try:
            return await self._client.post(path, json=json_body, headers=headers)
        except httpx.TimeoutException as e:
            _logger.warning("identity %s timed out after %.1fs", operation, self.timeout)
            raise UpstreamUnavailable(f"identity {operation} timed out") from e
        except httpx.RequestError as e:
            _logger.warning("identity %s connection error: %s", operation, type(e).__name__)
            raise UpstreamUnavailable(f"identity {operation} unreachable") from e

    @staticmethod
    def _json(response: httpx.Response) -> Dict[str, Any]:
        try:
            data = response.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}

    # ------------- operations -------------

    async def login(self, mobile: str, password: str) -> IdentityProfile:
        resp = await self._post(
            "/auth/login", json_body={"mobile": mobile, "password": password}, operation="login"
        )
        if resp.status_code >= 500:
            _logger.warning("identity login failed upstream: status=%d", resp.status_code)
            raise UpstreamUnavailable(f"identity login returned {resp.status_code}")
        if resp.status_code >= 400:
            data = self._json(resp)
            message = data.get("message") or data.get("error") or "invalid credentials"
            raise IdentityRejected(str(message), upstream_status=resp.status_code)

        data = self._json(resp)
        user_id, token = data.get("userId"), data.get("token")
        if not user_id or not token:
            raise IdentityRejected("identity login response missing userId/token", upstream_status=resp.status_code)
        return IdentityProfile(
            user_id=str(user_id),
            access_token=str(token),
            mobile=str(data.get("lastMobileDigit") or mobile),
            first_name=data.get("firstName"),
            last_name=data.get("lastName"),
            address=data.get("address"),
        )

    async def refresh(self, access_token: str) -> str:
        """Exchange the current access token for a new one."""
        resp = await self._post(
            "/auth/refresh", json_body={"token": access_token}, bearer=access_token, operation="refresh"
        )
        if resp.status_code >= 500:
            raise UpstreamUnavailable(f"identity refresh returned {resp.status_code}")
        if resp.status_code >= 400:
            raise SessionExpiredUnrefreshable(f"identity refresh refused ({resp.status_code})")

        data = self._json(resp)
        new_token = data.get("accessToken") or data.get("token")
        if not new_token:
            raise SessionExpiredUnrefreshable("identity refresh response carried no token")
        return str(new_token)

    async def logout(self, access_token: str) -> bool:
        """Best-effort upstream invalidation; never raises."""
        try:
            resp = await self._post("/auth/logout", bearer=access_token, operation="logout")
        except UpstreamUnavailable:
            return False
        if resp.status_code >= 400:
            _logger.info("identity logout returned %d", resp.status_code)
            return False
        return True


__all__ = ["IdentityClient", "IdentityProfile"]
