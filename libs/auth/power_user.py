# libs/auth/power_user.py
"""
Power-user check for admin routes.

Authentication itself lives in the external auth server; this module only
asks it who the caller is (GET {AUTH_SERVER_URL}/api/auth/me, forwarding
the caller's Authorization header and cookies) and checks the role.

- require_power_user: FastAPI dependency, 403 unless POWER_USER or ADMIN
"""

import logging
from typing import Any, Dict, Optional

import httpx
from fastapi import HTTPException, Request, status

from libs.config import Config, config as default_config

logger = logging.getLogger(__name__)

ELEVATED_ROLES = {"POWER_USER", "ADMIN"}


def check_is_power_user(role: Optional[str]) -> bool:
    """POWER_USER or ADMIN, case-insensitive."""
    if not role:
        return False
    return role.upper() in ELEVATED_ROLES


def _extract_role(payload: Dict[str, Any]) -> Optional[str]:
    # /api/auth/me answers either {"user": {...}}, {"data": {...}} or the user itself
    for key in ("user", "data"):
        inner = payload.get(key)
        if isinstance(inner, dict) and inner.get("role"):
            return inner.get("role")
    role = payload.get("role")
    return role if isinstance(role, str) else None


class PowerUserVerifier:
    """Asks the auth server for the caller's role. Any failure means not elevated."""

    def __init__(self, config: Optional[Config] = None, http_client: Optional[httpx.AsyncClient] = None):
        self.config = config or default_config
        self._client = http_client

    async def get_role(self, authorization: Optional[str], cookie: Optional[str]) -> Optional[str]:
        if not self.config.AUTH_SERVER_URL:
            logger.warning("AUTH_SERVER_URL not set; treating caller as regular user")
            return None
        if not authorization and not cookie:
            return None

        headers = {}
        if authorization:
            headers["Authorization"] = authorization
        if cookie:
            headers["Cookie"] = cookie

        url = f"{self.config.AUTH_SERVER_URL.rstrip('/')}/api/auth/me"
        try:
            if self._client is not None:
                response = await self._client.get(url, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self.config.HTTP_TIMEOUT_SECONDS) as client:
                    response = await client.get(url, headers=headers)
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as e:
            logger.info(f"Auth server rejected caller: {e.response.status_code}")
            return None
        except (httpx.RequestError, ValueError) as e:
            logger.error(f"Auth server request error: {e}")
            return None

        if not isinstance(payload, dict):
            return None
        return _extract_role(payload)

    async def is_power_user(self, request: Request) -> bool:
        role = await self.get_role(request.headers.get("authorization"), request.headers.get("cookie"))
        return check_is_power_user(role)


def get_power_user_verifier(request: Request) -> PowerUserVerifier:
    verifier = getattr(request.app.state, "power_user_verifier", None)
    if verifier is None:
        verifier = PowerUserVerifier()
        request.app.state.power_user_verifier = verifier
    return verifier


async def require_power_user(request: Request) -> bool:
    """FastAPI dependency: 403 unless the caller is a power user or admin."""
    verifier = get_power_user_verifier(request)
    if not await verifier.is_power_user(request):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="アクセス権限がありません: このAPIにアクセスするにはパワーユーザー権限が必要です",
        )
    return True
