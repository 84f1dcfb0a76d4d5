"""Shared-secret authentication for operator and cron endpoints.

Operator endpoints take `Authorization: Bearer <admin_token>`; scheduled job
triggers take the `X-Cron-Secret` header. Secrets are compared in constant
time. An unset secret rejects every request.
"""

from __future__ import annotations

import hmac

from fastapi import Depends, Header
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from dialer_engine.core.exceptions import UnauthorizedError
from dialer_engine.core.log import get_logger
from dialer_engine.dependencies import SettingsDep

log = get_logger(__name__)

# HTTP Bearer security scheme
security = HTTPBearer(auto_error=False)


def _matches(provided: str | None, expected: str) -> bool:
    if not expected or not provided:
        return False
    return hmac.compare_digest(provided.encode(), expected.encode())


async def require_admin_token(
    settings: SettingsDep,
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> str:
    """Dependency requiring the operator bearer token.

    Raises:
        UnauthorizedError: Missing or wrong token
    """
    token = credentials.credentials if credentials else None
    if not _matches(token, settings.api.admin_token):
        log.warning("Rejected admin request", has_token=token is not None)
        raise UnauthorizedError("Invalid or missing admin token")
    return token  # type: ignore[return-value]


async def require_cron_secret(
    settings: SettingsDep,
    x_cron_secret: str | None = Header(default=None),
) -> None:
    """Dependency requiring the cron shared secret.

    Raises:
        UnauthorizedError: Missing or wrong secret
    """
    if not _matches(x_cron_secret, settings.api.cron_secret):
        log.warning("Rejected job trigger", has_secret=x_cron_secret is not None)
        raise UnauthorizedError("Invalid or missing cron secret")
