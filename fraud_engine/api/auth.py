"""
API token guards.

Each guard enforces one optional token (API, admin, metrics) sent as
X-API-Key or as a Bearer token. A guard whose token is not configured
lets every request through.
"""

import hmac
import logging

from fastapi import Header, HTTPException, status

from ..config import settings

logger = logging.getLogger("fraud_engine.api")


def _extract_token(authorization: str | None, x_api_key: str | None) -> str | None:
    if x_api_key:
        return x_api_key.strip()
    if authorization and authorization.lower().startswith("bearer "):
        return authorization.split(" ", 1)[1].strip()
    return None


def _token_guard(setting_name: str):
    """Build a dependency checking the token stored in settings.<setting_name>."""

    def guard(
        authorization: str | None = Header(default=None),
        x_api_key: str | None = Header(default=None),
    ) -> None:
        expected = getattr(settings, setting_name)
        if not expected:
            return
        token = _extract_token(authorization, x_api_key)
        if token is None or not hmac.compare_digest(token, expected):
            logger.info("Rejected request without a valid %s", setting_name)
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")

    return guard


require_api_token = _token_guard("api_token")
require_admin_token = _token_guard("admin_token")
require_metrics_token = _token_guard("metrics_token")
