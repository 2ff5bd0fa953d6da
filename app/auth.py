"""
Authentication for operational endpoints.

The billing-period reset is triggered by an external cron service that sends
``Authorization: Bearer <CRON_SECRET>``. When no secret is configured the
endpoint stays closed.
"""

import logging
import secrets
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from metering.config import get_settings

logger = logging.getLogger(__name__)

CRON_BEARER = HTTPBearer(auto_error=False)


def _unauthorized(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=message,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def verify_cron_secret(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(CRON_BEARER),
) -> None:
    """
    Verify the cron bearer secret.

    Raises:
        HTTPException: 401 if the secret is missing, wrong or not configured.
    """
    client = request.client.host if request.client else "unknown"
    expected = get_settings().metering.cron_secret

    if expected is None or not expected.get_secret_value():
        logger.warning(f"Reset requested from {client} but CRON_SECRET is not configured")
        raise _unauthorized("Unauthorized")

    if credentials is None or not credentials.credentials:
        logger.warning(f"Missing cron secret in request from {client}")
        raise _unauthorized("Unauthorized")

    if not secrets.compare_digest(credentials.credentials, expected.get_secret_value()):
        logger.warning(f"Invalid cron secret in request from {client}")
        raise _unauthorized("Unauthorized")
