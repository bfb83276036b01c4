"""API-key authentication and rate limiting for the HTTP surface."""

import os
import secrets
import logging

from fastapi import HTTPException, Security
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from slowapi import Limiter
from slowapi.util import get_remote_address

logger = logging.getLogger(__name__)

security = HTTPBearer()

limiter = Limiter(key_func=get_remote_address)

# Charges hit the card network, so they get a tighter budget than reads.
CHARGE_RATE_LIMIT = os.getenv("CHARGE_RATE_LIMIT", "30/minute")
ADMIN_RATE_LIMIT = os.getenv("ADMIN_RATE_LIMIT", "10/minute")


async def verify_api_key(credentials: HTTPAuthorizationCredentials = Security(security)) -> str:
    """Verify the bearer API key.

    Args:
        credentials: HTTP Bearer credentials from the request.

    Returns:
        The verified API key.

    Raises:
        HTTPException: 500 if no API_KEY is configured, 401 if the key does not match.
    """
    api_key = credentials.credentials
    expected_key = os.getenv("API_KEY")
    if not expected_key:
        logger.error("API_KEY environment variable is not configured")
        raise HTTPException(status_code=500, detail="Server configuration error")
    if not secrets.compare_digest(api_key.encode(), expected_key.encode()):
        logger.warning("Rejected request with an invalid API key")
        raise HTTPException(status_code=401, detail="Invalid API key")
    return api_key
