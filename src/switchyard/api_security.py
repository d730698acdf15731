"""API security — optional bearer-token auth for the control endpoints.

SWITCHYARD_API_KEY, when set, is required as ``Authorization: Bearer <key>``
on every endpoint that creates events, dispatches pipelines, reads runs or
cancels them. When unset the API is open (trusted-network deployments).
The GitHub webhook is authenticated separately by its HMAC signature.
"""

from __future__ import annotations

import logging
import os
import secrets
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

logger = logging.getLogger(__name__)

API_KEY_ENV = "SWITCHYARD_API_KEY"

_bearer_scheme = HTTPBearer(auto_error=False)


def get_security_config() -> dict:
    """Current authentication status (reported by /health)."""
    api_key = os.environ.get(API_KEY_ENV)
    return {
        "authentication_required": api_key is not None,
        "api_key_env_var": API_KEY_ENV,
    }


def generate_api_key() -> str:
    """Generate a key suitable for SWITCHYARD_API_KEY."""
    return secrets.token_urlsafe(32)


async def require_api_key(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer_scheme),
) -> bool:
    """FastAPI dependency that validates the API key if one is configured.

    An empty-string key still enforces authentication; only an unset
    variable disables it.
    """
    expected_key = os.environ.get(API_KEY_ENV)
    if expected_key is None:
        return True

    client = request.client.host if request.client else "unknown"
    if credentials is None:
        logger.warning("API request without credentials from %s", client)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required. Provide Authorization: Bearer <api_key> header.",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if not secrets.compare_digest(credentials.credentials, expected_key):
        logger.warning("Invalid API key from %s", client)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key.",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return True
