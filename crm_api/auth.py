# crm_api/auth.py
import os
from typing import Optional

from fastapi import Header, HTTPException, status

API_KEY_HEADER = "X-API-Key"
TENANT_HEADER = "X-Tenant-Id"
USER_HEADER = "X-User-Id"


def get_api_key() -> Optional[str]:
    """Get API key from environment variable."""
    return os.getenv("API_KEY")


def verify_api_key(api_key: Optional[str] = Header(None, alias=API_KEY_HEADER)) -> str:
    """
    Verify API key from request header.

    Raises HTTPException if key is missing or invalid.
    """
    expected_key = get_api_key()

    if not expected_key:
        # No key configured: development mode
        return ""

    if not api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Missing {API_KEY_HEADER} header",
        )

    if api_key != expected_key:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid API key",
        )

    return api_key


def get_tenant_id(tenant_id: Optional[str] = Header(None, alias=TENANT_HEADER)) -> str:
    """Tenant every request is scoped to. Required."""
    if not tenant_id or not tenant_id.strip():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Missing {TENANT_HEADER} header",
        )
    return tenant_id.strip()


def get_user_id(user_id: Optional[str] = Header(None, alias=USER_HEADER)) -> Optional[str]:
    """Acting user, used for attribution only."""
    return user_id.strip() if user_id and user_id.strip() else None
