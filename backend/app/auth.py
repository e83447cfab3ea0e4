"""
Authentication for the user-facing API (merchant map, transactions).

- get_current_user verifies the Supabase JWT. When SUPABASE_JWT_SECRET is set
  the token is verified locally with python-jose (no network round-trip);
  otherwise the Supabase Auth API is asked.
- get_org_context resolves the organization from the X-Org-Id header and
  checks the caller is a member of it via org_members.

The inbound webhook does not use these; it is authenticated by the provider
adapter's signature check.
"""

import os
from typing import Optional

from fastapi import Depends, HTTPException, Header
from pydantic import BaseModel

from app.db import supabase
from app.dependencies import get_store
from app.services.store import DataStore

# ---------------------------------------------------------------------------
# Module-level JWT secret, loaded once at startup.
# Set SUPABASE_JWT_SECRET in your environment (Project Settings > API > JWT Secret).
# When not set the implementation falls back to the Supabase Auth API.
# ---------------------------------------------------------------------------
SUPABASE_JWT_SECRET: Optional[str] = os.environ.get("SUPABASE_JWT_SECRET") or None


class OrgContext(BaseModel):
    """Authenticated caller acting within one organization."""

    user_id: str
    org_id: str


async def get_current_user(authorization: Optional[str] = Header(None)) -> str:
    """
    Extract and verify JWT token from Authorization header.

    Args:
        authorization: Authorization header with format "Bearer <token>"

    Returns:
        user_id: Authenticated user's ID (the JWT ``sub`` claim)

    Raises:
        HTTPException: 401 if token is missing, invalid, or expired
    """
    if not authorization:
        raise HTTPException(status_code=401, detail="Not authenticated")

    parts = authorization.split(" ")
    if len(parts) != 2 or parts[0] != "Bearer":
        raise HTTPException(status_code=401, detail="Invalid authentication credentials")

    token = parts[1]

    if SUPABASE_JWT_SECRET:
        return _verify_jwt_locally(token)

    return await _verify_jwt_remotely(token)


def _verify_jwt_locally(token: str) -> str:
    """
    Verify a Supabase JWT locally using python-jose and return the user ID.

    Supabase issues HS256 JWTs signed with the project's JWT secret.

    Raises:
        HTTPException 401 on any verification failure.
    """
    from jose import jwt, JWTError, ExpiredSignatureError

    try:
        payload = jwt.decode(
            token,
            SUPABASE_JWT_SECRET,
            algorithms=["HS256"],
            options={"verify_aud": False},  # Supabase JWTs use 'authenticated' role, not a fixed audience
        )
    except ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid token")

    user_id: Optional[str] = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token")

    return user_id


async def _verify_jwt_remotely(token: str) -> str:
    """
    Verify a JWT via the Supabase Auth API (fallback when no JWT secret is set).

    Raises:
        HTTPException 401 on any verification failure, 500 when neither a
        JWT secret nor a Supabase client is configured.
    """
    if supabase is None:
        raise HTTPException(status_code=500, detail="Authentication is not configured")

    try:
        response = supabase.auth.get_user(token)

        if not response.user:
            raise HTTPException(status_code=401, detail="Invalid token")

        return response.user.id

    except HTTPException:
        raise
    except Exception as e:
        if "expired" in str(e).lower():
            raise HTTPException(status_code=401, detail="Token expired")
        raise HTTPException(status_code=401, detail="Invalid token")


async def get_org_context(
    x_org_id: Optional[str] = Header(None),
    user_id: str = Depends(get_current_user),
    store: DataStore = Depends(get_store),
) -> OrgContext:
    """
    Resolve the organization the caller is acting in.

    Raises:
        HTTPException: 400 if X-Org-Id is missing, 403 if the user is not a
            member of that organization, 500 on database error
    """
    if not x_org_id or not x_org_id.strip():
        raise HTTPException(status_code=400, detail="X-Org-Id header is required")

    org_id = x_org_id.strip()

    try:
        is_member = store.for_org(org_id).is_member(user_id)
    except Exception:
        raise HTTPException(status_code=500, detail="Failed to verify organization membership")

    if not is_member:
        raise HTTPException(
            status_code=403,
            detail="You are not a member of this organization",
        )

    return OrgContext(user_id=user_id, org_id=org_id)
