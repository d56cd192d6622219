"""
Authentication utilities for JWT validation
"""
import asyncio
import logging
import os
import secrets
from typing import Optional

from fastapi import HTTPException, Header, Request
from jose import JWTError, jwt
from dotenv import load_dotenv

load_dotenv()
load_dotenv('../.env')

JWT_ALGORITHM = "HS256"
JWT_AUDIENCE = "authenticated"

logger = logging.getLogger(__name__)


def _bearer_token(authorization: Optional[str]) -> str:
    if not authorization:
        raise HTTPException(status_code=401, detail="Authorization header required")
    if not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Invalid authorization header format")
    return authorization[len("Bearer "):].strip()


def decode_supabase_jwt(token: str, secret: str) -> dict:
    """
    Verify a Supabase access token locally.

    Returns:
        dict: ``{"id", "email", "role"}``

    Raises:
        HTTPException: 401 if the token is invalid or has no subject
    """
    try:
        payload = jwt.decode(token, secret, algorithms=[JWT_ALGORITHM], audience=JWT_AUDIENCE)
    except JWTError as e:
        logger.info(f"🔐 [Auth] Rejected token: {e}")
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Token has no subject")
    return {"id": user_id, "email": payload.get("email"), "role": payload.get("role", "authenticated")}


async def get_current_user(request: Request, authorization: Optional[str] = Header(None)) -> dict:
    """
    Validate the bearer token and return the user.

    Uses SUPABASE_JWT_SECRET when set, otherwise asks Supabase auth.

    Raises:
        HTTPException: If token is invalid or cannot be verified
    """
    token = _bearer_token(authorization)

    secret = os.getenv("SUPABASE_JWT_SECRET")
    if secret:
        return decode_supabase_jwt(token, secret)

    supabase = getattr(request.app.state, "supabase", None)
    if supabase is None:
        raise HTTPException(status_code=401, detail="Could not validate credentials")

    try:
        user_response = await asyncio.to_thread(supabase.auth.get_user, token)
    except Exception as e:
        logger.warning(f"⚠️ [Auth] Supabase auth lookup failed: {e}")
        raise HTTPException(status_code=401, detail="Could not validate credentials")

    if not user_response or not user_response.user:
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    user = user_response.user
    return {"id": user.id, "email": user.email, "role": getattr(user, "role", None) or "authenticated"}


def verify_cron_secret(authorization: Optional[str] = Header(None)) -> None:
    """Require ``Bearer <CRON_SECRET>`` when CRON_SECRET is configured."""
    expected = os.getenv("CRON_SECRET")
    if not expected:
        return
    if not authorization or not secrets.compare_digest(authorization, f"Bearer {expected}"):
        raise HTTPException(status_code=401, detail="Unauthorized")
