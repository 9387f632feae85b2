"""
Authentication for tutor endpoints.

Tokens are verified locally with the Supabase JWT secret when it is
configured, otherwise by asking Supabase Auth. The role comes from the
`users` table.
"""
import logging
import os
from typing import Optional

from dotenv import load_dotenv
from fastapi import Header, HTTPException
from jose import JWTError, jwt

from .supabase_client import get_supabase_client

load_dotenv()
load_dotenv('../.env')

logger = logging.getLogger(__name__)

JWT_SECRET = os.getenv("SUPABASE_JWT_SECRET")
JWT_ALGORITHM = "HS256"
JWT_AUDIENCE = "authenticated"


def _user_id_from_token(token: str, supabase) -> str:
    if JWT_SECRET:
        try:
            claims = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM], audience=JWT_AUDIENCE)
        except JWTError as e:
            logger.warning(f"⚠️ [Auth] Rejected token: {e}")
            raise HTTPException(status_code=401, detail="Invalid or expired token")
        user_id = claims.get("sub")
        if not user_id:
            raise HTTPException(status_code=401, detail="Token has no subject")
        return user_id

    user_response = supabase.auth.get_user(token)
    if not user_response or not user_response.user:
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    return user_response.user.id


async def get_current_user(authorization: Optional[str] = Header(None)) -> dict:
    """
    Validate the bearer token and load the caller's role.

    Returns:
        dict with id, role and name

    Raises:
        HTTPException: 401 for bad tokens, 404 when the user row is missing
    """
    if not authorization:
        raise HTTPException(status_code=401, detail="Authorization header required")
    if not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Invalid authorization header format")

    token = authorization[len("Bearer "):]

    try:
        supabase = get_supabase_client()
        user_id = _user_id_from_token(token, supabase)

        result = supabase.table('users').select('id, name, role').eq('id', user_id).limit(1).execute()
        if not result.data:
            raise HTTPException(status_code=404, detail="User profile not found")

        row = result.data[0]
        return {
            "id": row["id"],
            "name": row.get("name"),
            "role": row.get("role") or "student",
        }
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"❌ [Auth] Could not validate credentials: {e}")
        raise HTTPException(status_code=401, detail="Could not validate credentials")


def require_teacher(user: dict):
    """
    Raises:
        HTTPException: 403 unless the user has the teacher role
    """
    if user.get("role") != "teacher":
        raise HTTPException(status_code=403, detail="Teacher access required")
