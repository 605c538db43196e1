"""
ChainTrust — Caller Authentication
HS256 bearer tokens. The `sub` claim is the caller principal every
ownership check compares against.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import HTTPException, Request

from chaintrust.config import settings

JWT_ALGORITHM = "HS256"
JWT_EXPIRY_DAYS = 30


def create_access_token(principal: str, expires_in: Optional[timedelta] = None) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": principal,
        "iat": now,
        "exp": now + (expires_in or timedelta(days=JWT_EXPIRY_DAYS)),
    }
    return jwt.encode(payload, settings.SECRET_KEY, algorithm=JWT_ALGORITHM)


def decode_access_token(token: str) -> Optional[str]:
    """Principal for a valid token, None otherwise."""
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        return None
    except jwt.InvalidTokenError:
        return None
    return payload.get("sub") or None


async def get_caller(request: Request) -> Optional[str]:
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None
    return decode_access_token(auth_header[7:])


async def require_caller(request: Request) -> str:
    """Require a valid bearer token - raises 401 otherwise."""
    caller = await get_caller(request)
    if not caller:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return caller
