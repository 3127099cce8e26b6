import os
from typing import Optional

import structlog
from fastapi import Header, HTTPException
from jose import JOSEError, jwt

logger = structlog.get_logger(__name__)


def get_current_user_id(authorization: Optional[str] = Header(None)) -> str:
    """Resolve the caller from a bearer JWT; the ``sub`` claim is the user id."""
    try:
        if not authorization:
            raise ValueError("missing Authorization header")
        scheme, token = authorization.split()
        if scheme.lower() != "bearer":
            raise ValueError("not a bearer token")
        claims = jwt.decode(token, os.getenv("JWT_SECRET"), algorithms=["HS256"])
        user_id = claims["sub"]
    except (ValueError, KeyError, JOSEError) as e:
        logger.info("authentication_failed", error=str(e))
        raise HTTPException(status_code=401, detail="Invalid or missing token")
    return str(user_id)
