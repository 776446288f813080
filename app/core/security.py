from datetime import datetime, timedelta
from typing import Any, Dict, Optional
from jose import JWTError, jwt
from app.core.config import settings
import logging

logger = logging.getLogger(__name__)

# Tokens are issued by the OTP login service; billing routes only verify them.
ACCESS_TOKEN_TYPE = "access"


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """Signed access token for `data["sub"]` (the user's phone number)."""
    expire = datetime.utcnow() + (expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES))
    claims = {**data, "exp": expire, "type": ACCESS_TOKEN_TYPE}
    return jwt.encode(claims, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def decode_token(token: str) -> Optional[Dict[str, Any]]:
    try:
        return jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except JWTError as e:
        logger.debug(f"Rejected token: {str(e)}")
        return None


def verify_token(token: str) -> Optional[str]:
    """Subject of a valid access token, or None."""
    claims = decode_token(token)
    if not claims or claims.get("type") != ACCESS_TOKEN_TYPE:
        return None
    return claims.get("sub")
