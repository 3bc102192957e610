import hmac

from fastapi import Header, HTTPException
from jose import JWTError, jwt

from billing import config


def verify_token(authorization: str = Header(...)) -> str:
    """Validate the bearer JWT and return the caller's user id (``sub``)."""
    try:
        scheme, token = authorization.split()
        if scheme.lower() != "bearer" or not config.JWT_SECRET:
            raise ValueError("unsupported scheme")
        claims = jwt.decode(token, config.JWT_SECRET, algorithms=["HS256"])
    except (ValueError, JWTError):
        raise HTTPException(status_code=401, detail="Invalid or missing token")

    user_id = claims.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid or missing token")
    return user_id


def verify_internal_key(authorization: str = Header(None)):
    """Guard for scheduled-job triggers (cron, internal callers)."""
    expected = config.INTERNAL_API_KEY
    if not expected or not authorization \
            or not hmac.compare_digest(authorization, f"Bearer {expected}"):
        raise HTTPException(status_code=401, detail="Unauthorized")
