from fastapi import Depends, Header, HTTPException
from jose import JWTError, jwt

from finepay.config import get_jwt_secret


def verify_token(authorization: str = Header(...)) -> dict:
    """Return the claims of a valid bearer token."""
    try:
        scheme, token = authorization.split()
        if scheme.lower() != "bearer":
            raise ValueError("Unsupported authorization scheme")
        claims = jwt.decode(token, get_jwt_secret(), algorithms=["HS256"])
    except (ValueError, JWTError):
        raise HTTPException(status_code=401, detail="Invalid or missing token")
    if "sub" not in claims:
        raise HTTPException(status_code=401, detail="Invalid or missing token")
    return claims


def require_admin(claims: dict = Depends(verify_token)) -> dict:
    if claims.get("role") != "admin":
        raise HTTPException(status_code=403, detail="Admin role required")
    return claims
