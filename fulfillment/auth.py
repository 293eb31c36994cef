from typing import Any, Dict

from fastapi import Depends, Header, HTTPException
from jose import JOSEError, jwt

from fulfillment.config import get_settings


def verify_token(authorization: str = Header(...)) -> Dict[str, Any]:
    settings = get_settings()
    try:
        scheme, token = authorization.split()
        if scheme.lower() != "bearer":
            raise ValueError("not a bearer token")
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except (ValueError, JOSEError):
        raise HTTPException(status_code=401, detail="Invalid or missing token")


def require_store_access(store_id: str, claims: Dict[str, Any] = Depends(verify_token)) -> Dict[str, Any]:
    """Single guard for every store-scoped route: the token must list the store."""
    if store_id not in claims.get("stores", []):
        raise HTTPException(status_code=403, detail="No access to this store")
    return claims
