# ragmaster/security.py
from dataclasses import dataclass
from typing import Any, Dict, Optional

import requests
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import jwt, JWTError
from sqlalchemy.orm import Session

from . import models
from .config import JWT_ALG, SUPABASE_ANON_KEY, SUPABASE_JWT_SECRET, SUPABASE_URL
from .database import get_db
from .log import get_logger
from .models import utcnow

logger = get_logger(__name__)

security = HTTPBearer(auto_error=False)

logger.info("[SECURITY] token verification: %s",
            "local JWT secret" if SUPABASE_JWT_SECRET else "remote auth service")


@dataclass
class Principal:
    id: str
    email: Optional[str]
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)


def _decode_local(token: str) -> Dict[str, Any]:
    try:
        # Supabase tokens carry aud=authenticated; the signature is what we trust
        payload = jwt.decode(token, SUPABASE_JWT_SECRET, algorithms=[JWT_ALG], options={"verify_aud": False})
    except JWTError as e:
        logger.warning("[SECURITY] JWT decode error: %s", e)
        raise _unauthorized("Invalid Token")
    if not payload.get("sub"):
        raise _unauthorized("Invalid Token")
    return {"id": payload["sub"], "email": payload.get("email")}


def _fetch_remote(token: str) -> Dict[str, Any]:
    if not SUPABASE_URL:
        logger.error("[SECURITY] neither SUPABASE_JWT_SECRET nor SUPABASE_URL is configured")
        raise HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, "Authentication service not configured")
    try:
        r = requests.get(
            f"{SUPABASE_URL}/auth/v1/user",
            headers={"Authorization": f"Bearer {token}", "apikey": SUPABASE_ANON_KEY},
            timeout=10,
        )
    except requests.RequestException as e:
        logger.error("[SECURITY] auth service unreachable: %s", e)
        raise HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, "Authentication service unavailable")
    if r.status_code != 200:
        raise _unauthorized("Invalid Token")
    user = r.json() or {}
    if not user.get("id"):
        raise _unauthorized("Invalid Token")
    return {"id": user["id"], "email": user.get("email")}


def verify_token(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Session = Depends(get_db),
) -> Principal:
    if credentials is None or not credentials.credentials:
        raise _unauthorized("Missing Authentication Token")
    token = credentials.credentials

    identity = _decode_local(token) if SUPABASE_JWT_SECRET else _fetch_remote(token)

    profile = db.get(models.Profile, identity["id"])
    role    = (profile.role if profile else None) or "viewer"
    if profile is not None:
        profile.last_active = utcnow()
        db.commit()
    return Principal(id=identity["id"], email=identity.get("email"), role=role)


def require_admin(user: Principal = Depends(verify_token)) -> Principal:
    if not user.is_admin:
        raise HTTPException(status.HTTP_403_FORBIDDEN, "Access Denied: Admins only")
    return user


def require_editor(user: Principal = Depends(verify_token)) -> Principal:
    if user.role not in ("admin", "user"):
        raise HTTPException(status.HTTP_403_FORBIDDEN, "Insufficient privileges.")
    return user
