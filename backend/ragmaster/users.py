# ragmaster/users.py
# ──────────────────────────────────────────────────────────────────────────────
#  User management behind a small repository interface, so the admin routes
#  don't care whether users live in the profiles table or in memory.
# ──────────────────────────────────────────────────────────────────────────────
import uuid
from typing import Any, Dict, List, Optional, Protocol

from sqlalchemy.orm import Session

from . import models
from .models import utcnow

UPDATABLE = ("firstName", "lastName", "role", "status")


class UserRepository(Protocol):
    def list(self) -> List[Dict[str, Any]]: ...
    def get(self, user_id: str) -> Optional[Dict[str, Any]]: ...
    def create(self, data: Dict[str, Any]) -> Dict[str, Any]: ...
    def update(self, user_id: str, data: Dict[str, Any]) -> Optional[Dict[str, Any]]: ...
    def delete(self, user_id: str) -> bool: ...


def _new_user(data: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id":         data.get("id") or str(uuid.uuid4()),
        "email":      data["email"],
        "firstName":  data.get("firstName") or "",
        "lastName":   data.get("lastName") or "",
        "role":       data.get("role") or "user",
        "status":     "invited",
        "lastActive": utcnow().isoformat(),
    }


class InMemoryUserRepository:
    def __init__(self, seed: Optional[List[Dict[str, Any]]] = None):
        self._users: List[Dict[str, Any]] = [dict(u) for u in seed or []]

    def list(self) -> List[Dict[str, Any]]:
        return [dict(u) for u in self._users]

    def get(self, user_id: str) -> Optional[Dict[str, Any]]:
        for u in self._users:
            if u["id"] == user_id:
                return dict(u)
        return None

    def create(self, data: Dict[str, Any]) -> Dict[str, Any]:
        user = _new_user(data)
        self._users.append(user)
        return dict(user)

    def update(self, user_id: str, data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        for u in self._users:
            if u["id"] == user_id:
                u.update({k: data[k] for k in UPDATABLE if data.get(k)})
                return dict(u)
        return None

    def delete(self, user_id: str) -> bool:
        before = len(self._users)
        self._users = [u for u in self._users if u["id"] != user_id]
        return len(self._users) != before


def profile_to_user(p: models.Profile) -> Dict[str, Any]:
    return {
        "id":         p.id,
        "email":      p.email or "",
        "firstName":  p.first_name or "",
        "lastName":   p.last_name or "",
        "role":       p.role or "viewer",
        "status":     p.status or "active",
        "lastActive": p.last_active.isoformat() if p.last_active else None,
    }


class ProfileUserRepository:
    """Users backed by the external ``profiles`` table."""

    def __init__(self, db: Session):
        self.db = db

    def list(self) -> List[Dict[str, Any]]:
        rows = self.db.query(models.Profile).order_by(models.Profile.email).all()
        return [profile_to_user(p) for p in rows]

    def get(self, user_id: str) -> Optional[Dict[str, Any]]:
        p = self.db.get(models.Profile, user_id)
        return profile_to_user(p) if p else None

    def create(self, data: Dict[str, Any]) -> Dict[str, Any]:
        user = _new_user(data)
        p = models.Profile(
            id=user["id"], email=user["email"],
            first_name=user["firstName"], last_name=user["lastName"],
            role=user["role"], status=user["status"],
            last_active=utcnow(), updated_at=utcnow(),
        )
        self.db.add(p)
        self.db.commit()
        return profile_to_user(p)

    def update(self, user_id: str, data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        p = self.db.get(models.Profile, user_id)
        if p is None:
            return None
        columns = {"firstName": "first_name", "lastName": "last_name", "role": "role", "status": "status"}
        for key in UPDATABLE:
            if data.get(key):
                setattr(p, columns[key], data[key])
        p.updated_at = utcnow()
        self.db.commit()
        return profile_to_user(p)

    def delete(self, user_id: str) -> bool:
        p = self.db.get(models.Profile, user_id)
        if p is None:
            return False
        self.db.delete(p)
        self.db.commit()
        return True
