"""Boundaries to systems the messaging core does not own.

The user directory, the property catalog and the identity provider live in
other services. Chat only reads them through the small interfaces below; the
default implementations query the local mirror tables.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Protocol

from jose import JWTError, jwt
from jose.exceptions import ExpiredSignatureError
from sqlalchemy.orm import Session

from .. import models
from ..core.config import settings

logger = logging.getLogger(__name__)

MAX_BEARER_LEN = 4096


@dataclass(frozen=True)
class UserRef:
    id: int
    display_name: str
    avatar_url: Optional[str] = None
    user_type: str = models.UserType.BUYER.value
    is_active: bool = True
    email: Optional[str] = None

    @property
    def is_seller(self) -> bool:
        return self.user_type == models.UserType.SELLER.value


@dataclass(frozen=True)
class PropertyRef:
    id: str
    title: str
    owner_id: int


class UserDirectory(Protocol):
    def get_user(self, user_id: int) -> Optional[UserRef]: ...

    def get_user_by_email(self, email: str) -> Optional[UserRef]: ...


class PropertyCatalog(Protocol):
    def get_property(self, property_id: str) -> Optional[PropertyRef]: ...


def _user_ref(user: models.User) -> UserRef:
    user_type = user.user_type.value if isinstance(user.user_type, models.UserType) else str(user.user_type)
    return UserRef(
        id=int(user.id),
        display_name=user.display_name,
        avatar_url=user.avatar_url,
        user_type=user_type,
        is_active=bool(user.is_active),
        email=user.email,
    )


class SqlUserDirectory:
    def __init__(self, db: Session) -> None:
        self.db = db

    def get_user(self, user_id: int) -> Optional[UserRef]:
        user = self.db.query(models.User).filter(models.User.id == user_id).first()
        return _user_ref(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[UserRef]:
        normalized = (email or "").strip().lower()
        if not normalized:
            return None
        user = self.db.query(models.User).filter(models.User.email == normalized).first()
        return _user_ref(user) if user else None


class SqlPropertyCatalog:
    def __init__(self, db: Session) -> None:
        self.db = db

    def get_property(self, property_id: str) -> Optional[PropertyRef]:
        prop = self.db.query(models.Property).filter(models.Property.id == property_id).first()
        if not prop:
            return None
        return PropertyRef(id=str(prop.id), title=prop.title, owner_id=int(prop.owner_id))


class JwtIdentityProvider:
    """Verify access tokens minted by the identity service.

    Tokens carry the user's email in ``sub``. ``authenticate`` returns
    ``(user, None)`` on success or ``(None, reason)`` where reason is a short
    machine-readable tag used in logs and metrics.
    """

    def __init__(
        self,
        users: UserDirectory,
        secret_key: Optional[str] = None,
        algorithm: Optional[str] = None,
        leeway: int = 60,
    ) -> None:
        self.users = users
        self.secret_key = secret_key or settings.SECRET_KEY
        self.algorithm = algorithm or settings.ALGORITHM
        self.leeway = leeway

    def decode(self, token: Optional[str]) -> tuple[Optional[dict], Optional[str]]:
        token = _sanitize_bearer(token)
        if not token:
            return None, "missing"
        if len(token) > MAX_BEARER_LEN:
            return None, "token_too_long"
        try:
            payload = jwt.decode(
                token,
                self.secret_key,
                algorithms=[self.algorithm],
                options={"leeway": self.leeway},
            )
        except ExpiredSignatureError:
            return None, "expired"
        except JWTError:
            return None, "invalid"
        # Refresh tokens must not open sessions
        if str(payload.get("typ") or "").lower() == "refresh":
            return None, "invalid_type"
        if not payload.get("sub"):
            return None, "missing_sub"
        return payload, None

    def authenticate(self, token: Optional[str]) -> tuple[Optional[UserRef], Optional[str]]:
        payload, reason = self.decode(token)
        if payload is None:
            return None, reason
        user = self.users.get_user_by_email(str(payload["sub"]))
        if user is None:
            return None, "user_not_found"
        if not user.is_active:
            return None, "inactive"
        return user, None


def _sanitize_bearer(val: Optional[str]) -> Optional[str]:
    if val is None:
        return None
    s = str(val).strip()
    if (s.startswith('"') and s.endswith('"')) or (s.startswith("'") and s.endswith("'")):
        s = s[1:-1].strip()
    while s and s[-1] in {";", ",", "."}:
        s = s[:-1]
    return s
