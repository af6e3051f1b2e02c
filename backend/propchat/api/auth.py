"""Access-token helpers.

Tokens are minted by the identity service; this module only mints them for
local tooling (load scripts, tests) and resolves the bearer on requests.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer
from jose import jwt
from sqlalchemy.orm import Session

from ..core.config import settings
from ..database import get_db
from ..services.collaborators import JwtIdentityProvider, SqlUserDirectory, UserRef
from ..utils.metrics import incr

SECRET_KEY = settings.SECRET_KEY
ALGORITHM = settings.ALGORITHM
ACCESS_TOKEN_EXPIRE_MINUTES = settings.ACCESS_TOKEN_EXPIRE_MINUTES

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login", auto_error=False)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def get_current_user(
    request: Request,
    token: Optional[str] = Depends(oauth2_scheme),
    db: Session = Depends(get_db),
) -> UserRef:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"message": "Could not validate credentials", "code": "unauthenticated", "field_errors": {}},
        headers={"WWW-Authenticate": "Bearer"},
    )
    # Prefer Authorization header; fall back to access_token cookie if missing
    jwt_token = token or request.cookies.get("access_token")
    if not jwt_token:
        raise credentials_exception
    user, reason = JwtIdentityProvider(SqlUserDirectory(db)).authenticate(jwt_token)
    if user is None:
        incr("http.auth.fail", tags={"reason": reason})
        raise credentials_exception
    return user
