"""
Authentication collaborator: bearer JWT -> User, and the explicit Actor passed to services.
Login and session management live outside this service.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from sqlalchemy.orm import Session

from printlink.config import settings
from printlink.database import get_db
from printlink.models import User, UserRole

security = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Actor:
    """Who triggered an operation. user_id is None for system-triggered work (webhooks, jobs)."""
    user_id: Optional[str] = None
    label: str = "system"

    @classmethod
    def system(cls, label: str = "system") -> "Actor":
        return cls(user_id=None, label=label)

    @classmethod
    def for_user(cls, user: User) -> "Actor":
        return cls(user_id=user.id, label=user.email)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.JWT_SECRET, algorithm=settings.AUTH_ALGORITHM)


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Session = Depends(get_db),
) -> User:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    if credentials is None:
        raise credentials_exception
    try:
        payload = jwt.decode(credentials.credentials, settings.JWT_SECRET, algorithms=[settings.AUTH_ALGORITHM])
    except JWTError:
        raise credentials_exception
    user_id = payload.get("sub")
    if not user_id:
        raise credentials_exception
    user = db.query(User).filter(User.id == user_id).first()
    if user is None:
        raise credentials_exception
    return user


def is_admin(user: User) -> bool:
    return user.role == UserRole.ADMIN
