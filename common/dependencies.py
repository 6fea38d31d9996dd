"""Reusable FastAPI dependencies for auth and database access."""
from typing import Callable, Iterable, Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.orm import Session

from .auth import decode_token
from .database import get_db
from .models import RoleEnum, User

oauth_scheme = OAuth2PasswordBearer(tokenUrl="/login")
optional_oauth_scheme = OAuth2PasswordBearer(tokenUrl="/login", auto_error=False)


def _user_from_token(token: str, db: Session) -> User:
    payload = decode_token(token)
    email: str | None = payload.get("sub")
    if email is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing subject in token")
    user = db.query(User).filter(User.email == email).first()
    if not user:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return user


def get_current_user(token: str = Depends(oauth_scheme), db: Session = Depends(get_db)) -> User:
    return _user_from_token(token, db)


def get_optional_user(
    token: Optional[str] = Depends(optional_oauth_scheme), db: Session = Depends(get_db)
) -> Optional[User]:
    if not token:
        return None
    return _user_from_token(token, db)


def get_current_active_user(current_user: User = Depends(get_current_user)) -> User:
    return current_user


def has_any_role(user: User, roles: Iterable[RoleEnum]) -> bool:
    return user.role_name in set(roles)


def allow_roles(*roles: RoleEnum) -> Callable[[User], User]:
    def dependency(current_user: User = Depends(get_current_active_user)) -> User:
        if not has_any_role(current_user, roles):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient permissions")
        return current_user

    return dependency
