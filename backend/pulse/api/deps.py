from dataclasses import dataclass, field
from typing import Generator, List, Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer

from pulse.core.config import settings
from pulse.core.security import decode_token
from pulse.db.session import SessionLocal

# OAuth2 scheme for token extraction
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login", auto_error=False)

EDITOR_ROLES = {"admin", "editor"}


@dataclass
class CurrentUser:
    """令牌中解析出的调用方"""
    id: str
    roles: List[str] = field(default_factory=list)

    @property
    def can_edit(self) -> bool:
        # 令牌不携带角色时不做角色限制
        return not self.roles or bool(EDITOR_ROLES & set(self.roles))


ANONYMOUS = CurrentUser(id="anonymous")


def get_db() -> Generator:
    db = SessionLocal()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def user_from_token(token: Optional[str]) -> Optional[CurrentUser]:
    """解析 JWT；无效或过期返回 None"""
    if not token:
        return None
    claims = decode_token(token)
    if not claims or claims.get("sub") is None:
        return None
    roles = claims.get("roles") or []
    if isinstance(roles, str):
        roles = [roles]
    return CurrentUser(id=str(claims["sub"]), roles=list(roles))


def get_current_user(token: Optional[str] = Depends(oauth2_scheme)) -> CurrentUser:
    """
    Get current caller from the bearer token.

    AUTH_REQUIRED=false 时未携带令牌的请求以匿名用户处理。

    Raises:
        HTTPException: 401 if token is missing, invalid or expired
    """
    if not token and not settings.AUTH_REQUIRED:
        return ANONYMOUS
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    user = user_from_token(token)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user


def require_editor(current_user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    """
    修改类接口：令牌带有角色时必须包含 admin 或 editor

    Raises:
        HTTPException: 403 if the caller lacks an editing role
    """
    if not current_user.can_edit:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not enough permissions. Editor role required."
        )
    return current_user
