from datetime import timedelta
from typing import Any, Dict, List, Optional

from jose import jwt, JWTError

from pulse.core.config import settings
from pulse.core.timeutil import utcnow

# JWT Configuration
ALGORITHM = "HS256"
SERVICE_TOKEN_TYPE = "service"


def create_access_token(
    subject: Any,
    expires_delta: Optional[timedelta] = None,
    roles: Optional[List[str]] = None,
) -> str:
    """
    Create JWT access token.

    Args:
        subject: The subject to encode (typically user id)
        expires_delta: Optional custom expiration time
        roles: Optional role names carried in the ``roles`` claim

    Returns:
        Encoded JWT token string
    """
    if expires_delta:
        expire = utcnow() + expires_delta
    else:
        expire = utcnow() + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)

    to_encode: Dict[str, Any] = {"exp": expire, "sub": str(subject)}
    if roles is not None:
        to_encode["roles"] = list(roles)
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=ALGORITHM)


def create_service_token(audience: Optional[str] = None) -> str:
    """
    生成服务间调用令牌 (internal-service 数据源探测/查询时使用)

    Args:
        audience: 目标服务标识

    Returns:
        短期有效的 JWT
    """
    expire = utcnow() + timedelta(seconds=settings.SERVICE_TOKEN_EXPIRE_SECONDS)
    to_encode: Dict[str, Any] = {
        "exp": expire,
        "sub": settings.SERVICE_NAME,
        "type": SERVICE_TOKEN_TYPE,
    }
    if audience:
        to_encode["aud"] = audience
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=ALGORITHM)


def decode_token(token: str) -> Optional[Dict[str, Any]]:
    """
    Decode and verify a JWT.

    Returns:
        Claims dict if valid, None otherwise
    """
    try:
        return jwt.decode(
            token,
            settings.SECRET_KEY,
            algorithms=[ALGORITHM],
            options={"verify_aud": False},
        )
    except JWTError:
        return None


def verify_token(token: str) -> Optional[str]:
    """
    Verify JWT token and extract subject.

    Args:
        token: JWT token string

    Returns:
        Subject (user id) if valid, None otherwise
    """
    payload = decode_token(token)
    if not payload:
        return None
    subject = payload.get("sub")
    if subject is None:
        return None
    return str(subject)
