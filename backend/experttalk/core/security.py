from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional, Union
from uuid import UUID

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from experttalk.core.config import settings
from experttalk.core.database import get_db
from experttalk.models.user import User, UserRole
from experttalk.schemas.token import TokenPayload

# Tokens are issued elsewhere; this service only verifies them.
oauth2_scheme = OAuth2PasswordBearer(tokenUrl=f"{settings.API_V1_STR}/auth/login")


def create_access_token(
    subject: Union[str, Any],
    expires_delta: timedelta = None,
) -> str:
    """
    Create a JWT access token for the given subject (the user id).
    """
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(
            minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES
        )

    to_encode = {
        "exp": expire,
        "sub": str(subject),
        "iat": datetime.now(timezone.utc),
        "type": "access"
    }
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def decode_access_token(token: str) -> Optional[UUID]:
    """Return the user id carried by a valid access token, else None."""
    try:
        payload = jwt.decode(
            token,
            settings.SECRET_KEY,
            algorithms=[settings.ALGORITHM],
            options={"verify_aud": False}
        )
        token_data = TokenPayload(**payload)
    except (JWTError, ValidationError):
        return None

    if token_data.type != "access" or token_data.sub is None:
        return None
    try:
        return UUID(token_data.sub)
    except ValueError:
        return None


async def get_current_user(
    token: str = Depends(oauth2_scheme),
    db: AsyncSession = Depends(get_db)
) -> User:
    """
    Dependency to get the current user from the bearer token.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    user_id = decode_access_token(token)
    if user_id is None:
        raise credentials_exception

    user = await db.get(User, user_id)
    if user is None:
        raise credentials_exception

    if not user.is_active:
        raise HTTPException(status_code=400, detail="Inactive user")

    return user


async def authenticate_websocket(token: Optional[str], db: AsyncSession) -> Optional[User]:
    """Resolve the ``?token=`` of a websocket handshake to an active user."""
    if not token:
        return None
    user_id = decode_access_token(token)
    if user_id is None:
        return None
    user = await db.get(User, user_id)
    if user is None or not user.is_active:
        return None
    return user


# Dependency to check if user has any of the required roles
def has_any_role(required_roles: List[UserRole]):
    """Check if the current user has any of the required roles."""
    def role_checker(current_user: User = Depends(get_current_user)) -> User:
        if current_user.role not in required_roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Requires one of these roles: {', '.join(r.value for r in required_roles)}",
            )
        return current_user
    return role_checker
