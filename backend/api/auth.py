"""Bearer-token authentication.

Tokens are HS256 JWTs carrying the user id in ``sub``. The role is read
from the database on every request so admin grants and revocations take
effect without re-login; routes receive a typed ``Actor``.
"""

from datetime import timedelta
from typing import Optional

from fastapi import Depends
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt

from config import settings
from models.actor import Actor
from models.database import User
from services.accounts import account_service
from services.errors import AuthenticationFailed, Forbidden, NotFound
from utils.logger import get_logger
from utils.utcnow import utcnow

logger = get_logger("auth")

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/token", auto_error=False)


def create_access_token(user: User, expires_delta: Optional[timedelta] = None) -> str:
    expire = utcnow() + (expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES))
    payload = {
        "sub": user.id,
        "email": user.email,
        "role": user.role.value,
        "exp": expire,
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def decode_access_token(token: str) -> str:
    """Return the user id carried by a valid token."""
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except JWTError as e:
        raise AuthenticationFailed("Could not validate credentials") from e
    user_id = payload.get("sub")
    if not user_id:
        raise AuthenticationFailed("Could not validate credentials")
    return user_id


async def get_current_user(token: Optional[str] = Depends(oauth2_scheme)) -> User:
    if not token:
        raise AuthenticationFailed("Not authenticated")
    user_id = decode_access_token(token)
    try:
        return await account_service.get_user(user_id)
    except NotFound:
        logger.warning("Token for unknown user", user_id=user_id)
        raise AuthenticationFailed("Could not validate credentials")


async def get_current_actor(user: User = Depends(get_current_user)) -> Actor:
    return Actor(user_id=user.id, role=user.role)


async def require_admin(actor: Actor = Depends(get_current_actor)) -> Actor:
    if not actor.is_admin:
        raise Forbidden("Admin role required")
    return actor
