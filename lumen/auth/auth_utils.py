# lumen/auth/auth_utils.py
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Protocol
from jose import JWTError, jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from lumen.core.config import settings
from lumen.dataclasses import Principal
from lumen.logger import logging

ACCESS_TOKEN_EXPIRE_MINUTES = 60 * 24 * 7  # 7 days

# Bearer token scheme
security = HTTPBearer()


class IdentityProvider(Protocol):
    async def current_principal(self) -> Optional[Principal]: ...

    async def current_access_token(self) -> Optional[str]: ...


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """Create a JWT access token"""
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)

    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def decode_access_token(token: str) -> Optional[dict]:
    """Decode and verify a JWT token, None when it is not valid"""
    try:
        return jwt.decode(token, settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    except JWTError as e:
        logging.warning(f"Rejected access token: {e}")
        return None


class TokenIdentityProvider:
    """
    Identity backed by a JWT bearer token.

    ``token_source`` is asked for the token on every call and the token is
    decoded every time, so an expired or replaced token is noticed at the
    next operation.
    """

    def __init__(self, token_source: Callable[[], Optional[str]]):
        self.token_source = token_source

    @classmethod
    def from_token(cls, token: Optional[str]) -> "TokenIdentityProvider":
        return cls(lambda: token)

    async def current_access_token(self) -> Optional[str]:
        token = self.token_source()
        if not token or decode_access_token(token) is None:
            return None
        return token

    async def current_principal(self) -> Optional[Principal]:
        token = self.token_source()
        if not token:
            return None
        payload = decode_access_token(token)
        if payload is None:
            return None
        user_id = payload.get("sub")
        if not user_id:
            return None
        return Principal(user_id=str(user_id), email=payload.get("email"))


async def get_identity(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> TokenIdentityProvider:
    """FastAPI dependency: identity of the request's bearer token"""
    identity = TokenIdentityProvider.from_token(credentials.credentials)
    if await identity.current_principal() is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return identity
