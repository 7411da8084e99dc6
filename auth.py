"""
Identity for the HTTP layer: password hashes, bearer tokens and the
current-user dependency.

Tokens carry only the user id (`sub`). Role and verification state are read
from the user document on every request, so an admin change takes effect
without re-issuing tokens.
"""

import logging
from datetime import datetime, timedelta
from typing import Iterable, Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer
from jose import ExpiredSignatureError, JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel

import config
from database import Database, utcnow

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")


class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def check_password(password: str, password_hash: Optional[str]) -> bool:
    """False for a wrong password and for a missing or unrecognised hash."""
    if not password_hash:
        return False
    try:
        return pwd_context.verify(password, password_hash)
    except ValueError:
        logger.warning("Stored password hash is not a recognised format")
        return False


def issue_token(user_id: str, expires_delta: Optional[timedelta] = None, now: Optional[datetime] = None) -> Token:
    issued_at = now or utcnow()
    expire = issued_at + (expires_delta or timedelta(minutes=config.ACCESS_TOKEN_EXPIRE_MINUTES))
    claims = {"sub": str(user_id), "iat": issued_at, "exp": expire}
    return Token(access_token=jwt.encode(claims, config.SECRET_KEY, algorithm=config.ALGORITHM))


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def read_token(token: str) -> str:
    """Return the user id a token was issued for."""
    try:
        claims = jwt.decode(token, config.SECRET_KEY, algorithms=[config.ALGORITHM])
    except ExpiredSignatureError:
        raise _unauthorized("Session expired, please log in again")
    except JWTError:
        raise _unauthorized("Could not validate credentials")
    user_id = claims.get("sub")
    if not user_id:
        raise _unauthorized("Could not validate credentials")
    return user_id


def get_database(request: Request) -> Database:
    return request.app.state.database


def public_user(user: dict) -> dict:
    user = dict(user)
    user.pop("password_hash", None)
    user["_id"] = str(user["_id"])
    return user


def get_current_user(token: str = Depends(oauth2_scheme), database: Database = Depends(get_database)) -> dict:
    user = database.find_by_id("user", read_token(token))
    if not user:
        raise _unauthorized("Could not validate credentials")
    return public_user(user)


def require_role(user: dict, roles: Iterable[str]):
    if user.get("user_type") not in roles:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient permissions")
