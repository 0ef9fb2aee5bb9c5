# auth.py — Authentication for KanbanFlow
# Features:
# - HS256 JWT access tokens (7 day default lifetime) with JTI
# - bcrypt password hashing
# - Brute force protection on login
# - Shared token verification for REST and WebSocket connections

import os
import uuid
import secrets
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any
from collections import defaultdict

import bcrypt
from jose import jwt, JWTError, ExpiredSignatureError
from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db_session
from errors import AuthError, RateLimitError, ValidationError
from models import User, utcnow
from schemas import SignupRequest

logger = logging.getLogger("kanbanflow.auth")

# ============================================================
# CONFIGURATION
# ============================================================

SECRET_KEY = os.getenv("JWT_SECRET_KEY", "")
if not SECRET_KEY:
    SECRET_KEY = secrets.token_urlsafe(64)
    logger.warning(
        "⚠️  JWT_SECRET_KEY not set. Generated ephemeral key; tokens will not "
        "survive a restart. Set JWT_SECRET_KEY in production!"
    )

ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", str(7 * 24 * 60)))
MAX_LOGIN_ATTEMPTS = 5
LOGIN_LOCKOUT_MINUTES = 15

security = HTTPBearer(auto_error=False)

# In-memory brute force tracker (per process)
_login_attempts: Dict[str, list] = defaultdict(list)


class CurrentUser(BaseModel):
    id: str
    name: str
    email: str
    avatar: str = ""


# ============================================================
# AUTH SERVICE
# ============================================================

class AuthService:
    """Password hashing, token issue/verify and account lookup"""

    @staticmethod
    def hash_password(password: str) -> str:
        salt = bcrypt.gensalt(rounds=12)
        return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")

    @staticmethod
    def verify_password(password: str, password_hash: str) -> bool:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))

    @staticmethod
    def create_access_token(user_id: str, expires_delta: Optional[timedelta] = None) -> str:
        now = datetime.now(timezone.utc)
        to_encode = {
            "sub": user_id,
            "exp": now + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)),
            "iat": now,
            "type": "access",
            "jti": str(uuid.uuid4()),
        }
        return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)

    @staticmethod
    def verify_token(token: str) -> Dict[str, Any]:
        try:
            payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        except ExpiredSignatureError:
            raise AuthError("Token expired")
        except JWTError:
            raise AuthError("Not authorized, token failed")
        if payload.get("type") != "access" or not payload.get("sub"):
            raise AuthError("Not authorized, token failed")
        return payload

    @staticmethod
    def _check_brute_force(email: str) -> None:
        """Check if login attempts exceed threshold"""
        cutoff = datetime.now(timezone.utc) - timedelta(minutes=LOGIN_LOCKOUT_MINUTES)
        _login_attempts[email] = [t for t in _login_attempts[email] if t > cutoff]
        if len(_login_attempts[email]) >= MAX_LOGIN_ATTEMPTS:
            raise RateLimitError(
                f"Too many login attempts. Try again in {LOGIN_LOCKOUT_MINUTES} minutes."
            )

    @staticmethod
    def _record_failed_attempt(email: str) -> None:
        _login_attempts[email].append(datetime.now(timezone.utc))

    @staticmethod
    def _clear_attempts(email: str) -> None:
        _login_attempts.pop(email, None)

    @staticmethod
    async def register_user(data: SignupRequest, db: AsyncSession) -> User:
        result = await db.execute(select(User).where(User.email == data.email))
        if result.scalar_one_or_none():
            raise ValidationError("User already exists")

        user = User(
            name=data.name,
            email=data.email,
            password_hash=AuthService.hash_password(data.password),
            avatar="",
        )
        db.add(user)
        await db.commit()
        logger.info(f"New account registered: {user.id[:8]}")
        return user

    @staticmethod
    async def authenticate_user(email: str, password: str, db: AsyncSession) -> User:
        AuthService._check_brute_force(email)

        result = await db.execute(select(User).where(User.email == email))
        user = result.scalar_one_or_none()

        if not user or not AuthService.verify_password(password, user.password_hash):
            AuthService._record_failed_attempt(email)
            raise AuthError("Invalid credentials")

        AuthService._clear_attempts(email)
        user.updated_at = utcnow()
        await db.commit()
        return user

    @staticmethod
    async def user_from_token(token: Optional[str], db: AsyncSession) -> User:
        """Resolve a bearer token to its user. Used by REST and WebSocket auth."""
        if not token:
            raise AuthError("Not authorized, no token")
        payload = AuthService.verify_token(token)
        result = await db.execute(select(User).where(User.id == payload["sub"]))
        user = result.scalar_one_or_none()
        if not user:
            raise AuthError("Not authorized, user not found")
        return user


def to_current_user(user: User) -> CurrentUser:
    return CurrentUser(id=user.id, name=user.name, email=user.email, avatar=user.avatar or "")


# ============================================================
# FASTAPI DEPENDENCIES
# ============================================================

async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: AsyncSession = Depends(get_db_session),
) -> CurrentUser:
    token = credentials.credentials if credentials else None
    user = await AuthService.user_from_token(token, db)
    return to_current_user(user)
