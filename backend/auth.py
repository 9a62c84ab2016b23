# auth.py — Authentication for Teamspace
# Features:
# - JWT access/refresh tokens (sub = user id)
# - bcrypt password hashing
# - Brute force protection on login
# - get_current_user dependency (401 distinct from 403)

import os
import re
import uuid
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any
from collections import defaultdict

import bcrypt
from jose import jwt, JWTError, ExpiredSignatureError
from fastapi import HTTPException, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel, EmailStr, Field, field_validator
from sqlalchemy import select, or_
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db_session
from errors import Unauthenticated, ValidationFailed
from models import User

logger = logging.getLogger("teamspace.auth")

# ============================================================
# CONFIGURATION
# ============================================================

SECRET_KEY = os.getenv("JWT_SECRET_KEY", "")
if not SECRET_KEY or SECRET_KEY == "change-this-to-a-secure-random-key-in-production":
    SECRET_KEY = secrets.token_urlsafe(64)
    logger.warning(
        "JWT_SECRET_KEY not set or insecure. Generated ephemeral key. "
        "Set JWT_SECRET_KEY in production!"
    )

ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "60"))
REFRESH_TOKEN_EXPIRE_DAYS = int(os.getenv("REFRESH_TOKEN_EXPIRE_DAYS", "7"))
MIN_PASSWORD_LENGTH = 8
MAX_LOGIN_ATTEMPTS = 5
LOGIN_LOCKOUT_MINUTES = 15
USERNAME_RE = re.compile(r"^[A-Za-z0-9_]{3,30}$")

security = HTTPBearer(auto_error=False)

# In-memory brute force tracker, per process
_login_attempts: Dict[str, list] = defaultdict(list)


# ============================================================
# PYDANTIC SCHEMAS
# ============================================================

class UserRegister(BaseModel):
    username: str
    email: EmailStr
    password: str
    display_name: Optional[str] = Field(default=None, max_length=100)

    @field_validator("username")
    @classmethod
    def validate_username(cls, v: str) -> str:
        if not USERNAME_RE.match(v):
            raise ValueError("Username must be 3-30 characters: letters, digits or underscore")
        return v

    @field_validator("password")
    @classmethod
    def validate_password(cls, v: str) -> str:
        if len(v) < MIN_PASSWORD_LENGTH:
            raise ValueError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
        return v


class UserLogin(BaseModel):
    identifier: str = Field(..., min_length=1, description="Username or email")
    password: str


class CurrentUser(BaseModel):
    id: str
    username: str
    email: str
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    user: CurrentUser


class RefreshRequest(BaseModel):
    refresh_token: str


def user_to_current(user: User) -> CurrentUser:
    return CurrentUser(
        id=user.id,
        username=user.username,
        email=user.email,
        display_name=user.display_name,
        avatar_url=user.avatar_url,
    )


# ============================================================
# AUTH SERVICE
# ============================================================

class AuthService:
    """Password hashing, token issue/verify, registration and login"""

    @staticmethod
    def hash_password(password: str) -> str:
        salt = bcrypt.gensalt(rounds=12)
        return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")

    @staticmethod
    def verify_password(password: str, password_hash: str) -> bool:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))

    @staticmethod
    def _create_token(data: Dict[str, Any], token_type: str, expires_delta: timedelta) -> str:
        to_encode = data.copy()
        now = datetime.now(timezone.utc)
        to_encode.update({
            "exp": now + expires_delta,
            "iat": now,
            "type": token_type,
            "jti": str(uuid.uuid4()),
        })
        return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)

    @staticmethod
    def create_access_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
        delta = expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
        return AuthService._create_token(data, "access", delta)

    @staticmethod
    def create_refresh_token(data: Dict[str, Any]) -> str:
        return AuthService._create_token(data, "refresh", timedelta(days=REFRESH_TOKEN_EXPIRE_DAYS))

    @staticmethod
    def verify_token(token: str) -> Dict[str, Any]:
        try:
            return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        except ExpiredSignatureError:
            raise Unauthenticated("Token expired")
        except JWTError:
            raise Unauthenticated("Invalid token")

    @staticmethod
    def issue_tokens(user: User) -> TokenResponse:
        claims = {"sub": user.id, "username": user.username}
        return TokenResponse(
            access_token=AuthService.create_access_token(claims),
            refresh_token=AuthService.create_refresh_token(claims),
            expires_in=ACCESS_TOKEN_EXPIRE_MINUTES * 60,
            user=user_to_current(user),
        )

    @staticmethod
    def _check_brute_force(identifier: str) -> None:
        cutoff = datetime.now(timezone.utc) - timedelta(minutes=LOGIN_LOCKOUT_MINUTES)
        recent = [t for t in _login_attempts.get(identifier, ()) if t > cutoff]
        if not recent:
            _login_attempts.pop(identifier, None)
            return
        _login_attempts[identifier] = recent
        if len(recent) >= MAX_LOGIN_ATTEMPTS:
            raise HTTPException(
                status_code=429,
                detail=f"Too many login attempts. Try again in {LOGIN_LOCKOUT_MINUTES} minutes.",
            )

    @staticmethod
    def _record_failed_attempt(identifier: str) -> None:
        _login_attempts[identifier].append(datetime.now(timezone.utc))

    @staticmethod
    def _clear_attempts(identifier: str) -> None:
        _login_attempts.pop(identifier, None)

    @staticmethod
    async def register_user(data: UserRegister, db: AsyncSession) -> User:
        stmt = select(User).where(or_(User.username == data.username, User.email == data.email.lower()))
        existing = (await db.execute(stmt)).scalars().first()
        if existing:
            field = "Username" if existing.username == data.username else "Email"
            raise ValidationFailed(f"{field} already taken")

        user = User(
            username=data.username,
            email=data.email.lower(),
            display_name=data.display_name or data.username,
            password_hash=AuthService.hash_password(data.password),
        )
        db.add(user)
        await db.commit()
        await db.refresh(user)
        logger.info(f"Registered user {user.username} ({user.id})")
        return user

    @staticmethod
    async def authenticate_user(identifier: str, password: str, db: AsyncSession) -> Optional[User]:
        key = identifier.lower()
        AuthService._check_brute_force(key)

        stmt = select(User).where(or_(User.username == identifier, User.email == key))
        user = (await db.execute(stmt)).scalar_one_or_none()

        if not user or not AuthService.verify_password(password, user.password_hash):
            AuthService._record_failed_attempt(key)
            return None

        AuthService._clear_attempts(key)
        return user


# ============================================================
# FASTAPI DEPENDENCIES
# ============================================================

async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: AsyncSession = Depends(get_db_session),
) -> CurrentUser:
    if credentials is None:
        raise Unauthenticated()

    payload = AuthService.verify_token(credentials.credentials)
    if payload.get("type") != "access":
        raise Unauthenticated("Invalid token type")

    user_id = payload.get("sub")
    if not user_id:
        raise Unauthenticated("Invalid token")

    user = (await db.execute(select(User).where(User.id == user_id))).scalar_one_or_none()
    if not user:
        raise Unauthenticated("User not found")

    return user_to_current(user)
