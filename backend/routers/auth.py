# routers/auth.py — Registration, login, token refresh and profile endpoints
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from auth import (
    AuthService, UserRegister, UserLogin, TokenResponse, RefreshRequest,
    CurrentUser, MIN_PASSWORD_LENGTH, get_current_user, user_to_current,
)
from database import get_db_session
from errors import Unauthenticated, ValidationFailed
from models import User

router = APIRouter(prefix="/api/v1/auth", tags=["Authentication"])


class ProfileUpdate(BaseModel):
    display_name: Optional[str] = Field(default=None, max_length=100)
    avatar_url: Optional[str] = None
    email: Optional[EmailStr] = None


class PasswordChange(BaseModel):
    current_password: str
    new_password: str = Field(..., min_length=MIN_PASSWORD_LENGTH)


async def _load_user(db: AsyncSession, user_id: str) -> User:
    user = (await db.execute(select(User).where(User.id == user_id))).scalar_one_or_none()
    if not user:
        raise Unauthenticated("User not found")
    return user


@router.post("/register", response_model=TokenResponse, status_code=201)
async def register(
    user_data: UserRegister,
    db: AsyncSession = Depends(get_db_session),
):
    """Register a new user account"""
    user = await AuthService.register_user(user_data, db)
    return AuthService.issue_tokens(user)


@router.post("/login", response_model=TokenResponse)
async def login(
    credentials: UserLogin,
    db: AsyncSession = Depends(get_db_session),
):
    """Authenticate with username or email and receive tokens"""
    user = await AuthService.authenticate_user(credentials.identifier, credentials.password, db)
    if not user:
        raise Unauthenticated("Invalid credentials")
    return AuthService.issue_tokens(user)


@router.post("/refresh", response_model=TokenResponse)
async def refresh_token(
    refresh_req: RefreshRequest,
    db: AsyncSession = Depends(get_db_session),
):
    """Exchange a refresh token for a fresh token pair"""
    payload = AuthService.verify_token(refresh_req.refresh_token)
    if payload.get("type") != "refresh":
        raise Unauthenticated("Invalid token type. Expected refresh token.")
    user = await _load_user(db, payload.get("sub"))
    return AuthService.issue_tokens(user)


@router.get("/me", response_model=CurrentUser)
async def get_me(user: CurrentUser = Depends(get_current_user)):
    return user


@router.put("/me", response_model=CurrentUser)
async def update_me(
    data: ProfileUpdate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Update display name, avatar or email"""
    user_obj = await _load_user(db, user.id)

    if data.email is not None and data.email.lower() != user_obj.email:
        taken = (await db.execute(select(User.id).where(User.email == data.email.lower()))).scalar_one_or_none()
        if taken:
            raise ValidationFailed("Email already taken")
        user_obj.email = data.email.lower()
    if data.display_name is not None:
        user_obj.display_name = data.display_name
    if data.avatar_url is not None:
        user_obj.avatar_url = data.avatar_url

    await db.commit()
    await db.refresh(user_obj)
    return user_to_current(user_obj)


@router.put("/me/password")
async def change_password(
    data: PasswordChange,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    user_obj = await _load_user(db, user.id)
    if not AuthService.verify_password(data.current_password, user_obj.password_hash):
        raise ValidationFailed("Current password is incorrect")

    user_obj.password_hash = AuthService.hash_password(data.new_password)
    await db.commit()
    return {"message": "Password updated successfully"}
