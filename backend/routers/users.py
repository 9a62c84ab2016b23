# routers/users.py — User lookup (search + public profile)
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy import select, or_
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_current_user, CurrentUser
from database import get_db_session
from errors import NotFound
from models import User

router = APIRouter(prefix="/api/v1/users", tags=["Users"])


# --- Schemas ---

class UserSummary(BaseModel):
    id: str
    username: str
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None


class UserProfile(UserSummary):
    email: str
    created_at: Optional[str] = None


# --- Helpers (shared with the other routers) ---

def ts(dt) -> Optional[str]:
    if dt is None:
        return None
    return dt.isoformat() if isinstance(dt, datetime) else str(dt)


def user_summary(u: User) -> UserSummary:
    return UserSummary(id=u.id, username=u.username, display_name=u.display_name, avatar_url=u.avatar_url)


async def load_user_summaries(db: AsyncSession, user_ids: Iterable[str]) -> Dict[str, UserSummary]:
    ids = {i for i in user_ids if i}
    if not ids:
        return {}
    result = await db.execute(select(User).where(User.id.in_(list(ids))))
    return {u.id: user_summary(u) for u in result.scalars().all()}


# --- Endpoints ---

@router.get("/search", response_model=List[UserSummary])
async def search_users(
    q: str = Query(..., min_length=2, max_length=100),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Find users by username, email or display name (max 10)"""
    pattern = f"%{q.lower()}%"
    stmt = (
        select(User)
        .where(
            User.id != user.id,
            or_(
                User.username.ilike(pattern),
                User.email.ilike(pattern),
                User.display_name.ilike(pattern),
            ),
        )
        .order_by(User.username.asc())
        .limit(10)
    )
    result = await db.execute(stmt)
    return [user_summary(u) for u in result.scalars().all()]


@router.get("/{user_id}", response_model=UserProfile)
async def get_user(
    user_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    target = (await db.execute(select(User).where(User.id == user_id))).scalar_one_or_none()
    if not target:
        raise NotFound("User")
    return UserProfile(
        id=target.id,
        username=target.username,
        display_name=target.display_name,
        avatar_url=target.avatar_url,
        email=target.email,
        created_at=ts(target.created_at),
    )
