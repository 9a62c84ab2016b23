# routers/notifications.py — In-app notifications for the current user
from typing import Optional, List

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy import select, func, update, delete
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_current_user, CurrentUser
from database import get_db_session
from errors import NotFound
from models import Notification, NotificationType
from routers.users import ts

router = APIRouter(prefix="/api/v1/notifications", tags=["Notifications"])


# --- Schemas ---

class NotificationOut(BaseModel):
    id: str
    type: str
    title: str
    message: str
    link: Optional[str] = None
    is_read: bool
    extra_data: dict = {}
    created_at: Optional[str] = None


def _notif_out(n: Notification) -> NotificationOut:
    return NotificationOut(
        id=n.id,
        type=NotificationType(n.type).value,
        title=n.title,
        message=n.message,
        link=n.link,
        is_read=bool(n.is_read),
        extra_data=n.extra_data or {},
        created_at=ts(n.created_at),
    )


async def _get_own(db: AsyncSession, notification_id: str, user_id: str) -> Notification:
    # someone else's notification is reported exactly like a missing one
    notif = (await db.execute(
        select(Notification).where(Notification.id == notification_id, Notification.user_id == user_id)
    )).scalar_one_or_none()
    if not notif:
        raise NotFound("Notification")
    return notif


# ============================================================
# LIST & COUNT
# ============================================================

@router.get("", response_model=List[NotificationOut])
async def list_notifications(
    unread_only: bool = Query(default=False),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(get_current_user),
):
    query = select(Notification).where(Notification.user_id == user.id)
    if unread_only:
        query = query.where(Notification.is_read.is_(False))
    query = query.order_by(Notification.created_at.desc()).offset(offset).limit(limit)
    result = await db.execute(query)
    return [_notif_out(n) for n in result.scalars().all()]


@router.get("/count")
async def notification_count(
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(get_current_user),
):
    unread = (await db.execute(
        select(func.count(Notification.id)).where(
            Notification.user_id == user.id,
            Notification.is_read.is_(False),
        )
    )).scalar() or 0
    return {"unread": unread}


# ============================================================
# MARK READ
# ============================================================

@router.put("/read-all")
async def mark_all_read(
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(get_current_user),
):
    result = await db.execute(
        update(Notification)
        .where(Notification.user_id == user.id, Notification.is_read.is_(False))
        .values(is_read=True)
    )
    await db.commit()
    return {"marked": result.rowcount or 0}


@router.put("/{notification_id}", response_model=NotificationOut)
async def mark_read(
    notification_id: str,
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(get_current_user),
):
    notif = await _get_own(db, notification_id, user.id)
    notif.is_read = True
    await db.commit()
    await db.refresh(notif)
    return _notif_out(notif)


# ============================================================
# DELETE
# ============================================================

@router.delete("/{notification_id}")
async def delete_notification(
    notification_id: str,
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(get_current_user),
):
    notif = await _get_own(db, notification_id, user.id)
    await db.delete(notif)
    await db.commit()
    return {"status": "deleted"}


@router.delete("")
async def clear_read_notifications(
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(get_current_user),
):
    """Drop every notification the user has already read"""
    result = await db.execute(
        delete(Notification).where(Notification.user_id == user.id, Notification.is_read.is_(True))
    )
    await db.commit()
    return {"deleted": result.rowcount or 0}
