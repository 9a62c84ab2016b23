# routers/invites.py — Invitation preview & acceptance (by token)
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_current_user, CurrentUser
from database import get_db_session
from errors import AccessDenied, Conflict, NotFound, ValidationFailed
from models import (
    Organization, OrganizationInvite, OrganizationMember, OrgRole, NotificationType, User,
    utcnow, as_utc,
)
from notifier import create_notification
from org_access import get_org_membership
from routers.users import ts

router = APIRouter(prefix="/api/v1/invites", tags=["Invites"])


class InvitePreview(BaseModel):
    organization_id: str
    organization_name: str
    organization_slug: str
    email: str
    role: str
    invited_by: Optional[str] = None
    expires_at: Optional[str] = None


async def _get_valid_invite(db: AsyncSession, token: str) -> OrganizationInvite:
    invite = (await db.execute(
        select(OrganizationInvite).where(OrganizationInvite.token == token)
    )).scalar_one_or_none()
    if not invite:
        raise NotFound("Invite")
    if invite.accepted_at is not None:
        raise ValidationFailed("Invite already used")
    if as_utc(invite.expires_at) < utcnow():
        raise ValidationFailed("Invite expired")
    return invite


@router.get("/{token}", response_model=InvitePreview)
async def preview_invite(token: str, db: AsyncSession = Depends(get_db_session)):
    """Public: what the invite is for, so the UI can offer sign-in or accept"""
    invite = await _get_valid_invite(db, token)
    org = (await db.execute(select(Organization).where(Organization.id == invite.organization_id))).scalar_one()
    inviter = (await db.execute(select(User).where(User.id == invite.invited_by))).scalar_one_or_none()
    return InvitePreview(
        organization_id=org.id,
        organization_name=org.name,
        organization_slug=org.slug,
        email=invite.email,
        role=OrgRole(invite.role).value,
        invited_by=(inviter.display_name or inviter.username) if inviter else None,
        expires_at=ts(invite.expires_at),
    )


@router.post("/{token}")
async def accept_invite(
    token: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    invite = await _get_valid_invite(db, token)
    if invite.email.lower() != user.email.lower():
        raise AccessDenied("This invite was sent to a different email address")
    if await get_org_membership(db, invite.organization_id, user.id):
        raise ValidationFailed("You are already a member")

    org = (await db.execute(select(Organization).where(Organization.id == invite.organization_id))).scalar_one()
    db.add(OrganizationMember(organization_id=org.id, user_id=user.id, role=invite.role))
    invite.accepted_at = utcnow()
    create_notification(
        db, invite.invited_by, NotificationType.SUCCESS,
        "Invite Accepted",
        f'{user.display_name or user.username} joined "{org.name}".',
        link=f"/org/{org.slug}/members",
    )
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise Conflict("You are already a member")
    return {"message": "Joined organization", "organization": {"id": org.id, "slug": org.slug, "name": org.name}}
