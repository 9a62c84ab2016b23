# routers/organizations.py — Organizations, members and invitations
import re
import secrets
from datetime import timedelta
from typing import Optional, List

from fastapi import APIRouter, Depends, Response
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy import select, func, delete
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_current_user, CurrentUser
from database import get_db_session
from errors import AccessDenied, NotFound, ValidationFailed
from models import (
    Organization, OrganizationMember, OrganizationInvite, OrgRole, Project, File, User,
    NotificationType, utcnow, as_utc,
)
from notifier import create_notification, notify_org_invite
from org_access import get_org_membership, get_user_organizations, require_org_access
from routers.files import purge_objects
from routers.users import UserSummary, user_summary, ts
from storage import StorageProvider, get_storage

router = APIRouter(prefix="/api/v1/organizations", tags=["Organizations"])

INVITE_TTL_DAYS = 7


# --- Schemas ---

class OrgOut(BaseModel):
    id: str
    name: str
    slug: str
    description: Optional[str] = None
    logo_url: Optional[str] = None
    created_by: str
    my_role: Optional[str] = None
    member_count: Optional[int] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class OrgCreate(BaseModel):
    name: str = Field(..., max_length=100)
    description: Optional[str] = Field(default=None, max_length=2000)


class OrgUpdate(BaseModel):
    name: Optional[str] = Field(default=None, max_length=100)
    description: Optional[str] = Field(default=None, max_length=2000)
    logo_url: Optional[str] = None


class MemberOut(BaseModel):
    user: UserSummary
    role: str
    joined_at: Optional[str] = None


class MemberRoleUpdate(BaseModel):
    role: str


class InviteCreate(BaseModel):
    email: EmailStr
    role: str = "member"


class InviteOut(BaseModel):
    id: str
    email: str
    role: str
    token: str
    invited_by: str
    expires_at: Optional[str] = None
    created_at: Optional[str] = None


# --- Helpers ---

def _slugify(name: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")
    return slug[:50] or "org"


async def _unique_slug(db: AsyncSession, name: str) -> str:
    base = _slugify(name)
    slug, counter = base, 1
    while (await db.execute(select(Organization.id).where(Organization.slug == slug))).scalar_one_or_none():
        slug = f"{base}-{counter}"
        counter += 1
    return slug


def _org_out(org: Organization, my_role=None, member_count: Optional[int] = None) -> OrgOut:
    return OrgOut(
        id=org.id,
        name=org.name,
        slug=org.slug,
        description=org.description,
        logo_url=org.logo_url,
        created_by=org.created_by,
        my_role=OrgRole(my_role).value if my_role else None,
        member_count=member_count,
        created_at=ts(org.created_at),
        updated_at=ts(org.updated_at),
    )


def _invite_out(invite: OrganizationInvite) -> InviteOut:
    return InviteOut(
        id=invite.id,
        email=invite.email,
        role=OrgRole(invite.role).value,
        token=invite.token,
        invited_by=invite.invited_by,
        expires_at=ts(invite.expires_at),
        created_at=ts(invite.created_at),
    )


async def _get_org(db: AsyncSession, org_id: str) -> Organization:
    org = (await db.execute(select(Organization).where(Organization.id == org_id))).scalar_one_or_none()
    if not org:
        raise NotFound("Organization")
    return org


def _parse_assignable_role(value: str) -> OrgRole:
    if value not in (OrgRole.ADMIN.value, OrgRole.MEMBER.value):
        raise ValidationFailed("Invalid role. Use admin or member.")
    return OrgRole(value)


# ============================================================
# ORGANIZATIONS
# ============================================================

@router.get("", response_model=List[OrgOut])
async def list_organizations(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Organizations the caller belongs to, with their role"""
    return [_org_out(org, role) for org, role in await get_user_organizations(db, user.id)]


@router.post("", response_model=OrgOut, status_code=201)
async def create_organization(
    data: OrgCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Create an organization; the creator becomes its owner"""
    name = data.name.strip()
    if len(name) < 2:
        raise ValidationFailed("Organization name must be at least 2 characters")

    org = Organization(
        name=name,
        slug=await _unique_slug(db, name),
        description=(data.description or "").strip() or None,
        created_by=user.id,
    )
    db.add(org)
    await db.flush()
    db.add(OrganizationMember(organization_id=org.id, user_id=user.id, role=OrgRole.OWNER))
    await db.commit()
    await db.refresh(org)
    return _org_out(org, OrgRole.OWNER, 1)


@router.get("/{org_id}", response_model=OrgOut)
async def get_organization(
    org_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    access = await require_org_access(db, org_id, user.id, detail="Access denied")
    org = await _get_org(db, org_id)
    count = (await db.execute(
        select(func.count(OrganizationMember.id)).where(OrganizationMember.organization_id == org_id)
    )).scalar() or 0
    return _org_out(org, access.role, count)


@router.put("/{org_id}", response_model=OrgOut)
async def update_organization(
    org_id: str,
    data: OrgUpdate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    access = await require_org_access(db, org_id, user.id, OrgRole.ADMIN)
    org = await _get_org(db, org_id)

    if data.name is not None:
        if len(data.name.strip()) < 2:
            raise ValidationFailed("Organization name must be at least 2 characters")
        org.name = data.name.strip()
    if data.description is not None:
        org.description = data.description.strip() or None
    if data.logo_url is not None:
        org.logo_url = data.logo_url or None

    await db.commit()
    await db.refresh(org)
    return _org_out(org, access.role)


@router.delete("/{org_id}")
async def delete_organization(
    org_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    storage: StorageProvider = Depends(get_storage),
):
    """Delete an organization and everything it owns (owner only)"""
    await require_org_access(db, org_id, user.id, OrgRole.OWNER, detail="Only the owner can delete an organization")
    await _get_org(db, org_id)

    keys = (await db.execute(
        select(File.storage_key)
        .join(Project, Project.id == File.project_id)
        .where(Project.organization_id == org_id)
    )).scalars().all()

    await db.execute(delete(Organization).where(Organization.id == org_id))
    await db.commit()
    await purge_objects(storage, keys)
    return {"message": "Organization deleted successfully"}


# ============================================================
# MEMBERS
# ============================================================

@router.get("/{org_id}/members", response_model=List[MemberOut])
async def list_members(
    org_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await require_org_access(db, org_id, user.id, detail="Access denied")
    result = await db.execute(
        select(OrganizationMember, User)
        .join(User, User.id == OrganizationMember.user_id)
        .where(OrganizationMember.organization_id == org_id)
        .order_by(OrganizationMember.created_at.asc())
    )
    return [
        MemberOut(user=user_summary(u), role=OrgRole(m.role).value, joined_at=ts(m.created_at))
        for m, u in result.all()
    ]


@router.put("/{org_id}/members/{user_id}")
async def update_member_role(
    org_id: str,
    user_id: str,
    data: MemberRoleUpdate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    access = await require_org_access(db, org_id, user.id, OrgRole.ADMIN)
    role = _parse_assignable_role(data.role)

    target = await get_org_membership(db, org_id, user_id)
    if not target:
        raise NotFound("Member")
    if target.role == OrgRole.OWNER:
        raise ValidationFailed("Cannot change owner role")
    if target.role == OrgRole.ADMIN and access.role != OrgRole.OWNER:
        raise AccessDenied("Only owner can change admin roles")

    target.role = role
    org = await _get_org(db, org_id)
    create_notification(
        db, user_id, NotificationType.INFO,
        "Role Updated",
        f'Your role in "{org.name}" has been changed to {role.value}.',
        link=f"/org/{org.slug}",
    )
    await db.commit()
    return {"message": "Role updated successfully", "role": role.value}


@router.delete("/{org_id}/members/{user_id}")
async def remove_member(
    org_id: str,
    user_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Leave an organization, or remove someone else (admin)"""
    is_self = user_id == user.id
    if not is_self:
        await require_org_access(db, org_id, user.id, OrgRole.ADMIN)

    target = await get_org_membership(db, org_id, user_id)
    if not target:
        raise NotFound("Member")
    if target.role == OrgRole.OWNER:
        raise ValidationFailed("Owner cannot be removed. Transfer ownership first.")

    org = await _get_org(db, org_id)
    await db.delete(target)
    if not is_self:
        create_notification(
            db, user_id, NotificationType.WARNING,
            "Removed from Organization",
            f'You have been removed from "{org.name}".',
        )
    await db.commit()
    return {"message": "Member removed successfully"}


# ============================================================
# INVITES
# ============================================================

@router.get("/{org_id}/invites", response_model=List[InviteOut])
async def list_invites(
    org_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Pending, unexpired invites"""
    await require_org_access(db, org_id, user.id, OrgRole.ADMIN)
    result = await db.execute(
        select(OrganizationInvite)
        .where(OrganizationInvite.organization_id == org_id, OrganizationInvite.accepted_at.is_(None))
        .order_by(OrganizationInvite.created_at.desc())
    )
    now = utcnow()
    return [_invite_out(i) for i in result.scalars().all() if as_utc(i.expires_at) > now]


@router.post("/{org_id}/invites", response_model=InviteOut, status_code=201)
async def create_invite(
    org_id: str,
    data: InviteCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await require_org_access(db, org_id, user.id, OrgRole.ADMIN)
    role = _parse_assignable_role(data.role)
    email = data.email.lower()
    org = await _get_org(db, org_id)

    invitee = (await db.execute(select(User).where(User.email == email))).scalar_one_or_none()
    if invitee and await get_org_membership(db, org_id, invitee.id):
        raise ValidationFailed("User is already a member")

    pending = (await db.execute(
        select(OrganizationInvite).where(
            OrganizationInvite.organization_id == org_id,
            OrganizationInvite.email == email,
            OrganizationInvite.accepted_at.is_(None),
        )
    )).scalars().all()
    if any(as_utc(i.expires_at) > utcnow() for i in pending):
        raise ValidationFailed("Invite already pending for this email")

    invite = OrganizationInvite(
        organization_id=org_id,
        email=email,
        role=role,
        invited_by=user.id,
        token=secrets.token_urlsafe(32),
        expires_at=utcnow() + timedelta(days=INVITE_TTL_DAYS),
    )
    db.add(invite)
    if invitee:
        notify_org_invite(db, invitee.id, org.name, invite.token, user.display_name or user.username)
    await db.commit()
    await db.refresh(invite)
    return _invite_out(invite)


@router.delete("/{org_id}/invites/{invite_id}", status_code=204)
async def revoke_invite(
    org_id: str,
    invite_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await require_org_access(db, org_id, user.id, OrgRole.ADMIN)
    invite = (await db.execute(
        select(OrganizationInvite).where(
            OrganizationInvite.id == invite_id, OrganizationInvite.organization_id == org_id
        )
    )).scalar_one_or_none()
    if not invite:
        raise NotFound("Invite")
    await db.delete(invite)
    await db.commit()
    return Response(status_code=204)
