# routers/groups.py — Groups and group membership
from typing import Optional, List

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field, model_validator
from sqlalchemy import select, func, delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_current_user, CurrentUser
from database import get_db_session
from errors import AccessDenied, Conflict, NotFound, ValidationFailed
from memberships import count_group_admins, get_group_membership
from models import Group, GroupMember, GroupRole, OrgRole, User
from notifier import notify_added_to_group, notify_group_role_changed, notify_removed_from_group
from org_access import get_org_membership, require_org_access, visible_group_ids
from routers.users import UserSummary, user_summary, ts

router = APIRouter(prefix="/api/v1/groups", tags=["Groups"])


# --- Schemas ---

class GroupCreate(BaseModel):
    organization_id: str
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=2000)


class GroupUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=2000)


class GroupOut(BaseModel):
    id: str
    organization_id: str
    name: str
    description: Optional[str] = None
    created_by: str
    my_role: Optional[str] = None
    member_count: int = 0
    created_at: Optional[str] = None


class GroupMemberOut(BaseModel):
    user: UserSummary
    role: str
    joined_at: Optional[str] = None


class GroupDetailOut(GroupOut):
    members: List[GroupMemberOut] = []


class MemberAdd(BaseModel):
    user_id: Optional[str] = None
    username: Optional[str] = None
    role: GroupRole = GroupRole.MEMBER

    @model_validator(mode="after")
    def _needs_target(self):
        if not self.user_id and not self.username:
            raise ValueError("user_id or username is required")
        return self


class MemberRoleUpdate(BaseModel):
    role: GroupRole


# --- Helpers ---

async def _get_group(db: AsyncSession, group_id: str) -> Group:
    group = (await db.execute(select(Group).where(Group.id == group_id))).scalar_one_or_none()
    if not group:
        raise NotFound("Group")
    return group


async def _require_group_admin(db: AsyncSession, group_id: str, user_id: str) -> GroupMember:
    membership = await get_group_membership(db, group_id, user_id)
    if membership is None or membership.role != GroupRole.ADMIN:
        raise AccessDenied("Group admin access required")
    return membership


async def _member_count(db: AsyncSession, group_id: str) -> int:
    return (await db.execute(
        select(func.count(GroupMember.id)).where(GroupMember.group_id == group_id)
    )).scalar() or 0


def _group_out(group: Group, my_role=None, member_count: int = 0) -> GroupOut:
    return GroupOut(
        id=group.id,
        organization_id=group.organization_id,
        name=group.name,
        description=group.description,
        created_by=group.created_by,
        my_role=GroupRole(my_role).value if my_role else None,
        member_count=member_count,
        created_at=ts(group.created_at),
    )


# ============================================================
# GROUPS
# ============================================================

@router.get("", response_model=List[GroupOut])
async def list_groups(
    organization_id: Optional[str] = Query(None),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Groups the caller belongs to, within organizations they belong to"""
    group_ids = await visible_group_ids(db, user.id, organization_id)
    if not group_ids:
        return []

    result = await db.execute(
        select(Group, GroupMember.role)
        .join(GroupMember, (GroupMember.group_id == Group.id) & (GroupMember.user_id == user.id))
        .where(Group.id.in_(list(group_ids)))
        .order_by(Group.name.asc())
    )
    out = []
    for group, role in result.all():
        out.append(_group_out(group, role, await _member_count(db, group.id)))
    return out


@router.post("", response_model=GroupOut, status_code=201)
async def create_group(
    data: GroupCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Create a group (org admin/owner); the creator becomes group admin"""
    await require_org_access(
        db, data.organization_id, user.id, OrgRole.ADMIN,
        detail="Organization admin access required",
    )
    group = Group(
        organization_id=data.organization_id,
        name=data.name.strip(),
        description=data.description,
        created_by=user.id,
    )
    db.add(group)
    await db.flush()
    db.add(GroupMember(group_id=group.id, user_id=user.id, role=GroupRole.ADMIN))
    await db.commit()
    await db.refresh(group)
    return _group_out(group, GroupRole.ADMIN, 1)


@router.get("/{group_id}", response_model=GroupDetailOut)
async def get_group(
    group_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    membership = await get_group_membership(db, group_id, user.id)
    if membership is None:
        raise AccessDenied()
    group = await _get_group(db, group_id)

    result = await db.execute(
        select(GroupMember, User)
        .join(User, User.id == GroupMember.user_id)
        .where(GroupMember.group_id == group_id)
        .order_by(GroupMember.created_at.asc())
    )
    members = [
        GroupMemberOut(user=user_summary(u), role=GroupRole(m.role).value, joined_at=ts(m.created_at))
        for m, u in result.all()
    ]
    base = _group_out(group, membership.role, len(members))
    return GroupDetailOut(**base.model_dump(), members=members)


@router.put("/{group_id}", response_model=GroupOut)
async def update_group(
    group_id: str,
    data: GroupUpdate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    membership = await _require_group_admin(db, group_id, user.id)
    group = await _get_group(db, group_id)
    if data.name is not None:
        group.name = data.name.strip()
    if data.description is not None:
        group.description = data.description or None
    await db.commit()
    await db.refresh(group)
    return _group_out(group, membership.role, await _member_count(db, group_id))


@router.delete("/{group_id}")
async def delete_group(
    group_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Delete a group; its memberships and board/project grants go with it"""
    await _require_group_admin(db, group_id, user.id)
    await _get_group(db, group_id)
    await db.execute(delete(Group).where(Group.id == group_id))
    await db.commit()
    return {"message": "Group deleted successfully"}


# ============================================================
# MEMBERS
# ============================================================

@router.post("/{group_id}/members", response_model=GroupMemberOut, status_code=201)
async def add_member(
    group_id: str,
    data: MemberAdd,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await _require_group_admin(db, group_id, user.id)
    group = await _get_group(db, group_id)

    stmt = select(User).where(User.id == data.user_id) if data.user_id else \
        select(User).where(User.username == data.username)
    target = (await db.execute(stmt)).scalar_one_or_none()
    if not target:
        raise NotFound("User")
    if not await get_org_membership(db, group.organization_id, target.id):
        raise ValidationFailed("User is not a member of this organization")
    if await get_group_membership(db, group_id, target.id):
        raise Conflict("User is already a member of this group")

    member = GroupMember(group_id=group_id, user_id=target.id, role=data.role)
    db.add(member)
    notify_added_to_group(db, target.id, group.name, group.id, data.role.value)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise Conflict("User is already a member of this group")
    await db.refresh(member)
    return GroupMemberOut(user=user_summary(target), role=data.role.value, joined_at=ts(member.created_at))


@router.put("/{group_id}/members/{user_id}")
async def update_member_role(
    group_id: str,
    user_id: str,
    data: MemberRoleUpdate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await _require_group_admin(db, group_id, user.id)
    group = await _get_group(db, group_id)

    target = await get_group_membership(db, group_id, user_id)
    if not target:
        raise NotFound("Member")
    if target.role == GroupRole.ADMIN and data.role != GroupRole.ADMIN \
            and await count_group_admins(db, group_id) <= 1:
        raise ValidationFailed("Cannot demote the last admin")

    target.role = data.role
    if user_id != user.id:
        notify_group_role_changed(db, user_id, group.name, group.id, data.role.value)
    await db.commit()
    return {"message": "Role updated successfully", "role": data.role.value}


@router.delete("/{group_id}/members/{user_id}")
async def remove_member(
    group_id: str,
    user_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Remove a member (group admin) or leave the group"""
    is_self = user_id == user.id
    if not is_self:
        await _require_group_admin(db, group_id, user.id)
    group = await _get_group(db, group_id)

    target = await get_group_membership(db, group_id, user_id)
    if not target:
        raise NotFound("Member")
    if target.role == GroupRole.ADMIN and await count_group_admins(db, group_id) <= 1:
        raise ValidationFailed("Cannot remove the last admin")

    await db.delete(target)
    if not is_self:
        notify_removed_from_group(db, user_id, group.name)
    await db.commit()
    return {"message": "Member removed successfully"}
