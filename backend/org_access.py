# org_access.py — Organization-level authorization (member < admin < owner)
from dataclasses import dataclass
from typing import List, Optional, Set, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from errors import AccessDenied
from memberships import user_group_ids
from models import Group, Organization, OrganizationMember, OrgRole
from permissions import role_meets


@dataclass(frozen=True)
class OrgAccess:
    has_access: bool
    role: Optional[OrgRole] = None


async def get_org_membership(db: AsyncSession, org_id: str, user_id: str) -> Optional[OrganizationMember]:
    result = await db.execute(
        select(OrganizationMember).where(
            OrganizationMember.organization_id == org_id,
            OrganizationMember.user_id == user_id,
        )
    )
    return result.scalar_one_or_none()


async def check_org_access(
    db: AsyncSession, org_id: str, user_id: str,
    required: OrgRole = OrgRole.MEMBER,
) -> OrgAccess:
    """Resolve the caller's role. The actual role is returned even when it
    falls short, so callers can apply owner-only rules on top."""
    membership = await get_org_membership(db, org_id, user_id)
    if membership is None:
        return OrgAccess(False, None)
    role = OrgRole(membership.role)
    return OrgAccess(role_meets(role, required), role)


async def require_org_access(
    db: AsyncSession, org_id: str, user_id: str,
    required: OrgRole = OrgRole.MEMBER,
    detail: Optional[str] = None,
) -> OrgAccess:
    access = await check_org_access(db, org_id, user_id, required)
    if not access.has_access:
        if detail is None:
            detail = "Not a member of this organization" if required == OrgRole.MEMBER else \
                f"{required.value.capitalize()} access required"
        raise AccessDenied(detail)
    return access


async def get_user_organizations(db: AsyncSession, user_id: str) -> List[Tuple[Organization, OrgRole]]:
    """Organizations the user belongs to, newest membership first"""
    result = await db.execute(
        select(Organization, OrganizationMember.role)
        .join(OrganizationMember, OrganizationMember.organization_id == Organization.id)
        .where(OrganizationMember.user_id == user_id)
        .order_by(OrganizationMember.created_at.desc())
    )
    return [(org, OrgRole(role)) for org, role in result.all()]


async def user_org_ids(db: AsyncSession, user_id: str) -> Set[str]:
    result = await db.execute(
        select(OrganizationMember.organization_id).where(OrganizationMember.user_id == user_id)
    )
    return set(result.scalars().all())


async def visible_group_ids(db: AsyncSession, user_id: str, org_id: Optional[str] = None) -> Set[str]:
    """The user's own groups, limited to organizations they still belong to"""
    group_ids = await user_group_ids(db, user_id)
    org_ids = await user_org_ids(db, user_id)
    if org_id is not None:
        org_ids &= {org_id}
    if not group_ids or not org_ids:
        return set()
    result = await db.execute(
        select(Group.id).where(Group.id.in_(list(group_ids)), Group.organization_id.in_(list(org_ids)))
    )
    return set(result.scalars().all())
