# memberships.py — Group membership index
from typing import List, Optional, Set

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from models import GroupMember, GroupRole


async def user_group_ids(db: AsyncSession, user_id: str) -> Set[str]:
    """Every group the user belongs to, whatever their role in it"""
    result = await db.execute(select(GroupMember.group_id).where(GroupMember.user_id == user_id))
    return set(result.scalars().all())


async def get_group_membership(db: AsyncSession, group_id: str, user_id: str) -> Optional[GroupMember]:
    result = await db.execute(
        select(GroupMember).where(GroupMember.group_id == group_id, GroupMember.user_id == user_id)
    )
    return result.scalar_one_or_none()


async def is_group_admin(db: AsyncSession, group_id: str, user_id: str) -> bool:
    membership = await get_group_membership(db, group_id, user_id)
    return membership is not None and membership.role == GroupRole.ADMIN


async def count_group_admins(db: AsyncSession, group_id: str) -> int:
    result = await db.execute(
        select(func.count(GroupMember.id)).where(
            GroupMember.group_id == group_id, GroupMember.role == GroupRole.ADMIN
        )
    )
    return result.scalar() or 0


async def group_member_ids(db: AsyncSession, group_id: str) -> List[str]:
    result = await db.execute(select(GroupMember.user_id).where(GroupMember.group_id == group_id))
    return list(result.scalars().all())
