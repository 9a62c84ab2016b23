# routers/projects.py — Projects and group-to-project grants
from typing import Dict, Optional, List

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy import select, func, delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_current_user, CurrentUser
from database import get_db_session
from errors import AccessDenied, Conflict, NotFound, ValidationFailed
from memberships import get_group_membership, group_member_ids, is_group_admin, user_group_ids
from models import (
    Project, ProjectGroup, ProjectStatus, Group, File, PermissionLevel,
)
from notifier import notify_project_shared, notify_project_access_removed
from org_access import require_org_access, user_org_ids
from permissions import max_level, project_access
from routers.files import purge_objects
from routers.users import ts
from storage import StorageProvider, get_storage

router = APIRouter(prefix="/api/v1/projects", tags=["Projects"])


# --- Schemas ---

class ProjectCreate(BaseModel):
    organization_id: str
    group_id: str
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=5000)


class ProjectUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=5000)
    status: Optional[ProjectStatus] = None


class GrantOut(BaseModel):
    group_id: str
    group_name: str
    permission_level: str


class ProjectOut(BaseModel):
    id: str
    organization_id: str
    name: str
    description: Optional[str] = None
    status: str
    created_by: str
    my_permission: Optional[str] = None
    access_groups: List[GrantOut] = []
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class GrantCreate(BaseModel):
    group_id: str
    permission_level: PermissionLevel = PermissionLevel.READ


class GrantUpdate(BaseModel):
    permission_level: PermissionLevel


# --- Helpers ---

async def _grants(db: AsyncSession, project_id: str) -> List[GrantOut]:
    result = await db.execute(
        select(ProjectGroup, Group.name)
        .join(Group, Group.id == ProjectGroup.group_id)
        .where(ProjectGroup.project_id == project_id)
        .order_by(Group.name.asc())
    )
    return [
        GrantOut(group_id=g.group_id, group_name=name, permission_level=PermissionLevel(g.permission_level).value)
        for g, name in result.all()
    ]


def _project_out(p: Project, my_permission=None, grants: Optional[List[GrantOut]] = None) -> ProjectOut:
    return ProjectOut(
        id=p.id,
        organization_id=p.organization_id,
        name=p.name,
        description=p.description,
        status=ProjectStatus(p.status).value,
        created_by=p.created_by,
        my_permission=PermissionLevel(my_permission).value if my_permission else None,
        access_groups=grants or [],
        created_at=ts(p.created_at),
        updated_at=ts(p.updated_at),
    )


async def _get_grant(db: AsyncSession, project_id: str, group_id: str) -> ProjectGroup:
    grant = (await db.execute(
        select(ProjectGroup).where(ProjectGroup.project_id == project_id, ProjectGroup.group_id == group_id)
    )).scalar_one_or_none()
    if not grant:
        raise NotFound("Group access")
    return grant


async def _admin_grant_count(db: AsyncSession, project_id: str) -> int:
    return (await db.execute(
        select(func.count(ProjectGroup.id)).where(
            ProjectGroup.project_id == project_id,
            ProjectGroup.permission_level == PermissionLevel.ADMIN,
        )
    )).scalar() or 0


# ============================================================
# PROJECTS
# ============================================================

@router.get("", response_model=List[ProjectOut])
async def list_projects(
    organization_id: Optional[str] = Query(None),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Projects reachable through the caller's groups or created by them"""
    org_ids = await user_org_ids(db, user.id)
    if organization_id is not None:
        org_ids &= {organization_id}
    if not org_ids:
        return []

    levels: Dict[str, PermissionLevel] = {}
    group_ids = await user_group_ids(db, user.id)
    if group_ids:
        rows = await db.execute(
            select(ProjectGroup.project_id, ProjectGroup.permission_level)
            .where(ProjectGroup.group_id.in_(list(group_ids)))
        )
        for project_id, level in rows.all():
            level = PermissionLevel(level)
            levels[project_id] = max_level(levels[project_id], level) if project_id in levels else level

    created = (await db.execute(select(Project.id).where(Project.created_by == user.id))).scalars().all()
    for project_id in created:
        levels[project_id] = PermissionLevel.ADMIN

    if not levels:
        return []
    result = await db.execute(
        select(Project)
        .where(Project.id.in_(list(levels)), Project.organization_id.in_(list(org_ids)))
        .order_by(Project.updated_at.desc())
    )
    return [_project_out(p, levels[p.id], await _grants(db, p.id)) for p in result.scalars().all()]


@router.post("", response_model=ProjectOut, status_code=201)
async def create_project(
    data: ProjectCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Create a project owned by one of the caller's admin groups"""
    await require_org_access(db, data.organization_id, user.id)

    group = (await db.execute(
        select(Group).where(Group.id == data.group_id, Group.organization_id == data.organization_id)
    )).scalar_one_or_none()
    if not group:
        raise ValidationFailed("Group not found in this organization")
    if not await is_group_admin(db, group.id, user.id):
        raise AccessDenied("Admin access to group required")

    project = Project(
        organization_id=data.organization_id,
        name=data.name.strip(),
        description=data.description,
        created_by=user.id,
    )
    db.add(project)
    await db.flush()
    db.add(ProjectGroup(project_id=project.id, group_id=group.id, permission_level=PermissionLevel.ADMIN))
    await db.commit()
    await db.refresh(project)
    return _project_out(project, PermissionLevel.ADMIN, await _grants(db, project.id))


@router.get("/{project_id}", response_model=ProjectOut)
async def get_project(
    project_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    access = await project_access.require(db, project_id, user.id, PermissionLevel.READ)
    return _project_out(access.resource, access.permission, await _grants(db, project_id))


@router.put("/{project_id}", response_model=ProjectOut)
async def update_project(
    project_id: str,
    data: ProjectUpdate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    access = await project_access.require(db, project_id, user.id, PermissionLevel.ADMIN)
    project = access.resource
    if data.name is not None:
        project.name = data.name.strip()
    if data.description is not None:
        project.description = data.description or None
    if data.status is not None:
        project.status = data.status
    await db.commit()
    await db.refresh(project)
    return _project_out(project, access.permission, await _grants(db, project_id))


@router.delete("/{project_id}")
async def delete_project(
    project_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    storage: StorageProvider = Depends(get_storage),
):
    """Delete a project with its documents, credentials, folders and files"""
    await project_access.require(db, project_id, user.id, PermissionLevel.ADMIN)
    keys = (await db.execute(select(File.storage_key).where(File.project_id == project_id))).scalars().all()
    await db.execute(delete(Project).where(Project.id == project_id))
    await db.commit()
    await purge_objects(storage, keys)
    return {"message": "Project deleted successfully"}


# ============================================================
# GROUP GRANTS
# ============================================================

@router.get("/{project_id}/groups", response_model=List[GrantOut])
async def list_project_groups(
    project_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await project_access.require(db, project_id, user.id, PermissionLevel.READ)
    return await _grants(db, project_id)


@router.post("/{project_id}/groups", response_model=GrantOut, status_code=201)
async def add_project_group(
    project_id: str,
    data: GrantCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Share the project with a group of the same organization"""
    access = await project_access.require(db, project_id, user.id, PermissionLevel.ADMIN)
    project = access.resource

    group = (await db.execute(select(Group).where(Group.id == data.group_id))).scalar_one_or_none()
    if not group:
        raise NotFound("Group")
    if group.organization_id != project.organization_id:
        raise ValidationFailed("Group belongs to a different organization")
    if not await get_group_membership(db, group.id, user.id):
        raise AccessDenied("You must be a member of the group to share with it")
    existing = (await db.execute(
        select(ProjectGroup.id).where(ProjectGroup.project_id == project_id, ProjectGroup.group_id == group.id)
    )).scalar_one_or_none()
    if existing:
        raise Conflict("Group already has access")

    db.add(ProjectGroup(project_id=project_id, group_id=group.id, permission_level=data.permission_level))
    notify_project_shared(
        db, await group_member_ids(db, group.id), project.name, project.id, data.permission_level, skip=user.id,
    )
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise Conflict("Group already has access")
    return GrantOut(group_id=group.id, group_name=group.name, permission_level=data.permission_level.value)


@router.put("/{project_id}/groups/{group_id}", response_model=GrantOut)
async def update_project_group(
    project_id: str,
    group_id: str,
    data: GrantUpdate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    access = await project_access.require(db, project_id, user.id, PermissionLevel.ADMIN)
    grant = await _get_grant(db, project_id, group_id)

    if grant.permission_level == PermissionLevel.ADMIN and data.permission_level != PermissionLevel.ADMIN \
            and await _admin_grant_count(db, project_id) <= 1:
        raise ValidationFailed("Cannot downgrade the last admin group")

    grant.permission_level = data.permission_level
    group = (await db.execute(select(Group).where(Group.id == group_id))).scalar_one()
    notify_project_shared(
        db, await group_member_ids(db, group_id), access.resource.name, project_id,
        data.permission_level, skip=user.id,
    )
    await db.commit()
    return GrantOut(group_id=group_id, group_name=group.name, permission_level=data.permission_level.value)


@router.delete("/{project_id}/groups/{group_id}")
async def remove_project_group(
    project_id: str,
    group_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    access = await project_access.require(db, project_id, user.id, PermissionLevel.ADMIN)
    grant = await _get_grant(db, project_id, group_id)
    if grant.permission_level == PermissionLevel.ADMIN and await _admin_grant_count(db, project_id) <= 1:
        raise ValidationFailed("Cannot remove the last admin group")

    await db.delete(grant)
    notify_project_access_removed(db, await group_member_ids(db, group_id), access.resource.name, skip=user.id)
    await db.commit()
    return {"message": "Group access removed"}
