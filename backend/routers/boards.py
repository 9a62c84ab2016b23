# routers/boards.py — Boards, board grants, columns & labels
import re
import logging
from typing import Dict, Optional, List

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field, field_validator
from sqlalchemy import select, func, delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_current_user, CurrentUser
from database import get_db_session
from errors import AccessDenied, Conflict, NotFound, ValidationFailed
from memberships import group_member_ids, is_group_admin, user_group_ids
from models import (
    Board, BoardColumn, BoardGroup, Group, PermissionLevel, Project, Task, TaskLabel,
)
from notifier import notify_board_access_removed, notify_board_permission_updated, notify_board_shared
from org_access import require_org_access, user_org_ids
from permissions import board_access, max_level
from routers.users import ts

logger = logging.getLogger("teamspace.boards")

router = APIRouter(prefix="/api/v1/boards", tags=["Boards"])

BOARD_KEY_RE = re.compile(r"^[A-Z]{2,10}$")

DEFAULT_COLUMNS = [
    {"name": "Backlog", "color": "#6b7280", "is_default": True},
    {"name": "To Do", "color": "#3b82f6"},
    {"name": "In Progress", "color": "#f59e0b"},
    {"name": "Done", "color": "#10b981"},
    {"name": "Deployed", "color": "#8b5cf6"},
]


# ============================================================
# SCHEMAS
# ============================================================

# --- Board ---
class BoardCreate(BaseModel):
    organization_id: str
    name: str = Field(..., min_length=1, max_length=100)
    key: str
    description: Optional[str] = Field(default=None, max_length=5000)
    project_id: Optional[str] = None
    group_ids: List[str] = Field(default_factory=list)

    @field_validator("key")
    @classmethod
    def _key_format(cls, v: str) -> str:
        v = v.strip().upper()
        if not BOARD_KEY_RE.match(v):
            raise ValueError("Board key must be 2-10 uppercase letters")
        return v


class BoardUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=5000)


class ColumnOut(BaseModel):
    id: str
    name: str
    color: Optional[str] = None
    sort_order: int
    is_default: bool
    wip_limit: Optional[int] = None


class BoardGrantOut(BaseModel):
    group_id: str
    group_name: str
    permission_level: str


class BoardOut(BaseModel):
    id: str
    organization_id: str
    project_id: Optional[str] = None
    name: str
    key: str
    description: Optional[str] = None
    created_by: str
    my_permission: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class BoardDetailOut(BoardOut):
    columns: List[ColumnOut] = []
    access_groups: List[BoardGrantOut] = []


# --- Grants ---
class BoardGrantCreate(BaseModel):
    group_id: Optional[str] = None
    permission_level: PermissionLevel = PermissionLevel.READ


class BoardGrantUpdate(BaseModel):
    permission_level: PermissionLevel


# --- Columns ---
class ColumnCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=50)
    color: Optional[str] = Field(default=None, max_length=20)
    wip_limit: Optional[int] = Field(default=None, ge=1)


class ColumnUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=50)
    color: Optional[str] = Field(default=None, max_length=20)
    wip_limit: Optional[int] = Field(default=None, ge=1)
    is_default: Optional[bool] = None


class ColumnReorder(BaseModel):
    column_ids: List[str] = Field(..., min_length=1)


# --- Labels ---
class LabelCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=50)
    color: Optional[str] = Field(default=None, max_length=20)


class LabelOut(BaseModel):
    id: str
    name: str
    color: Optional[str] = None


# ============================================================
# HELPERS
# ============================================================

def _column_out(c: BoardColumn) -> ColumnOut:
    return ColumnOut(
        id=c.id, name=c.name, color=c.color, sort_order=c.sort_order or 0,
        is_default=bool(c.is_default), wip_limit=c.wip_limit,
    )


def _board_out(b: Board, my_permission=None) -> BoardOut:
    return BoardOut(
        id=b.id,
        organization_id=b.organization_id,
        project_id=b.project_id,
        name=b.name,
        key=b.key,
        description=b.description,
        created_by=b.created_by,
        my_permission=PermissionLevel(my_permission).value if my_permission else None,
        created_at=ts(b.created_at),
        updated_at=ts(b.updated_at),
    )


async def _columns(db: AsyncSession, board_id: str) -> List[BoardColumn]:
    result = await db.execute(
        select(BoardColumn).where(BoardColumn.board_id == board_id).order_by(BoardColumn.sort_order.asc())
    )
    return list(result.scalars().all())


async def _grants(db: AsyncSession, board_id: str) -> List[BoardGrantOut]:
    result = await db.execute(
        select(BoardGroup, Group.name)
        .join(Group, Group.id == BoardGroup.group_id)
        .where(BoardGroup.board_id == board_id)
        .order_by(Group.name.asc())
    )
    return [
        BoardGrantOut(group_id=g.group_id, group_name=name, permission_level=PermissionLevel(g.permission_level).value)
        for g, name in result.all()
    ]


async def _board_detail(db: AsyncSession, board: Board, my_permission) -> BoardDetailOut:
    base = _board_out(board, my_permission)
    return BoardDetailOut(
        **base.model_dump(),
        columns=[_column_out(c) for c in await _columns(db, board.id)],
        access_groups=await _grants(db, board.id),
    )


async def _get_grant(db: AsyncSession, board_id: str, group_id: str) -> BoardGroup:
    grant = (await db.execute(
        select(BoardGroup).where(BoardGroup.board_id == board_id, BoardGroup.group_id == group_id)
    )).scalar_one_or_none()
    if not grant:
        raise NotFound("Group access")
    return grant


async def get_board_column(db: AsyncSession, board_id: str, column_id: str) -> BoardColumn:
    column = (await db.execute(
        select(BoardColumn).where(BoardColumn.id == column_id, BoardColumn.board_id == board_id)
    )).scalar_one_or_none()
    if not column:
        raise NotFound("Column")
    return column


# ============================================================
# BOARDS
# ============================================================

@router.get("", response_model=List[BoardOut])
async def list_boards(
    organization_id: Optional[str] = Query(None),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Boards reachable through the caller's groups or created by them"""
    org_ids = await user_org_ids(db, user.id)
    if organization_id is not None:
        org_ids &= {organization_id}
    if not org_ids:
        return []

    levels: Dict[str, PermissionLevel] = {}
    group_ids = await user_group_ids(db, user.id)
    if group_ids:
        rows = await db.execute(
            select(BoardGroup.board_id, BoardGroup.permission_level)
            .where(BoardGroup.group_id.in_(list(group_ids)))
        )
        for board_id, level in rows.all():
            level = PermissionLevel(level)
            levels[board_id] = max_level(levels[board_id], level) if board_id in levels else level

    created = (await db.execute(select(Board.id).where(Board.created_by == user.id))).scalars().all()
    for board_id in created:
        levels[board_id] = PermissionLevel.ADMIN

    if not levels:
        return []
    result = await db.execute(
        select(Board)
        .where(Board.id.in_(list(levels)), Board.organization_id.in_(list(org_ids)))
        .order_by(Board.updated_at.desc())
    )
    return [_board_out(b, levels[b.id]) for b in result.scalars().all()]


@router.post("", response_model=BoardDetailOut, status_code=201)
async def create_board(
    data: BoardCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Create a board with the default workflow columns"""
    await require_org_access(db, data.organization_id, user.id)

    taken = (await db.execute(
        select(Board.id).where(Board.organization_id == data.organization_id, Board.key == data.key)
    )).scalar_one_or_none()
    if taken:
        raise ValidationFailed(f"Board key {data.key} is already used in this organization")

    if data.project_id:
        project = (await db.execute(select(Project).where(Project.id == data.project_id))).scalar_one_or_none()
        if not project or project.organization_id != data.organization_id:
            raise ValidationFailed("Project not found in this organization")

    board = Board(
        organization_id=data.organization_id,
        project_id=data.project_id,
        name=data.name.strip(),
        key=data.key,
        description=data.description,
        created_by=user.id,
    )
    db.add(board)
    await db.flush()

    for position, defaults in enumerate(DEFAULT_COLUMNS):
        db.add(BoardColumn(board_id=board.id, sort_order=position, **defaults))

    # Groups are only shared where the creator administers them
    for group_id in dict.fromkeys(data.group_ids):
        group = (await db.execute(
            select(Group).where(Group.id == group_id, Group.organization_id == data.organization_id)
        )).scalar_one_or_none()
        if group is None or not await is_group_admin(db, group.id, user.id):
            logger.info(f"Skipping group {group_id} for new board {board.id}: caller is not its admin")
            continue
        db.add(BoardGroup(board_id=board.id, group_id=group.id, permission_level=PermissionLevel.WRITE))

    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise Conflict(f"Board key {data.key} is already used in this organization")
    await db.refresh(board)
    logger.info(f"Board {board.key} created in org {board.organization_id} by {user.id}")
    return await _board_detail(db, board, PermissionLevel.ADMIN)


@router.get("/{board_id}", response_model=BoardDetailOut)
async def get_board(
    board_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    access = await board_access.require(db, board_id, user.id, PermissionLevel.READ)
    return await _board_detail(db, access.resource, access.permission)


@router.put("/{board_id}", response_model=BoardDetailOut)
async def update_board(
    board_id: str,
    data: BoardUpdate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    access = await board_access.require(db, board_id, user.id, PermissionLevel.ADMIN)
    board = access.resource
    if data.name is not None:
        board.name = data.name.strip()
    if data.description is not None:
        board.description = data.description or None
    await db.commit()
    await db.refresh(board)
    return await _board_detail(db, board, access.permission)


@router.delete("/{board_id}")
async def delete_board(
    board_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Only the creator may delete a board, even among admins"""
    access = await board_access.require(db, board_id, user.id, PermissionLevel.ADMIN)
    if access.resource.created_by != user.id:
        raise AccessDenied("Only the board creator can delete it")
    await db.execute(delete(Board).where(Board.id == board_id))
    await db.commit()
    return {"message": "Board deleted successfully"}


# ============================================================
# GROUP GRANTS
# ============================================================

@router.get("/{board_id}/groups", response_model=List[BoardGrantOut])
async def list_board_groups(
    board_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await board_access.require(db, board_id, user.id, PermissionLevel.READ)
    return await _grants(db, board_id)


@router.post("/{board_id}/groups", response_model=BoardGrantOut, status_code=201)
async def add_board_group(
    board_id: str,
    data: BoardGrantCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    access = await board_access.require(db, board_id, user.id, PermissionLevel.ADMIN)
    board = access.resource
    if not data.group_id:
        raise ValidationFailed("group_id is required")

    group = (await db.execute(select(Group).where(Group.id == data.group_id))).scalar_one_or_none()
    if not group:
        raise NotFound("Group")
    if group.organization_id != board.organization_id:
        raise ValidationFailed("Group belongs to a different organization")
    existing = (await db.execute(
        select(BoardGroup.id).where(BoardGroup.board_id == board_id, BoardGroup.group_id == group.id)
    )).scalar_one_or_none()
    if existing:
        raise Conflict("Group already has access to this board")

    db.add(BoardGroup(board_id=board_id, group_id=group.id, permission_level=data.permission_level))
    notify_board_shared(
        db, await group_member_ids(db, group.id), group.name, board.name, board.id,
        data.permission_level, skip=user.id,
    )
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise Conflict("Group already has access to this board")
    return BoardGrantOut(group_id=group.id, group_name=group.name, permission_level=data.permission_level.value)


@router.put("/{board_id}/groups/{group_id}", response_model=BoardGrantOut)
async def update_board_group(
    board_id: str,
    group_id: str,
    data: BoardGrantUpdate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    access = await board_access.require(db, board_id, user.id, PermissionLevel.ADMIN)
    grant = await _get_grant(db, board_id, group_id)
    grant.permission_level = data.permission_level
    group_name = (await db.execute(select(Group.name).where(Group.id == group_id))).scalar_one()
    notify_board_permission_updated(
        db, await group_member_ids(db, group_id), group_name, access.resource.name, board_id,
        data.permission_level, skip=user.id,
    )
    await db.commit()
    return BoardGrantOut(group_id=group_id, group_name=group_name, permission_level=data.permission_level.value)


@router.delete("/{board_id}/groups/{group_id}")
async def remove_board_group(
    board_id: str,
    group_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    access = await board_access.require(db, board_id, user.id, PermissionLevel.ADMIN)
    grant = await _get_grant(db, board_id, group_id)
    group_name = (await db.execute(select(Group.name).where(Group.id == group_id))).scalar_one()
    await db.delete(grant)
    notify_board_access_removed(
        db, await group_member_ids(db, group_id), group_name, access.resource.name, skip=user.id,
    )
    await db.commit()
    return {"message": "Group access removed"}


# ============================================================
# COLUMNS
# ============================================================

@router.get("/{board_id}/columns", response_model=List[ColumnOut])
async def list_columns(
    board_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await board_access.require(db, board_id, user.id, PermissionLevel.READ)
    return [_column_out(c) for c in await _columns(db, board_id)]


@router.post("/{board_id}/columns", response_model=ColumnOut, status_code=201)
async def create_column(
    board_id: str,
    data: ColumnCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await board_access.require(db, board_id, user.id, PermissionLevel.ADMIN)
    last = (await db.execute(
        select(func.max(BoardColumn.sort_order)).where(BoardColumn.board_id == board_id)
    )).scalar()
    column = BoardColumn(
        board_id=board_id,
        name=data.name.strip(),
        color=data.color or "#6366f1",
        wip_limit=data.wip_limit,
        sort_order=0 if last is None else last + 1,
    )
    db.add(column)
    await db.commit()
    await db.refresh(column)
    return _column_out(column)


@router.put("/{board_id}/columns/reorder", response_model=List[ColumnOut])
async def reorder_columns(
    board_id: str,
    data: ColumnReorder,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Rewrite sort order from the given id sequence"""
    await board_access.require(db, board_id, user.id, PermissionLevel.ADMIN)
    columns = {c.id: c for c in await _columns(db, board_id)}
    if len(set(data.column_ids)) != len(data.column_ids) or any(cid not in columns for cid in data.column_ids):
        raise ValidationFailed("Column ids must be distinct columns of this board")

    for position, column_id in enumerate(data.column_ids):
        columns[column_id].sort_order = position
    await db.commit()
    return [_column_out(c) for c in await _columns(db, board_id)]


@router.put("/{board_id}/columns/{column_id}", response_model=ColumnOut)
async def update_column(
    board_id: str,
    column_id: str,
    data: ColumnUpdate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await board_access.require(db, board_id, user.id, PermissionLevel.ADMIN)
    column = await get_board_column(db, board_id, column_id)
    if data.name is not None:
        column.name = data.name.strip()
    if data.color is not None:
        column.color = data.color
    if "wip_limit" in data.model_fields_set:
        column.wip_limit = data.wip_limit
    if data.is_default:
        # one default column per board
        for other in await _columns(db, board_id):
            other.is_default = other.id == column.id
    elif data.is_default is False:
        column.is_default = False
    await db.commit()
    await db.refresh(column)
    return _column_out(column)


@router.delete("/{board_id}/columns/{column_id}")
async def delete_column(
    board_id: str,
    column_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await board_access.require(db, board_id, user.id, PermissionLevel.ADMIN)
    column = await get_board_column(db, board_id, column_id)

    task_count = (await db.execute(
        select(func.count(Task.id)).where(Task.column_id == column_id)
    )).scalar() or 0
    if task_count:
        raise ValidationFailed("Cannot delete a column that still has tasks")
    column_count = (await db.execute(
        select(func.count(BoardColumn.id)).where(BoardColumn.board_id == board_id)
    )).scalar() or 0
    if column_count <= 1:
        raise ValidationFailed("Cannot delete the only column of a board")

    await db.delete(column)
    await db.commit()
    return {"message": "Column deleted successfully"}


# ============================================================
# LABELS
# ============================================================

@router.get("/{board_id}/labels", response_model=List[LabelOut])
async def list_labels(
    board_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await board_access.require(db, board_id, user.id, PermissionLevel.READ)
    result = await db.execute(
        select(TaskLabel).where(TaskLabel.board_id == board_id).order_by(TaskLabel.name.asc())
    )
    return [LabelOut(id=l.id, name=l.name, color=l.color) for l in result.scalars().all()]


@router.post("/{board_id}/labels", response_model=LabelOut, status_code=201)
async def create_label(
    board_id: str,
    data: LabelCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await board_access.require(db, board_id, user.id, PermissionLevel.WRITE)
    label = TaskLabel(board_id=board_id, name=data.name.strip(), color=data.color or "#6366f1")
    db.add(label)
    await db.commit()
    await db.refresh(label)
    return LabelOut(id=label.id, name=label.name, color=label.color)


@router.delete("/{board_id}/labels/{label_id}")
async def delete_label(
    board_id: str,
    label_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await board_access.require(db, board_id, user.id, PermissionLevel.WRITE)
    label = (await db.execute(
        select(TaskLabel).where(TaskLabel.id == label_id, TaskLabel.board_id == board_id)
    )).scalar_one_or_none()
    if not label:
        raise NotFound("Label")
    await db.delete(label)
    await db.commit()
    return {"message": "Label deleted successfully"}
