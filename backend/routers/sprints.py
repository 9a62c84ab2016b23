# routers/sprints.py — Board sprints (one active sprint per board)
import logging
from datetime import datetime
from typing import Optional, List

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field, model_validator
from sqlalchemy import select, func, update
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_current_user, CurrentUser
from database import get_db_session
from errors import NotFound, ValidationFailed
from models import PermissionLevel, Sprint, SprintStatus, Task, as_utc
from permissions import board_access
from routers.users import ts

logger = logging.getLogger("teamspace.sprints")

router = APIRouter(prefix="/api/v1/boards", tags=["Sprints"])


# --- Schemas ---

class SprintCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    goal: Optional[str] = Field(default=None, max_length=2000)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None

    @model_validator(mode="after")
    def _dates_in_order(self):
        if self.start_date and self.end_date and as_utc(self.end_date) < as_utc(self.start_date):
            raise ValueError("end_date must not be before start_date")
        return self


class SprintUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    goal: Optional[str] = Field(default=None, max_length=2000)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    status: Optional[SprintStatus] = None


class SprintOut(BaseModel):
    id: str
    board_id: str
    name: str
    goal: Optional[str] = None
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    status: str
    task_count: int = 0
    created_by: str
    created_at: Optional[str] = None


# --- Helpers ---

async def get_board_sprint(db: AsyncSession, board_id: str, sprint_id: str) -> Sprint:
    sprint = (await db.execute(
        select(Sprint).where(Sprint.id == sprint_id, Sprint.board_id == board_id)
    )).scalar_one_or_none()
    if not sprint:
        raise NotFound("Sprint")
    return sprint


async def _task_count(db: AsyncSession, sprint_id: str) -> int:
    return (await db.execute(
        select(func.count(Task.id)).where(Task.sprint_id == sprint_id)
    )).scalar() or 0


def _sprint_out(s: Sprint, task_count: int = 0) -> SprintOut:
    return SprintOut(
        id=s.id,
        board_id=s.board_id,
        name=s.name,
        goal=s.goal,
        start_date=ts(s.start_date),
        end_date=ts(s.end_date),
        status=SprintStatus(s.status).value,
        task_count=task_count,
        created_by=s.created_by,
        created_at=ts(s.created_at),
    )


async def activate_sprint(db: AsyncSession, sprint: Sprint) -> int:
    """Demote every other active sprint on the board, then promote this one.

    Runs inside the caller's transaction; nothing is committed here.
    Returns the number of sprints sent back to planning.
    """
    result = await db.execute(
        update(Sprint)
        .where(
            Sprint.board_id == sprint.board_id,
            Sprint.status == SprintStatus.ACTIVE,
            Sprint.id != sprint.id,
        )
        .values(status=SprintStatus.PLANNING)
        .execution_options(synchronize_session="fetch")
    )
    sprint.status = SprintStatus.ACTIVE
    return result.rowcount or 0


# ============================================================
# SPRINTS
# ============================================================

@router.get("/{board_id}/sprints", response_model=List[SprintOut])
async def list_sprints(
    board_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await board_access.require(db, board_id, user.id, PermissionLevel.READ)
    result = await db.execute(
        select(Sprint).where(Sprint.board_id == board_id).order_by(Sprint.created_at.asc())
    )
    return [_sprint_out(s, await _task_count(db, s.id)) for s in result.scalars().all()]


@router.post("/{board_id}/sprints", response_model=SprintOut, status_code=201)
async def create_sprint(
    board_id: str,
    data: SprintCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await board_access.require(db, board_id, user.id, PermissionLevel.WRITE)
    sprint = Sprint(
        board_id=board_id,
        name=data.name.strip(),
        goal=data.goal,
        start_date=data.start_date,
        end_date=data.end_date,
        status=SprintStatus.PLANNING,
        created_by=user.id,
    )
    db.add(sprint)
    await db.commit()
    await db.refresh(sprint)
    return _sprint_out(sprint)


@router.get("/{board_id}/sprints/{sprint_id}", response_model=SprintOut)
async def get_sprint(
    board_id: str,
    sprint_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await board_access.require(db, board_id, user.id, PermissionLevel.READ)
    sprint = await get_board_sprint(db, board_id, sprint_id)
    return _sprint_out(sprint, await _task_count(db, sprint.id))


@router.put("/{board_id}/sprints/{sprint_id}", response_model=SprintOut)
async def update_sprint(
    board_id: str,
    sprint_id: str,
    data: SprintUpdate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await board_access.require(db, board_id, user.id, PermissionLevel.WRITE)
    sprint = await get_board_sprint(db, board_id, sprint_id)

    if data.name is not None:
        sprint.name = data.name.strip()
    if "goal" in data.model_fields_set:
        sprint.goal = data.goal
    if "start_date" in data.model_fields_set:
        sprint.start_date = data.start_date
    if "end_date" in data.model_fields_set:
        sprint.end_date = data.end_date
    if sprint.start_date and sprint.end_date and as_utc(sprint.end_date) < as_utc(sprint.start_date):
        raise ValidationFailed("end_date must not be before start_date")

    if data.status == SprintStatus.ACTIVE:
        demoted = await activate_sprint(db, sprint)
        if demoted:
            logger.info(f"Sprint {sprint.id} activated on board {board_id}; {demoted} sprint(s) back to planning")
    elif data.status is not None:
        sprint.status = data.status

    await db.commit()
    await db.refresh(sprint)
    return _sprint_out(sprint, await _task_count(db, sprint.id))


@router.delete("/{board_id}/sprints/{sprint_id}")
async def delete_sprint(
    board_id: str,
    sprint_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Delete a sprint; its tasks return to the backlog"""
    await board_access.require(db, board_id, user.id, PermissionLevel.ADMIN)
    sprint = await get_board_sprint(db, board_id, sprint_id)
    moved = await db.execute(
        update(Task).where(Task.sprint_id == sprint.id).values(sprint_id=None)
    )
    await db.delete(sprint)
    await db.commit()
    return {"message": "Sprint deleted successfully", "tasks_moved_to_backlog": moved.rowcount or 0}
