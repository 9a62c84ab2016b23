# routers/tasks.py — Board tasks and task comments
import logging
from datetime import datetime
from typing import Dict, Optional, List

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy import select, func, delete, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_current_user, CurrentUser
from database import get_db_session
from errors import Conflict, NotFound, ValidationFailed
from models import (
    Board, BoardColumn, PermissionLevel, Sprint, Task, TaskComment, TaskLabel,
    TaskLabelAssignment, TaskPriority, TaskType,
)
from notifier import notify_task_assigned
from org_access import get_org_membership
from permissions import board_access
from routers.boards import LabelOut
from routers.users import UserSummary, load_user_summaries, ts

logger = logging.getLogger("teamspace.tasks")

router = APIRouter(prefix="/api/v1/boards", tags=["Tasks"])


# ============================================================
# SCHEMAS
# ============================================================

class TaskCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=500)
    description: Optional[str] = None
    type: TaskType = TaskType.TASK
    priority: TaskPriority = TaskPriority.MEDIUM
    column_id: Optional[str] = None  # defaults to the first column
    sprint_id: Optional[str] = None
    assignee_id: Optional[str] = None
    parent_task_id: Optional[str] = None
    story_points: Optional[int] = Field(default=None, ge=0, le=100)
    due_date: Optional[datetime] = None
    label_ids: List[str] = Field(default_factory=list)


class TaskUpdate(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=500)
    description: Optional[str] = None
    type: Optional[TaskType] = None
    priority: Optional[TaskPriority] = None
    column_id: Optional[str] = None
    sprint_id: Optional[str] = None
    assignee_id: Optional[str] = None
    parent_task_id: Optional[str] = None
    story_points: Optional[int] = Field(default=None, ge=0, le=100)
    due_date: Optional[datetime] = None
    sort_order: Optional[int] = Field(default=None, ge=0)
    label_ids: Optional[List[str]] = None


class TaskOut(BaseModel):
    id: str
    key: str
    board_id: str
    column_id: str
    sprint_id: Optional[str] = None
    task_number: int
    title: str
    description: Optional[str] = None
    type: str
    priority: str
    story_points: Optional[int] = None
    assignee: Optional[UserSummary] = None
    reporter: Optional[UserSummary] = None
    parent_task_id: Optional[str] = None
    due_date: Optional[str] = None
    sort_order: int = 0
    labels: List[LabelOut] = []
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class CommentCreate(BaseModel):
    content: str = Field(..., min_length=1, max_length=10000)


class CommentOut(BaseModel):
    id: str
    task_id: str
    author: Optional[UserSummary] = None
    content: str
    created_at: Optional[str] = None


# ============================================================
# HELPERS
# ============================================================

def task_key(board: Board, task: Task) -> str:
    return f"{board.key}-{task.task_number}"


async def _get_task(db: AsyncSession, board_id: str, task_id: str) -> Task:
    task = (await db.execute(
        select(Task).where(Task.id == task_id, Task.board_id == board_id)
    )).scalar_one_or_none()
    if not task:
        raise NotFound("Task")
    return task


async def _labels_by_task(db: AsyncSession, task_ids: List[str]) -> Dict[str, List[LabelOut]]:
    if not task_ids:
        return {}
    result = await db.execute(
        select(TaskLabelAssignment.task_id, TaskLabel)
        .join(TaskLabel, TaskLabel.id == TaskLabelAssignment.label_id)
        .where(TaskLabelAssignment.task_id.in_(task_ids))
        .order_by(TaskLabel.name.asc())
    )
    out: Dict[str, List[LabelOut]] = {}
    for task_id, label in result.all():
        out.setdefault(task_id, []).append(LabelOut(id=label.id, name=label.name, color=label.color))
    return out


async def _tasks_out(db: AsyncSession, board: Board, tasks: List[Task]) -> List[TaskOut]:
    users = await load_user_summaries(db, [t.assignee_id for t in tasks] + [t.reporter_id for t in tasks])
    labels = await _labels_by_task(db, [t.id for t in tasks])
    return [
        TaskOut(
            id=t.id,
            key=task_key(board, t),
            board_id=t.board_id,
            column_id=t.column_id,
            sprint_id=t.sprint_id,
            task_number=t.task_number,
            title=t.title,
            description=t.description,
            type=TaskType(t.type).value,
            priority=TaskPriority(t.priority).value,
            story_points=t.story_points,
            assignee=users.get(t.assignee_id),
            reporter=users.get(t.reporter_id),
            parent_task_id=t.parent_task_id,
            due_date=ts(t.due_date),
            sort_order=t.sort_order or 0,
            labels=labels.get(t.id, []),
            created_at=ts(t.created_at),
            updated_at=ts(t.updated_at),
        )
        for t in tasks
    ]


async def _check_assignee(db: AsyncSession, board: Board, assignee_id: Optional[str]) -> None:
    if assignee_id and not await get_org_membership(db, board.organization_id, assignee_id):
        raise ValidationFailed("Assignee is not a member of this organization")


async def _check_sprint(db: AsyncSession, board_id: str, sprint_id: Optional[str]) -> None:
    if sprint_id is None:
        return
    found = (await db.execute(
        select(Sprint.id).where(Sprint.id == sprint_id, Sprint.board_id == board_id)
    )).scalar_one_or_none()
    if not found:
        raise ValidationFailed("Sprint not found on this board")


async def _check_column(db: AsyncSession, board_id: str, column_id: str) -> None:
    found = (await db.execute(
        select(BoardColumn.id).where(BoardColumn.id == column_id, BoardColumn.board_id == board_id)
    )).scalar_one_or_none()
    if not found:
        raise ValidationFailed("Column not found on this board")


async def _check_parent(db: AsyncSession, board_id: str, parent_task_id: Optional[str]) -> None:
    if parent_task_id is None:
        return
    found = (await db.execute(
        select(Task.id).where(Task.id == parent_task_id, Task.board_id == board_id)
    )).scalar_one_or_none()
    if not found:
        raise ValidationFailed("Parent task not found on this board")


async def _set_labels(db: AsyncSession, board_id: str, task_id: str, label_ids: List[str]) -> None:
    label_ids = list(dict.fromkeys(label_ids))
    if label_ids:
        valid = set((await db.execute(
            select(TaskLabel.id).where(TaskLabel.id.in_(label_ids), TaskLabel.board_id == board_id)
        )).scalars().all())
        if len(valid) != len(label_ids):
            raise ValidationFailed("Labels must belong to this board")
    await db.execute(delete(TaskLabelAssignment).where(TaskLabelAssignment.task_id == task_id))
    for label_id in label_ids:
        db.add(TaskLabelAssignment(task_id=task_id, label_id=label_id))


async def _next_sort_order(db: AsyncSession, column_id: str) -> int:
    last = (await db.execute(
        select(func.max(Task.sort_order)).where(Task.column_id == column_id)
    )).scalar()
    return 0 if last is None else last + 1


# ============================================================
# TASKS
# ============================================================

@router.get("/{board_id}/tasks", response_model=List[TaskOut])
async def list_tasks(
    board_id: str,
    column_id: Optional[str] = Query(None),
    sprint_id: Optional[str] = Query(None),
    assignee_id: Optional[str] = Query(None),
    backlog: bool = Query(False, description="Only tasks that are in no sprint"),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    access = await board_access.require(db, board_id, user.id, PermissionLevel.READ)

    query = select(Task).where(Task.board_id == board_id)
    if column_id:
        query = query.where(Task.column_id == column_id)
    if backlog:
        query = query.where(Task.sprint_id.is_(None))
    elif sprint_id:
        query = query.where(Task.sprint_id == sprint_id)
    if assignee_id:
        query = query.where(Task.assignee_id == assignee_id)
    query = query.order_by(Task.sort_order.asc(), Task.task_number.asc())

    tasks = list((await db.execute(query)).scalars().all())
    return await _tasks_out(db, access.resource, tasks)


@router.post("/{board_id}/tasks", response_model=TaskOut, status_code=201)
async def create_task(
    board_id: str,
    data: TaskCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    access = await board_access.require(db, board_id, user.id, PermissionLevel.WRITE)
    board = access.resource

    if data.column_id:
        await _check_column(db, board_id, data.column_id)
        column_id = data.column_id
    else:
        column_id = (await db.execute(
            select(BoardColumn.id)
            .where(BoardColumn.board_id == board_id)
            .order_by(BoardColumn.sort_order.asc())
            .limit(1)
        )).scalar_one_or_none()
        if column_id is None:
            raise ValidationFailed("Board has no columns")
    await _check_sprint(db, board_id, data.sprint_id)
    await _check_parent(db, board_id, data.parent_task_id)
    await _check_assignee(db, board, data.assignee_id)

    last_number = (await db.execute(
        select(func.max(Task.task_number)).where(Task.board_id == board_id)
    )).scalar()
    task = Task(
        board_id=board_id,
        column_id=column_id,
        sprint_id=data.sprint_id,
        task_number=(last_number or 0) + 1,
        title=data.title.strip(),
        description=data.description,
        type=data.type,
        priority=data.priority,
        story_points=data.story_points,
        assignee_id=data.assignee_id,
        reporter_id=user.id,
        parent_task_id=data.parent_task_id,
        due_date=data.due_date,
        sort_order=await _next_sort_order(db, column_id),
    )
    db.add(task)
    await db.flush()
    await _set_labels(db, board_id, task.id, data.label_ids)

    if task.assignee_id and task.assignee_id != user.id:
        notify_task_assigned(db, task.assignee_id, task_key(board, task), task.title, board_id)

    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise Conflict("Another task was created at the same time, please retry")
    await db.refresh(task)
    logger.info(f"Task {task_key(board, task)} created by {user.id}")
    return (await _tasks_out(db, board, [task]))[0]


@router.get("/{board_id}/tasks/{task_id}", response_model=TaskOut)
async def get_task(
    board_id: str,
    task_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    access = await board_access.require(db, board_id, user.id, PermissionLevel.READ)
    task = await _get_task(db, board_id, task_id)
    return (await _tasks_out(db, access.resource, [task]))[0]


@router.put("/{board_id}/tasks/{task_id}", response_model=TaskOut)
async def update_task(
    board_id: str,
    task_id: str,
    data: TaskUpdate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    access = await board_access.require(db, board_id, user.id, PermissionLevel.WRITE)
    board = access.resource
    task = await _get_task(db, board_id, task_id)
    fields = data.model_fields_set

    if data.title is not None:
        task.title = data.title.strip()
    if "description" in fields:
        task.description = data.description
    if data.type is not None:
        task.type = data.type
    if data.priority is not None:
        task.priority = data.priority
    if "story_points" in fields:
        task.story_points = data.story_points
    if "due_date" in fields:
        task.due_date = data.due_date
    if data.column_id is not None and data.column_id != task.column_id:
        await _check_column(db, board_id, data.column_id)
        task.column_id = data.column_id
        if data.sort_order is None:
            task.sort_order = await _next_sort_order(db, data.column_id)
    if data.sort_order is not None:
        task.sort_order = data.sort_order
    if "sprint_id" in fields:
        await _check_sprint(db, board_id, data.sprint_id)
        task.sprint_id = data.sprint_id
    if "parent_task_id" in fields:
        if data.parent_task_id == task.id:
            raise ValidationFailed("A task cannot be its own parent")
        await _check_parent(db, board_id, data.parent_task_id)
        task.parent_task_id = data.parent_task_id
    if "assignee_id" in fields and data.assignee_id != task.assignee_id:
        await _check_assignee(db, board, data.assignee_id)
        task.assignee_id = data.assignee_id
        if data.assignee_id and data.assignee_id != user.id:
            notify_task_assigned(db, data.assignee_id, task_key(board, task), task.title, board_id)
    if data.label_ids is not None:
        await _set_labels(db, board_id, task.id, data.label_ids)

    await db.commit()
    await db.refresh(task)
    return (await _tasks_out(db, board, [task]))[0]


@router.delete("/{board_id}/tasks/{task_id}")
async def delete_task(
    board_id: str,
    task_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await board_access.require(db, board_id, user.id, PermissionLevel.WRITE)
    task = await _get_task(db, board_id, task_id)
    # subtasks are kept, detached from the deleted parent
    await db.execute(
        update(Task).where(Task.parent_task_id == task.id).values(parent_task_id=None)
    )
    await db.delete(task)
    await db.commit()
    return {"message": "Task deleted successfully"}


# ============================================================
# COMMENTS
# ============================================================

@router.get("/{board_id}/tasks/{task_id}/comments", response_model=List[CommentOut])
async def list_comments(
    board_id: str,
    task_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await board_access.require(db, board_id, user.id, PermissionLevel.READ)
    await _get_task(db, board_id, task_id)
    comments = (await db.execute(
        select(TaskComment).where(TaskComment.task_id == task_id).order_by(TaskComment.created_at.asc())
    )).scalars().all()
    authors = await load_user_summaries(db, [c.user_id for c in comments])
    return [
        CommentOut(id=c.id, task_id=c.task_id, author=authors.get(c.user_id), content=c.content,
                   created_at=ts(c.created_at))
        for c in comments
    ]


@router.post("/{board_id}/tasks/{task_id}/comments", response_model=CommentOut, status_code=201)
async def add_comment(
    board_id: str,
    task_id: str,
    data: CommentCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await board_access.require(db, board_id, user.id, PermissionLevel.WRITE)
    await _get_task(db, board_id, task_id)
    comment = TaskComment(task_id=task_id, user_id=user.id, content=data.content.strip())
    db.add(comment)
    await db.commit()
    await db.refresh(comment)
    authors = await load_user_summaries(db, [user.id])
    return CommentOut(id=comment.id, task_id=task_id, author=authors.get(user.id), content=comment.content,
                      created_at=ts(comment.created_at))
