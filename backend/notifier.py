# notifier.py — In-app notification sink
# Rows are added to the caller's session and committed with the caller's work.
import logging
from typing import Iterable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from models import Notification, NotificationType, PermissionLevel

logger = logging.getLogger("teamspace.notifier")


def create_notification(
    db: AsyncSession,
    user_id: str,
    type: NotificationType,
    title: str,
    message: str,
    link: Optional[str] = None,
    extra_data: Optional[dict] = None,
) -> Notification:
    notification = Notification(
        user_id=user_id,
        type=type,
        title=title,
        message=message,
        link=link,
        extra_data=extra_data or {},
    )
    db.add(notification)
    logger.debug(f"Queued {type.value} notification for user={user_id}")
    return notification


def notify_many(db: AsyncSession, user_ids: Iterable[str], type: NotificationType, title: str, message: str,
                link: Optional[str] = None, skip: Optional[str] = None) -> int:
    count = 0
    for user_id in set(user_ids):
        if user_id == skip:
            continue
        create_notification(db, user_id, type, title, message, link)
        count += 1
    return count


def _level(level) -> str:
    return PermissionLevel(level).value


def notify_org_invite(db: AsyncSession, user_id: str, org_name: str, token: str, inviter_name: str):
    return create_notification(
        db, user_id, NotificationType.INVITE,
        "Organization Invitation",
        f'{inviter_name} invited you to join "{org_name}".',
        link=f"/invite/{token}",
        extra_data={"token": token},
    )


def notify_added_to_group(db: AsyncSession, user_id: str, group_name: str, group_id: str, role: str):
    return create_notification(
        db, user_id, NotificationType.GROUP,
        "Added to Group",
        f'You have been added to "{group_name}" as {role}.',
        link=f"/groups/{group_id}",
    )


def notify_removed_from_group(db: AsyncSession, user_id: str, group_name: str):
    return create_notification(
        db, user_id, NotificationType.WARNING,
        "Removed from Group",
        f'You have been removed from "{group_name}".',
    )


def notify_group_role_changed(db: AsyncSession, user_id: str, group_name: str, group_id: str, role: str):
    return create_notification(
        db, user_id, NotificationType.GROUP,
        "Group Role Changed",
        f'Your role in "{group_name}" has been changed to {role}.',
        link=f"/groups/{group_id}",
    )


def notify_project_shared(db: AsyncSession, user_ids: Iterable[str], project_name: str, project_id: str,
                          level, skip: Optional[str] = None) -> int:
    return notify_many(
        db, user_ids, NotificationType.PROJECT,
        "Project Shared",
        f'You now have {_level(level)} access to "{project_name}".',
        link=f"/projects/{project_id}", skip=skip,
    )


def notify_project_access_removed(db: AsyncSession, user_ids: Iterable[str], project_name: str,
                                  skip: Optional[str] = None) -> int:
    return notify_many(
        db, user_ids, NotificationType.WARNING,
        "Project Access Removed",
        f'Your access to "{project_name}" has been removed.',
        skip=skip,
    )


def notify_board_shared(db: AsyncSession, user_ids: Iterable[str], group_name: str, board_name: str,
                        board_id: str, level, skip: Optional[str] = None) -> int:
    return notify_many(
        db, user_ids, NotificationType.BOARD,
        "Board Access Granted",
        f'Your group "{group_name}" now has {_level(level)} access to the board "{board_name}".',
        link=f"/boards/{board_id}", skip=skip,
    )


def notify_board_permission_updated(db: AsyncSession, user_ids: Iterable[str], group_name: str, board_name: str,
                                    board_id: str, level, skip: Optional[str] = None) -> int:
    return notify_many(
        db, user_ids, NotificationType.BOARD,
        "Board Permission Updated",
        f'Your group "{group_name}" now has {_level(level)} access to the board "{board_name}".',
        link=f"/boards/{board_id}", skip=skip,
    )


def notify_board_access_removed(db: AsyncSession, user_ids: Iterable[str], group_name: str, board_name: str,
                                skip: Optional[str] = None) -> int:
    return notify_many(
        db, user_ids, NotificationType.BOARD,
        "Board Access Removed",
        f'Your group "{group_name}" no longer has access to the board "{board_name}".',
        skip=skip,
    )


def notify_task_assigned(db: AsyncSession, user_id: str, task_key: str, task_title: str, board_id: str):
    return create_notification(
        db, user_id, NotificationType.TASK,
        "Task Assigned",
        f'You have been assigned to "{task_key}: {task_title}".',
        link=f"/boards/{board_id}",
    )
