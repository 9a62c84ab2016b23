# permissions.py — Permission lattice & cascading resource access resolver
#
# Access to a board or project is decided in this order:
#   1. resource missing            -> NOT_FOUND (callers report it as a denial)
#   2. caller created the resource -> GRANTED at admin, no group lookups
#   3. caller in no groups         -> DENIED
#   4. no grant for caller's groups-> DENIED
#   5. otherwise the highest level among the matching grants decides
import logging
from dataclasses import dataclass
from enum import Enum as PyEnum
from typing import Any, Awaitable, Callable, Iterable, List, Optional, Set, Tuple, Union

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from errors import AccessDenied
from memberships import user_group_ids
from models import Board, BoardGroup, OrgRole, PermissionLevel, Project, ProjectGroup

logger = logging.getLogger("teamspace.permissions")


# ============================================================
# LATTICES
# ============================================================

PERMISSION_RANK = {
    PermissionLevel.READ: 0,
    PermissionLevel.WRITE: 1,
    PermissionLevel.ADMIN: 2,
}

ORG_ROLE_RANK = {
    OrgRole.MEMBER: 0,
    OrgRole.ADMIN: 1,
    OrgRole.OWNER: 2,
}


def rank(level: Union[PermissionLevel, str]) -> int:
    return PERMISSION_RANK[PermissionLevel(level)]


def meets(have: Union[PermissionLevel, str], need: Union[PermissionLevel, str]) -> bool:
    return rank(have) >= rank(need)


def max_level(a: PermissionLevel, b: PermissionLevel) -> PermissionLevel:
    """Higher-ranked of two levels; ties keep the first."""
    return a if rank(a) >= rank(b) else b


def role_rank(role: Union[OrgRole, str]) -> int:
    return ORG_ROLE_RANK[OrgRole(role)]


def role_meets(have: Union[OrgRole, str], need: Union[OrgRole, str]) -> bool:
    return role_rank(have) >= role_rank(need)


# ============================================================
# ACCESS RESULT
# ============================================================

class AccessOutcome(str, PyEnum):
    GRANTED = "granted"
    DENIED = "denied"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class AccessResult:
    """Outcome of a resource check.

    ``permission`` is the caller's effective level and is reported even when
    it is below the required one, so handlers can echo it back.
    """

    outcome: AccessOutcome
    resource: Optional[Any] = None
    permission: Optional[PermissionLevel] = None

    @property
    def has_access(self) -> bool:
        return self.outcome == AccessOutcome.GRANTED

    @property
    def found(self) -> bool:
        return self.outcome != AccessOutcome.NOT_FOUND


ResourceLookup = Callable[[AsyncSession, str], Awaitable[Optional[Any]]]
GrantLookup = Callable[[AsyncSession, str], Awaitable[Iterable[Tuple[str, PermissionLevel]]]]
GroupLookup = Callable[[AsyncSession, str], Awaitable[Set[str]]]


# ============================================================
# RESOLVER
# ============================================================

class ResourceAccessResolver:
    """Cascading access check, bound to one resource type by three accessors.

    - ``load_resource(db, resource_id)`` returns the resource (with a
      ``created_by`` attribute) or None
    - ``load_grants(db, resource_id)`` returns ``(group_id, level)`` pairs
    - ``load_group_ids(db, user_id)`` returns the ids of the caller's groups

    Nothing is cached between calls; every check sees current grants.
    """

    def __init__(
        self,
        kind: str,
        load_resource: ResourceLookup,
        load_grants: GrantLookup,
        load_group_ids: GroupLookup = user_group_ids,
    ):
        self.kind = kind
        self.load_resource = load_resource
        self.load_grants = load_grants
        self.load_group_ids = load_group_ids

    async def check(
        self,
        db: AsyncSession,
        resource_id: str,
        user_id: str,
        required: PermissionLevel = PermissionLevel.READ,
    ) -> AccessResult:
        resource = await self.load_resource(db, resource_id)
        if resource is None:
            return AccessResult(AccessOutcome.NOT_FOUND)

        if resource.created_by == user_id:
            return AccessResult(AccessOutcome.GRANTED, resource, PermissionLevel.ADMIN)

        group_ids = await self.load_group_ids(db, user_id)
        if not group_ids:
            return AccessResult(AccessOutcome.DENIED, resource)

        best: Optional[PermissionLevel] = None
        for group_id, level in await self.load_grants(db, resource_id):
            if group_id not in group_ids:
                continue
            level = PermissionLevel(level)
            best = level if best is None else max_level(best, level)

        if best is None:
            return AccessResult(AccessOutcome.DENIED, resource)

        outcome = AccessOutcome.GRANTED if meets(best, required) else AccessOutcome.DENIED
        return AccessResult(outcome, resource, best)

    async def require(
        self,
        db: AsyncSession,
        resource_id: str,
        user_id: str,
        required: PermissionLevel = PermissionLevel.READ,
    ) -> AccessResult:
        """Like ``check`` but raises AccessDenied for both DENIED and NOT_FOUND."""
        result = await self.check(db, resource_id, user_id, required)
        if not result.has_access:
            logger.info(
                f"{self.kind} access denied: user={user_id} {self.kind}={resource_id} "
                f"required={required.value} outcome={result.outcome.value}"
            )
            raise AccessDenied(_denial_message(required))
        return result


def _denial_message(required: PermissionLevel) -> str:
    if required == PermissionLevel.READ:
        return "Access denied"
    return f"{required.value.capitalize()} access required"


# ============================================================
# BOARD & PROJECT BINDINGS
# ============================================================

async def _load_board(db: AsyncSession, board_id: str) -> Optional[Board]:
    result = await db.execute(select(Board).where(Board.id == board_id))
    return result.scalar_one_or_none()


async def _load_board_grants(db: AsyncSession, board_id: str) -> List[Tuple[str, PermissionLevel]]:
    result = await db.execute(
        select(BoardGroup.group_id, BoardGroup.permission_level).where(BoardGroup.board_id == board_id)
    )
    return [(row.group_id, row.permission_level) for row in result.all()]


async def _load_project(db: AsyncSession, project_id: str) -> Optional[Project]:
    result = await db.execute(select(Project).where(Project.id == project_id))
    return result.scalar_one_or_none()


async def _load_project_grants(db: AsyncSession, project_id: str) -> List[Tuple[str, PermissionLevel]]:
    result = await db.execute(
        select(ProjectGroup.group_id, ProjectGroup.permission_level).where(ProjectGroup.project_id == project_id)
    )
    return [(row.group_id, row.permission_level) for row in result.all()]


board_access = ResourceAccessResolver("board", _load_board, _load_board_grants)
project_access = ResourceAccessResolver("project", _load_project, _load_project_grants)


async def check_board_access(
    db: AsyncSession, board_id: str, user_id: str,
    required: PermissionLevel = PermissionLevel.READ,
) -> AccessResult:
    return await board_access.check(db, board_id, user_id, required)


async def check_project_access(
    db: AsyncSession, project_id: str, user_id: str,
    required: PermissionLevel = PermissionLevel.READ,
) -> AccessResult:
    return await project_access.check(db, project_id, user_id, required)
