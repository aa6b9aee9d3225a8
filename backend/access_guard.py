# access_guard.py — Single authorization decision point
#
# Every router and service asks the guard before reading or mutating a shared
# resource. Decisions are plain values; callers that want an exception use
# Decision.raise_for_denial() or AccessGuard.require().
#
# Rules by (resource kind, action):
#   project create ............ any authenticated principal
#   project update/status/delete/add-member/remove-member ... admin
#   project read .............. admin, or member ("access denied")
#   user list-projects ........ admin, or own id
#   task create/read/update/status ... member of the task's project
#   task assign ............... member, and new owner is a member
#   task delete ............... any authenticated principal
#   task list-by-user ......... admin, or own id
#   message send/read/search/mark-read ... member of the project
#   message delete ............ author, or admin who is a member
#   notification read/mark-read ... destination user ("forbidden")
#   notification list ......... own id ("forbidden")
#   notification delete ....... admin
#   user read/list/change-role  admin
#   user delete ............... self, or admin

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from auth import CurrentUser
from exceptions import ForbiddenError
from membership import MembershipStore, memberships

logger = logging.getLogger("collab-api.guard")

ADMIN_REQUIRED = "admin role required"
ACCESS_DENIED = "access denied"
NOT_A_MEMBER = "not a member of this project"
FORBIDDEN = "forbidden"


class ResourceKind(str, Enum):
    PROJECT = "project"
    TASK = "task"
    MESSAGE = "message"
    NOTIFICATION = "notification"
    USER = "user"


class Action(str, Enum):
    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    CHANGE_STATUS = "change_status"
    DELETE = "delete"
    ADD_MEMBER = "add_member"
    REMOVE_MEMBER = "remove_member"
    LIST = "list"
    LIST_PROJECTS = "list_projects"
    LIST_TASKS = "list_tasks"
    ASSIGN = "assign"
    SEND = "send"
    SEARCH = "search"
    MARK_READ = "mark_read"
    CHANGE_ROLE = "change_role"


@dataclass(frozen=True)
class ResourceRef:
    """What the guard needs to know about a resource: identity plus foreign keys"""
    kind: ResourceKind
    id: Optional[int] = None
    project_id: Optional[int] = None
    owner_id: Optional[int] = None

    @classmethod
    def project(cls, project_id: Optional[int]) -> "ResourceRef":
        return cls(ResourceKind.PROJECT, project_id, project_id=project_id)

    @classmethod
    def task(cls, task) -> "ResourceRef":
        return cls(ResourceKind.TASK, task.id, project_id=task.project_id, owner_id=task.owner_id)

    @classmethod
    def new_task(cls, project_id: int) -> "ResourceRef":
        return cls(ResourceKind.TASK, None, project_id=project_id)

    @classmethod
    def message(cls, message) -> "ResourceRef":
        return cls(ResourceKind.MESSAGE, message.id, project_id=message.project_id, owner_id=message.author_id)

    @classmethod
    def thread(cls, project_id: int) -> "ResourceRef":
        return cls(ResourceKind.MESSAGE, None, project_id=project_id)

    @classmethod
    def notification(cls, notification) -> "ResourceRef":
        return cls(ResourceKind.NOTIFICATION, notification.id, owner_id=notification.user_id)

    @classmethod
    def inbox(cls, user_id: int) -> "ResourceRef":
        return cls(ResourceKind.NOTIFICATION, None, owner_id=user_id)

    @classmethod
    def user(cls, user_id: Optional[int]) -> "ResourceRef":
        return cls(ResourceKind.USER, user_id, owner_id=user_id)


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: Optional[str] = None

    def __bool__(self) -> bool:
        return self.allowed

    def raise_for_denial(self) -> None:
        if not self.allowed:
            raise ForbiddenError(self.reason or FORBIDDEN)


ALLOW = Decision(True)


def deny(reason: str) -> Decision:
    return Decision(False, reason)


class AccessGuard:
    """Evaluates (principal, resource, action) against membership and role"""

    def __init__(self, store: MembershipStore):
        self.store = store
        self._rules = {
            (ResourceKind.PROJECT, Action.CREATE): self._anyone,
            (ResourceKind.PROJECT, Action.UPDATE): self._admin_only,
            (ResourceKind.PROJECT, Action.CHANGE_STATUS): self._admin_only,
            (ResourceKind.PROJECT, Action.DELETE): self._admin_only,
            (ResourceKind.PROJECT, Action.ADD_MEMBER): self._admin_only,
            (ResourceKind.PROJECT, Action.REMOVE_MEMBER): self._admin_only,
            (ResourceKind.PROJECT, Action.READ): self._admin_or_member,
            (ResourceKind.TASK, Action.CREATE): self._member,
            (ResourceKind.TASK, Action.READ): self._member,
            (ResourceKind.TASK, Action.UPDATE): self._member,
            (ResourceKind.TASK, Action.CHANGE_STATUS): self._member,
            (ResourceKind.TASK, Action.ASSIGN): self._member_assigning_member,
            (ResourceKind.TASK, Action.DELETE): self._anyone,
            (ResourceKind.MESSAGE, Action.SEND): self._member,
            (ResourceKind.MESSAGE, Action.READ): self._member,
            (ResourceKind.MESSAGE, Action.SEARCH): self._member,
            (ResourceKind.MESSAGE, Action.MARK_READ): self._member,
            (ResourceKind.MESSAGE, Action.DELETE): self._author_or_member_admin,
            (ResourceKind.NOTIFICATION, Action.READ): self._destination,
            (ResourceKind.NOTIFICATION, Action.MARK_READ): self._destination,
            (ResourceKind.NOTIFICATION, Action.LIST): self._destination,
            (ResourceKind.NOTIFICATION, Action.DELETE): self._admin_only,
            (ResourceKind.USER, Action.LIST_PROJECTS): self._self_or_admin,
            (ResourceKind.USER, Action.LIST_TASKS): self._self_or_admin,
            (ResourceKind.USER, Action.LIST): self._admin_only,
            (ResourceKind.USER, Action.READ): self._admin_only,
            (ResourceKind.USER, Action.CHANGE_ROLE): self._admin_only,
            (ResourceKind.USER, Action.DELETE): self._self_or_admin,
        }

    async def can_act(
        self,
        db: AsyncSession,
        principal: CurrentUser,
        resource: ResourceRef,
        action: Action,
        target_user_id: Optional[int] = None,
    ) -> Decision:
        rule = self._rules.get((resource.kind, action))
        if rule is None:
            return deny(f"unsupported action {action.value} on {resource.kind.value}")
        decision = await rule(db, principal, resource, target_user_id)
        if not decision:
            logger.debug(
                f"Denied {action.value} on {resource.kind.value}:{resource.id} "
                f"for user={principal.id}: {decision.reason}"
            )
        return decision

    async def require(
        self,
        db: AsyncSession,
        principal: CurrentUser,
        resource: ResourceRef,
        action: Action,
        target_user_id: Optional[int] = None,
    ) -> None:
        decision = await self.can_act(db, principal, resource, action, target_user_id)
        decision.raise_for_denial()

    # --- rules ---

    async def _anyone(self, db, principal, resource, target_user_id) -> Decision:
        return ALLOW

    async def _admin_only(self, db, principal, resource, target_user_id) -> Decision:
        return ALLOW if principal.is_admin else deny(ADMIN_REQUIRED)

    async def _admin_or_member(self, db, principal, resource, target_user_id) -> Decision:
        if principal.is_admin:
            return ALLOW
        if await self.store.is_member(db, resource.project_id, principal.id):
            return ALLOW
        return deny(ACCESS_DENIED)

    async def _member(self, db, principal, resource, target_user_id) -> Decision:
        if await self.store.is_member(db, resource.project_id, principal.id):
            return ALLOW
        return deny(NOT_A_MEMBER)

    async def _member_assigning_member(self, db, principal, resource, target_user_id) -> Decision:
        decision = await self._member(db, principal, resource, target_user_id)
        if not decision:
            return decision
        if target_user_id is None or not await self.store.is_member(db, resource.project_id, target_user_id):
            return deny("new owner is not a member of this project")
        return ALLOW

    async def _author_or_member_admin(self, db, principal, resource, target_user_id) -> Decision:
        if resource.owner_id == principal.id:
            return ALLOW
        if principal.is_admin and await self.store.is_member(db, resource.project_id, principal.id):
            return ALLOW
        return deny("only the author or a project admin can delete this message")

    async def _destination(self, db, principal, resource, target_user_id) -> Decision:
        return ALLOW if resource.owner_id == principal.id else deny(FORBIDDEN)

    async def _self_or_admin(self, db, principal, resource, target_user_id) -> Decision:
        if principal.is_admin or resource.id is None or resource.id == principal.id:
            return ALLOW
        return deny(ACCESS_DENIED)


guard = AccessGuard(memberships)
