# notification_engine.py — Notification fan-out
#
# A mutation that must be announced calls the engine after staging its own
# writes on the same session. The engine resolves recipients inside that
# transaction, stages one Notification per recipient, commits everything at
# once and only then pushes the rendered text to live subscribers.

import logging
from dataclasses import dataclass
from typing import Iterable, List

from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from delivery_channel import (
    NotificationStream, notification_stream,
    render_direct_notice, render_project_notice,
)
from exceptions import DeliveryOverflowError, NotFoundError
from membership import MembershipStore, memberships
from models import Notification, Project, User, utcnow
from read_state import INITIAL_STATUS

logger = logging.getLogger("collab-api.notifications")


class NotificationOut(BaseModel):
    id: int
    text: str
    status: str
    timestamp: str
    user_id: int


@dataclass
class ProjectNotice:
    project_id: int
    text: str
    recipient_count: int


def notification_out(n: Notification) -> NotificationOut:
    return NotificationOut(
        id=n.id,
        text=n.text,
        status=n.status.value if hasattr(n.status, "value") else str(n.status),
        timestamp=n.created_at.isoformat() if n.created_at else "",
        user_id=n.user_id,
    )


class OverflowTracker:
    """Collects delivery overflows across several notices.

    Each notice is committed before it is pushed, so a full buffer on one
    notice must not stop the following ones from being persisted. Callers
    run every notice through ``run`` and call ``raise_if_any`` at the end.
    """

    def __init__(self):
        self.subscriber_ids: List[str] = []

    async def run(self, awaitable):
        try:
            return await awaitable
        except DeliveryOverflowError as exc:
            self.subscriber_ids.extend(exc.subscriber_ids)
            return None

    def raise_if_any(self) -> None:
        if self.subscriber_ids:
            raise DeliveryOverflowError("notifications", self.subscriber_ids)


class NotificationEngine:
    """Materialises, persists and delivers notifications"""

    def __init__(self, stream: NotificationStream, store: MembershipStore):
        self.stream = stream
        self.store = store

    @staticmethod
    def _build(text: str, user_id: int) -> Notification:
        return Notification(user_id=user_id, text=text, status=INITIAL_STATUS, created_at=utcnow())

    @staticmethod
    async def _commit(db: AsyncSession, what: str) -> None:
        try:
            await db.commit()
        except SQLAlchemyError:
            await db.rollback()
            logger.error(f"Notification batch rolled back ({what})", exc_info=True)
            raise

    async def notify_project(self, db: AsyncSession, text: str, project_id: int) -> ProjectNotice:
        """One notification per current member of the project, committed together"""
        project = await db.get(Project, project_id)
        if project is None:
            raise NotFoundError(f"Project not found: {project_id}")
        project_name, project_status = project.name, project.status

        recipients = await self.store.member_ids(db, project_id)
        db.add_all([self._build(text, user_id) for user_id in recipients])
        await self._commit(db, f"project={project_id}")

        logger.info(f"Project {project_id} notice fanned out to {len(recipients)} member(s)")
        await self.stream.send_to_users(
            recipients, render_project_notice(project_name, project_status, text),
        )
        return ProjectNotice(project_id=project_id, text=text, recipient_count=len(recipients))

    async def notify_user(self, db: AsyncSession, text: str, user_id: int) -> Notification:
        user = await db.get(User, user_id)
        if user is None:
            raise NotFoundError(f"User not found: {user_id}")
        recipient_name = user.name

        notification = self._build(text, user_id)
        db.add(notification)
        await self._commit(db, f"user={user_id}")

        await self.stream.send_to_users([user_id], render_direct_notice(recipient_name, text))
        return notification

    async def notify_users(self, db: AsyncSession, text: str, user_ids: Iterable[int]) -> List[Notification]:
        """One direct notification per listed user, committed together"""
        user_ids = list(dict.fromkeys(user_ids))
        if not user_ids:
            return []
        result = await db.execute(select(User.id, User.name).where(User.id.in_(user_ids)))
        names = {row.id: row.name for row in result.all()}
        missing = [uid for uid in user_ids if uid not in names]
        if missing:
            raise NotFoundError(f"User not found: {missing[0]}")

        notifications = [self._build(text, uid) for uid in user_ids]
        db.add_all(notifications)
        await self._commit(db, f"users={len(user_ids)}")

        tracker = OverflowTracker()
        for uid in user_ids:
            await tracker.run(self.stream.send_to_users([uid], render_direct_notice(names[uid], text)))
        tracker.raise_if_any()
        return notifications


notification_engine = NotificationEngine(notification_stream, memberships)
