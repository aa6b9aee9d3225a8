# message_thread.py — Per-project message threads
#
# Used by the HTTP messages router and the WebSocket router. Every operation
# loads its subject first (NotFound), asks the access guard, persists, and
# then announces the change: project-wide notifications through the
# notification engine and the message view on its topic. Deletion is the
# exception: members are notified while the message still exists.

import logging
from typing import List

from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

import read_state
from access_guard import AccessGuard, Action, ResourceRef, guard
from auth import CurrentUser
from delivery_channel import TopicHub, topic_hub, project_topic, message_topic
from exceptions import NotFoundError
from models import Message, Project, utcnow
from notification_engine import NotificationEngine, OverflowTracker, notification_engine

logger = logging.getLogger("collab-api.messages")


class MessageOut(BaseModel):
    id: int
    text: str
    timestamp: str
    status: str
    project_id: int
    author_id: int


def message_out(m: Message) -> MessageOut:
    return MessageOut(
        id=m.id,
        text=m.text,
        timestamp=m.created_at.isoformat() if m.created_at else "",
        status=m.status.value if hasattr(m.status, "value") else str(m.status),
        project_id=m.project_id,
        author_id=m.author_id,
    )


class MessageThreadService:

    def __init__(self, access: AccessGuard, engine: NotificationEngine, topics: TopicHub):
        self.access = access
        self.engine = engine
        self.topics = topics

    @staticmethod
    async def _project(db: AsyncSession, project_id: int) -> Project:
        project = await db.get(Project, project_id)
        if project is None:
            raise NotFoundError("Project not found")
        return project

    @staticmethod
    async def _message(db: AsyncSession, message_id: int) -> Message:
        message = await db.get(Message, message_id)
        if message is None:
            raise NotFoundError("Message not found")
        return message

    async def send(self, db: AsyncSession, project_id: int, text: str, principal: CurrentUser) -> MessageOut:
        await self._project(db, project_id)
        await self.access.require(db, principal, ResourceRef.thread(project_id), Action.SEND)

        message = Message(
            text=text,
            status=read_state.INITIAL_STATUS,
            project_id=project_id,
            author_id=principal.id,
            created_at=utcnow(),
        )
        db.add(message)
        await db.flush()
        view = message_out(message)

        # Commits the message together with the member notifications
        tracker = OverflowTracker()
        await tracker.run(self.engine.notify_project(db, f"{principal.name}: \n{text}", project_id))
        logger.info(f"Message {message.id} sent to project {project_id} by user={principal.id}")

        await tracker.run(self.topics.publish(project_topic(project_id), "message.created", view.model_dump()))
        tracker.raise_if_any()
        return view

    async def mark_read(self, db: AsyncSession, message_id: int, principal: CurrentUser) -> MessageOut:
        message = await self._message(db, message_id)
        read_state.require_unread(message)
        await self.access.require(db, principal, ResourceRef.message(message), Action.MARK_READ)

        read_state.mark_read(message)
        await db.commit()
        view = message_out(message)

        await self.topics.publish(message_topic(message_id), "message.read", view.model_dump())
        return view

    async def search(self, db: AsyncSession, project_id: int, text: str, principal: CurrentUser) -> List[MessageOut]:
        await self._project(db, project_id)
        await self.access.require(db, principal, ResourceRef.thread(project_id), Action.SEARCH)

        pattern = text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        stmt = (
            select(Message)
            .where(
                Message.project_id == project_id,
                Message.text.ilike(f"%{pattern}%", escape="\\"),
            )
            .order_by(Message.id)
        )
        result = await db.execute(stmt)
        return [message_out(m) for m in result.scalars().all()]

    async def get(self, db: AsyncSession, message_id: int, principal: CurrentUser) -> MessageOut:
        message = await self._message(db, message_id)
        await self.access.require(db, principal, ResourceRef.message(message), Action.READ)
        return message_out(message)

    async def delete(self, db: AsyncSession, message_id: int, principal: CurrentUser) -> MessageOut:
        message = await self._message(db, message_id)
        await self.access.require(db, principal, ResourceRef.message(message), Action.DELETE)

        project = await self._project(db, message.project_id)
        view = message_out(message)

        # Members hear about the deletion while the message still exists
        tracker = OverflowTracker()
        await tracker.run(self.engine.notify_project(
            db, f"{principal.name} deleted a message in project {project.name}.", project.id,
        ))

        await db.delete(message)
        await db.commit()
        logger.info(f"Message {message_id} deleted by user={principal.id}")

        await tracker.run(self.topics.publish(message_topic(message_id), "message.deleted", view.model_dump()))
        tracker.raise_if_any()
        return view


message_service = MessageThreadService(guard, notification_engine, topic_hub)
