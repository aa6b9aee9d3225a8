# routers/notifications.py — Per-user notification inbox and live stream
import logging
from typing import List

from fastapi import APIRouter, Depends, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

import read_state
from access_guard import Action, ResourceKind, ResourceRef, guard
from auth import AuthService, get_current_user, CurrentUser
from database import get_db_context, get_db_session
from delivery_channel import Subscriber, notification_stream
from exceptions import NotFoundError
from models import Notification, ReadStatus
from notification_engine import NotificationOut, notification_out

router = APIRouter(prefix="/api/v1/notifications", tags=["Notifications"])
logger = logging.getLogger("collab-api.notifications")


async def _inbox(db: AsyncSession, user_id: int, unread_only: bool = False) -> List[Notification]:
    query = select(Notification).where(Notification.user_id == user_id)
    if unread_only:
        query = query.where(Notification.status == ReadStatus.NOT_READ)
    query = query.order_by(Notification.created_at.desc(), Notification.id.desc())
    result = await db.execute(query)
    return list(result.scalars().all())


async def _get_notification(db: AsyncSession, notification_id: int) -> Notification:
    notif = await db.get(Notification, notification_id)
    if not notif:
        raise NotFoundError("Notification not found")
    return notif


# ============================================================
# LIST
# ============================================================

@router.get("", response_model=List[NotificationOut])
async def list_notifications(
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(get_current_user),
):
    """All notifications addressed to the caller, newest first"""
    await guard.require(db, user, ResourceRef.inbox(user.id), Action.LIST)
    return [notification_out(n) for n in await _inbox(db, user.id)]


@router.get("/unread", response_model=List[NotificationOut])
async def list_unread_notifications(
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(get_current_user),
):
    await guard.require(db, user, ResourceRef.inbox(user.id), Action.LIST)
    return [notification_out(n) for n in await _inbox(db, user.id, unread_only=True)]


# ============================================================
# LIVE STREAM (SSE)
# ============================================================

@router.get("/stream")
async def notification_stream_endpoint(token: str = Query(...)):
    """Server-sent events carrying the caller's notifications as they are committed.

    EventSource cannot set headers, so the access token travels as a query
    parameter. The database session is closed before the stream starts.
    """
    async with get_db_context() as db:
        principal = await AuthService.resolve_principal(token, db)
    return notification_stream.create_response(Subscriber(principal_id=principal.id))


# ============================================================
# MARK READ
# ============================================================

@router.post("/read-all", response_model=List[NotificationOut])
async def mark_all_read(
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(get_current_user),
):
    """Mark every unread notification read; already-read ones are left alone"""
    await guard.require(db, user, ResourceRef.inbox(user.id), Action.MARK_READ)
    notifications = await _inbox(db, user.id)
    changed = read_state.mark_all_read(notifications)
    await db.commit()
    logger.info(f"Marked {changed} notification(s) read for user={user.id}")
    return [notification_out(n) for n in notifications]


@router.post("/{notification_id}/read", response_model=NotificationOut)
async def mark_read(
    notification_id: int,
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(get_current_user),
):
    notif = await _get_notification(db, notification_id)
    await guard.require(db, user, ResourceRef.notification(notif), Action.MARK_READ)
    read_state.mark_read(notif)
    await db.commit()
    return notification_out(notif)


# ============================================================
# DELETE
# ============================================================

@router.delete("/{notification_id}", status_code=204)
async def delete_notification(
    notification_id: int,
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(get_current_user),
):
    """Delete a notification by id (admin only)"""
    await guard.require(db, user, ResourceRef(ResourceKind.NOTIFICATION, notification_id), Action.DELETE)
    notif = await _get_notification(db, notification_id)
    await db.delete(notif)
    await db.commit()
