# routers/websocket_router.py — Real-time WebSocket support for message threads
import asyncio
import contextlib
import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, Query
from sqlalchemy.ext.asyncio import AsyncSession

from access_guard import Action, ResourceRef, guard
from auth import AuthService, CurrentUser
from database import get_db_context
from delivery_channel import Subscriber, topic_hub, notification_stream
from exceptions import BadRequestError, DomainError, NotFoundError
from message_thread import message_service
from models import Message

router = APIRouter(tags=["WebSocket"])
logger = logging.getLogger("collab-api.ws")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def error_frame(exc: DomainError) -> dict:
    return {
        "type": "error",
        "status": exc.status_code,
        "error": exc.error,
        "message": exc.message,
        "timestamp": _now(),
    }


def _require_int(frame: dict, key: str) -> int:
    value = frame.get(key)
    if isinstance(value, bool) or not isinstance(value, int):
        raise BadRequestError(f"'{key}' must be an integer")
    return value


async def authorize_topic(db: AsyncSession, principal: CurrentUser, topic: str) -> None:
    """Only members of the underlying project may listen on a topic"""
    kind, _, raw_id = topic.partition("/")
    if kind not in ("project", "message") or not raw_id.isdigit():
        raise BadRequestError(f"Unknown topic: {topic}")

    if kind == "project":
        await guard.require(db, principal, ResourceRef.thread(int(raw_id)), Action.READ)
        return

    message = await db.get(Message, int(raw_id))
    if message is None:
        raise NotFoundError("Message not found")
    await guard.require(db, principal, ResourceRef.message(message), Action.READ)


async def handle_frame(db: AsyncSession, subscriber: Subscriber, principal: CurrentUser, frame: dict) -> dict:
    """Apply one client frame and return the reply frame"""
    msg_type = frame.get("type", "")

    if msg_type == "ping":
        return {"type": "pong", "timestamp": _now()}

    if msg_type == "subscribe":
        if subscriber.closed:
            raise BadRequestError("Connection is closing")
        topic = str(frame.get("topic", ""))
        await authorize_topic(db, principal, topic)
        topic_hub.subscribe(subscriber, topic)
        return {"type": "subscribed", "topic": topic}

    if msg_type == "unsubscribe":
        topic = str(frame.get("topic", ""))
        topic_hub.unsubscribe(subscriber, topic)
        return {"type": "unsubscribed", "topic": topic}

    if msg_type == "send":
        text = frame.get("text")
        if not isinstance(text, str) or not text:
            raise BadRequestError("'text' must be a non-empty string")
        view = await message_service.send(db, _require_int(frame, "project_id"), text, principal)
        return {"type": "sent", "message": view.model_dump(), "timestamp": _now()}

    if msg_type == "mark_read":
        view = await message_service.mark_read(db, _require_int(frame, "message_id"), principal)
        return {"type": "marked_read", "message": view.model_dump(), "timestamp": _now()}

    if msg_type == "delete":
        view = await message_service.delete(db, _require_int(frame, "message_id"), principal)
        return {"type": "deleted", "message": view.model_dump(), "timestamp": _now()}

    raise BadRequestError(f"Unknown frame type: {msg_type!r}")


async def _pump(websocket: WebSocket, subscriber: Subscriber) -> None:
    """Forward topic events from the subscriber queue to the socket"""
    try:
        while True:
            event = await subscriber.next_event()
            if event is None:
                return
            await websocket.send_json(event)
    except (WebSocketDisconnect, RuntimeError) as e:
        # Socket is gone; stop routing topic events into a queue nobody reads
        logger.warning(f"WS pump stopped: sub={subscriber.id[:8]} ({e!r})")
        topic_hub.drop(subscriber)
        subscriber.close()


@router.websocket("/ws")
async def websocket_endpoint(
    websocket: WebSocket,
    token: str = Query(...),
):
    """Main WebSocket endpoint: topic subscriptions and message-thread commands"""
    principal: Optional[CurrentUser] = None
    try:
        async with get_db_context() as db:
            principal = await AuthService.resolve_principal(token, db)
    except DomainError:
        await websocket.close(code=4001, reason="Authentication failed")
        return

    await websocket.accept()
    subscriber = Subscriber(principal_id=principal.id)
    pump = asyncio.create_task(_pump(websocket, subscriber))
    logger.info(f"WS connected: user={principal.id} sub={subscriber.id[:8]}")

    await websocket.send_json({
        "type": "connected",
        "user_id": principal.id,
        "timestamp": _now(),
    })

    try:
        while True:
            frame = await websocket.receive_json()
            if not isinstance(frame, dict):
                await websocket.send_json(error_frame(BadRequestError("Frames must be JSON objects")))
                continue
            try:
                async with get_db_context() as db:
                    reply = await handle_frame(db, subscriber, principal, frame)
            except DomainError as e:
                reply = error_frame(e)
            await websocket.send_json(reply)
    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.error(f"WebSocket error: {e}", exc_info=True)
    finally:
        topic_hub.drop(subscriber)
        subscriber.close()
        pump.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await pump
        logger.info(f"WS disconnected: user={principal.id} sub={subscriber.id[:8]}")


@router.get("/ws/stats")
async def websocket_stats():
    """Get live channel statistics"""
    return {
        "topic_subscribers": topic_hub.subscriber_count(),
        "topics": len(topic_hub.topics()),
        "stream_subscribers": notification_stream.subscriber_count(),
        "stream_users": len(notification_stream.connected_users()),
    }
