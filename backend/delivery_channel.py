"""Real-time delivery channels for messages and notifications.

Two audiences are served from the same building blocks:

* ``TopicHub`` routes structured events to connections subscribed to an exact
  topic key (``project/{id}`` or ``message/{id}``). The WebSocket router feeds
  it.
* ``NotificationStream`` routes rendered notification text to the live
  connections of the destination users. ``broadcast`` reaches every connected
  subscriber and is kept for unaddressed announcements. The SSE endpoint
  feeds it.

Every live connection is a ``Subscriber`` with a bounded queue. Pushes never
wait: a full queue is reported by raising ``DeliveryOverflowError`` once all
other targets have been offered the event. Registries are only touched from
the event loop and publishing iterates over a snapshot, so connect and
disconnect can interleave with pushes.

Usage:
    sub = Subscriber(principal_id=user.id)
    notification_stream.register(sub)
    await notification_stream.send_to_users([user.id], "Alpha | ACTIVE\\nhello")
"""

import asyncio
import logging
import os
import uuid
from datetime import datetime, timezone
from typing import AsyncGenerator, Dict, Iterable, List, Optional

from fastapi.responses import StreamingResponse

from exceptions import DeliveryOverflowError

logger = logging.getLogger("collab-api.delivery")

DELIVERY_BUFFER_SIZE = int(os.getenv("DELIVERY_BUFFER_SIZE", "100"))
STREAM_HEARTBEAT_SECONDS = float(os.getenv("STREAM_HEARTBEAT_SECONDS", "30"))


def project_topic(project_id: int) -> str:
    return f"project/{project_id}"


def message_topic(message_id: int) -> str:
    return f"message/{message_id}"


def render_project_notice(project_name: str, project_status, body: str) -> str:
    status = project_status.value if hasattr(project_status, "value") else str(project_status)
    return f"{project_name} | {status}\n{body}"


def render_direct_notice(recipient_name: str, body: str) -> str:
    return f"{recipient_name}:\n{body}"


class Subscriber:
    """One live connection with a bounded event buffer. None signals disconnect."""

    def __init__(self, principal_id: int, buffer_size: int = DELIVERY_BUFFER_SIZE):
        if buffer_size < 1:
            raise ValueError("buffer_size must be at least 1")
        self.id = uuid.uuid4().hex
        self.principal_id = principal_id
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=buffer_size)
        self.closed = False

    def offer(self, event) -> None:
        """Enqueue without waiting. Raises asyncio.QueueFull when the buffer is full."""
        self.queue.put_nowait(event)

    async def next_event(self, timeout: Optional[float] = None):
        if timeout is None:
            return await self.queue.get()
        return await asyncio.wait_for(self.queue.get(), timeout=timeout)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        # Undelivered events are dropped for a closing connection
        while not self.queue.empty():
            self.queue.get_nowait()
        self.queue.put_nowait(None)


class _SubscriberRegistry:
    """address -> {subscriber id -> Subscriber}"""

    def __init__(self):
        self._by_address: Dict[str, Dict[str, Subscriber]] = {}

    def _add(self, address: str, subscriber: Subscriber) -> None:
        self._by_address.setdefault(address, {})[subscriber.id] = subscriber

    def _discard(self, address: str, subscriber: Subscriber) -> None:
        bucket = self._by_address.get(address)
        if bucket is None:
            return
        bucket.pop(subscriber.id, None)
        if not bucket:
            del self._by_address[address]

    def _snapshot(self, address: str) -> List[Subscriber]:
        return list(self._by_address.get(address, {}).values())

    def subscriber_count(self, address: Optional[str] = None) -> int:
        if address is not None:
            return len(self._by_address.get(address, {}))
        return len({s.id for bucket in self._by_address.values() for s in bucket.values()})

    @staticmethod
    def _deliver(address: str, subscribers: Iterable[Subscriber], event) -> int:
        delivered = 0
        overflowed = []
        for subscriber in subscribers:
            try:
                subscriber.offer(event)
                delivered += 1
            except asyncio.QueueFull:
                overflowed.append(subscriber.id)
        if overflowed:
            logger.error(
                f"Delivery buffer full on {address}: {len(overflowed)} subscriber(s) "
                f"rejected, {delivered} delivered"
            )
            raise DeliveryOverflowError(address, overflowed)
        return delivered


# ============================================================
# TOPIC-SCOPED CHANNEL
# ============================================================

class TopicHub(_SubscriberRegistry):
    """Routes structured events to subscribers of an exact topic key"""

    def subscribe(self, subscriber: Subscriber, topic: str) -> None:
        self._add(topic, subscriber)
        logger.debug(f"Subscribed {subscriber.id[:8]} to {topic}")

    def unsubscribe(self, subscriber: Subscriber, topic: str) -> None:
        self._discard(topic, subscriber)

    def drop(self, subscriber: Subscriber) -> None:
        """Remove a subscriber from every topic (connection closed)"""
        for topic in list(self._by_address.keys()):
            self._discard(topic, subscriber)

    def topics(self) -> List[str]:
        return sorted(self._by_address.keys())

    async def publish(self, topic: str, event_type: str, payload: dict) -> int:
        event = {
            "type": event_type,
            "topic": topic,
            "message": payload,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        return self._deliver(topic, self._snapshot(topic), event)

    def clear(self) -> None:
        for bucket in list(self._by_address.values()):
            for subscriber in list(bucket.values()):
                subscriber.close()
        self._by_address.clear()


# ============================================================
# NOTIFICATION STREAM
# ============================================================

class NotificationStream(_SubscriberRegistry):
    """Routes rendered notification text to the connections of its recipients"""

    @staticmethod
    def _address(user_id: int) -> str:
        return f"user/{user_id}"

    def register(self, subscriber: Subscriber) -> None:
        self._add(self._address(subscriber.principal_id), subscriber)
        logger.info(f"Stream connected: user={subscriber.principal_id} sub={subscriber.id[:8]}")

    def unregister(self, subscriber: Subscriber) -> None:
        self._discard(self._address(subscriber.principal_id), subscriber)
        logger.info(f"Stream disconnected: user={subscriber.principal_id} sub={subscriber.id[:8]}")

    def connected_users(self) -> List[int]:
        return sorted({s.principal_id for bucket in self._by_address.values() for s in bucket.values()})

    async def send_to_users(self, user_ids: Iterable[int], text: str) -> int:
        targets = []
        for user_id in dict.fromkeys(user_ids):
            targets.extend(self._snapshot(self._address(user_id)))
        return self._deliver("notifications", targets, text)

    async def broadcast(self, text: str) -> int:
        targets = [s for bucket in list(self._by_address.values()) for s in bucket.values()]
        return self._deliver("broadcast", targets, text)

    async def event_generator(
        self,
        subscriber: Subscriber,
        heartbeat_interval: float = STREAM_HEARTBEAT_SECONDS,
    ) -> AsyncGenerator[str, None]:
        """Yield SSE frames from a subscriber queue, with heartbeat comments"""
        try:
            while True:
                try:
                    event = await subscriber.next_event(timeout=heartbeat_interval)
                    if event is None:
                        break
                    yield format_sse(event)
                except asyncio.TimeoutError:
                    yield ": heartbeat\n\n"
        finally:
            self.unregister(subscriber)

    def create_response(self, subscriber: Subscriber) -> StreamingResponse:
        self.register(subscriber)
        return StreamingResponse(
            self.event_generator(subscriber),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
            },
        )

    def clear(self) -> None:
        for bucket in list(self._by_address.values()):
            for subscriber in list(bucket.values()):
                subscriber.close()
        self._by_address.clear()


def format_sse(text: str, event: str = "notification") -> str:
    """Format one text event as an SSE frame; every line gets its own data field"""
    data = "".join(f"data: {line}\n" for line in text.split("\n"))
    return f"event: {event}\n{data}\n"


# Global channel instances
topic_hub = TopicHub()
notification_stream = NotificationStream()
