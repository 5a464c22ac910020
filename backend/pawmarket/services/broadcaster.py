import asyncio
import logging
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Dict, Iterable, List, Optional, Protocol, Set
from uuid import uuid4

from pawmarket.models import NotificationType

logger = logging.getLogger(__name__)


class Broadcaster(Protocol):
    def publish(self, topic: str, event: str, data: Dict[str, Any], exclude_user: Optional[str] = None) -> None:
        ...


@dataclass(eq=False)
class Subscriber:
    user_id: str
    websocket: Any
    loop: asyncio.AbstractEventLoop
    id: str = field(default_factory=lambda: uuid4().hex[:10])


class ConnectionHub:
    """Topic fan-out for connected websocket clients.

    ``publish`` may be called from worker threads; sends are scheduled on the
    loop that owns each connection and never awaited by the caller.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._topics: Dict[str, Set[Subscriber]] = {}

    def register(self, websocket: Any, user_id: str) -> Subscriber:
        subscriber = Subscriber(user_id=user_id, websocket=websocket, loop=asyncio.get_running_loop())
        self.subscribe(subscriber, f"user:{user_id}")
        return subscriber

    def subscribe(self, subscriber: Subscriber, topic: str) -> None:
        with self._lock:
            self._topics.setdefault(topic, set()).add(subscriber)

    def unsubscribe(self, subscriber: Subscriber, topic: str) -> None:
        with self._lock:
            members = self._topics.get(topic)
            if members is None:
                return
            members.discard(subscriber)
            if not members:
                del self._topics[topic]

    def unregister(self, subscriber: Subscriber) -> None:
        with self._lock:
            for topic in list(self._topics):
                members = self._topics[topic]
                members.discard(subscriber)
                if not members:
                    del self._topics[topic]

    def topics_for(self, subscriber: Subscriber) -> List[str]:
        with self._lock:
            return sorted(topic for topic, members in self._topics.items() if subscriber in members)

    def publish(self, topic: str, event: str, data: Dict[str, Any], exclude_user: Optional[str] = None) -> None:
        with self._lock:
            targets = [s for s in self._topics.get(topic, set()) if s.user_id != exclude_user]
        frame = {"event": event, "data": data}
        for subscriber in targets:
            if subscriber.loop.is_closed():
                self.unregister(subscriber)
                continue
            future = asyncio.run_coroutine_threadsafe(subscriber.websocket.send_json(frame), subscriber.loop)
            future.add_done_callback(self._log_failed_send)

    @staticmethod
    def _log_failed_send(future: Any) -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.warning("Dropped realtime frame: %s", exc)


class EventFanout:
    """Durable notifications plus ephemeral broadcasts, both best-effort.

    Called only after the owning state change has been committed; any
    failure here is logged and swallowed.
    """

    def __init__(self, notifications: Any, broadcaster: Broadcaster) -> None:
        self.notifications = notifications
        self.broadcaster = broadcaster

    def notify(
        self,
        user_id: str,
        title: str,
        message: str,
        type: NotificationType = "system",
        reference: Optional[str] = None,
    ) -> None:
        try:
            self.notifications.create(
                user_id=user_id,
                title=title,
                message=message,
                type=type,
                reference=reference,
            )
        except Exception:
            logger.exception("Notification for user %s failed", user_id)

    def broadcast(
        self,
        topics: Iterable[str],
        event: str,
        data: Dict[str, Any],
        exclude_user: Optional[str] = None,
    ) -> None:
        for topic in dict.fromkeys(topics):
            try:
                self.broadcaster.publish(topic, event, data, exclude_user=exclude_user)
            except Exception:
                logger.exception("Broadcast of %s to %s failed", event, topic)

    def status_change(
        self,
        request_id: str,
        requester_id: str,
        new_status: str,
        previous_status: str,
        extra_user_ids: Iterable[Optional[str]] = (),
    ) -> None:
        topics = [f"request:{request_id}", f"user:{requester_id}"]
        topics.extend(f"user:{user_id}" for user_id in extra_user_ids if user_id)
        self.broadcast(
            topics,
            "status_change",
            {"requestId": request_id, "newStatus": new_status, "previousStatus": previous_status},
        )
