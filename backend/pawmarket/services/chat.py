import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Tuple

from pawmarket.auth import Actor
from pawmarket.errors import ConflictError, ForbiddenError, ValidationError
from pawmarket.models import ChatMessage, ServiceRequest
from pawmarket.services.assignment import parse_instant
from pawmarket.services.broadcaster import EventFanout
from pawmarket.services.record_store import RecordStore, utc_now

logger = logging.getLogger(__name__)

READ_ONLY_AFTER = timedelta(hours=24)
MAX_MESSAGE_LENGTH = 2000


def room_for(request_id: str) -> str:
    return f"request:{request_id}"


class ChatService:
    """Per-request chat rooms between the requester and the assigned staff."""

    def __init__(
        self,
        store: RecordStore,
        fanout: EventFanout,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.fanout = fanout
        self.clock = clock

    def is_read_only(self, request: ServiceRequest) -> bool:
        if request.status != "completed" or not request.completed_at:
            return False
        completed_at = parse_instant(request.completed_at)
        return completed_at is not None and self.clock() - completed_at > READ_ONLY_AFTER

    def _open_room(self, conn: Any, actor: Actor, request_id: str) -> Tuple[ServiceRequest, bool]:
        request = self.store.get_service_request(conn, request_id)
        if not actor.can_view(request):
            raise ForbiddenError("You are not a participant in this chat")
        read_only = self.is_read_only(request)
        if read_only:
            self.store.set_chat_read_only(conn, request_id, True)
        return request, read_only

    def join(self, actor: Actor, request_id: str) -> Dict[str, Any]:
        with self.store.transaction() as conn:
            request, read_only = self._open_room(conn, actor, request_id)
        return {"room": room_for(request.id), "requestId": request.id, "readOnly": read_only}

    def send(self, actor: Actor, request_id: str, text: str) -> ChatMessage:
        content = (text or "").strip()
        if not content:
            raise ValidationError("Message text is required")
        if len(content) > MAX_MESSAGE_LENGTH:
            raise ValidationError(f"Message cannot exceed {MAX_MESSAGE_LENGTH} characters")
        with self.store.transaction() as conn:
            _, read_only = self._open_room(conn, actor, request_id)
            if read_only:
                raise ConflictError("This chat is read-only")
            message = self.store.insert_message(conn, request_id, actor.user_id, content)
        self.fanout.broadcast([room_for(request_id)], "new_message", message.model_dump(by_alias=True))
        return message

    def typing(self, actor: Actor, request_id: str, is_typing: bool) -> None:
        with self.store.transaction() as conn:
            self._open_room(conn, actor, request_id)
        self.fanout.broadcast(
            [room_for(request_id)],
            "is_typing",
            {"requestId": request_id, "userId": actor.user_id, "isTyping": bool(is_typing)},
            exclude_user=actor.user_id,
        )

    def history(self, actor: Actor, request_id: str) -> List[ChatMessage]:
        with self.store.transaction() as conn:
            self._open_room(conn, actor, request_id)
            return self.store.list_messages(conn, request_id)
