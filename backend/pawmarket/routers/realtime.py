import json
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect
from starlette.concurrency import run_in_threadpool

from pawmarket.auth import Actor
from pawmarket.deps import Services, get_services, resolve_actor
from pawmarket.errors import MarketplaceError, ValidationError
from pawmarket.services.broadcaster import ConnectionHub, Subscriber
from pawmarket.services.chat import room_for

logger = logging.getLogger(__name__)

router = APIRouter(tags=["realtime"])


async def _handle_event(
    services: Services,
    hub: ConnectionHub,
    subscriber: Subscriber,
    actor: Actor,
    event: str,
    data: Dict[str, Any],
) -> Optional[Dict[str, Any]]:
    request_id = str(data.get("requestId") or "").strip()
    if not request_id:
        raise ValidationError("requestId is required")
    if event == "join_request_room":
        joined = await run_in_threadpool(services.chat.join, actor, request_id)
        hub.subscribe(subscriber, joined["room"])
        return joined
    if event == "leave_request_room":
        hub.unsubscribe(subscriber, room_for(request_id))
        return {"room": room_for(request_id)}
    if event == "send_message":
        message = await run_in_threadpool(services.chat.send, actor, request_id, str(data.get("text") or ""))
        return message.model_dump(by_alias=True)
    if event == "is_typing":
        await run_in_threadpool(services.chat.typing, actor, request_id, bool(data.get("isTyping", True)))
        return None
    raise ValidationError(f"Unknown event: {event}")


@router.websocket("/ws")
async def realtime_channel(
    websocket: WebSocket,
    token: Optional[str] = Query(default=None),
    services: Services = Depends(get_services),
):
    hub = services.broadcaster
    actor = await run_in_threadpool(resolve_actor, services, token)
    if actor is None or not isinstance(hub, ConnectionHub):
        await websocket.close(code=1008)
        return
    await websocket.accept()
    subscriber = hub.register(websocket, actor.user_id)
    await websocket.send_json({"event": "connected", "data": {"userId": actor.user_id}})
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                frame = json.loads(raw)
            except ValueError:
                await websocket.send_json({"event": "error", "data": {"message": "Frames must be JSON"}})
                continue
            if not isinstance(frame, dict):
                await websocket.send_json({"event": "error", "data": {"message": "Frames must be JSON objects"}})
                continue
            event = str(frame.get("event") or "")
            data = frame.get("data") if isinstance(frame.get("data"), dict) else {}
            try:
                ack = await _handle_event(services, hub, subscriber, actor, event, data)
            except MarketplaceError as exc:
                await websocket.send_json({"event": "error", "data": {"event": event, "message": str(exc)}})
                continue
            if ack is not None:
                await websocket.send_json({"event": f"{event}:ack", "data": ack})
    except WebSocketDisconnect:
        logger.debug("Realtime connection for %s closed", actor.user_id)
    finally:
        hub.unregister(subscriber)
