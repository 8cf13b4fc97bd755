"""Realtime WebSocket endpoint for group chat.

This module provides:
    - WebSocket /ws/realtime?userId=<id>: the per-user realtime channel

Protocol Events (client -> server):
    - join-group {groupId, userId}: join a group room (members only)
    - leave-group {groupId, userId}: leave a group room
    - send-message {sender, content, group}: post a message to a group

Protocol Events (server -> client):
    - receive-message <Message>: broadcast to the group room
    - notification-<userId> <Notification>: pushed via POST /api/notifications/send
    - error {message, event?}: protocol error, the connection stays open.
      ``event`` names the rejected client event for send-message failures.
"""
import json
import logging
from typing import Optional

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from schoolchat.config import get_config
from schoolchat.groups.service import GroupError, GroupService
from schoolchat.messages.schemas import MessageSender, SendMessagePayload
from schoolchat.messages.service import MessageService

from . import events
from .hub import hub

logger = logging.getLogger(__name__)

router = APIRouter()


async def _send_error(websocket: WebSocket, message: str, event: Optional[str] = None) -> None:
    data = {"message": message}
    if event:
        data["event"] = event
    await hub.emit(websocket, events.ERROR, data)


async def _handle_join_group(websocket: WebSocket, user_id: str, data: dict) -> None:
    group_id = data.get("groupId")
    if not group_id:
        await _send_error(websocket, "Group ID is required")
        return

    try:
        GroupService.get_instance().require_member(group_id, user_id)
    except GroupError as e:
        logger.warning(f"[WS] join-group refused for {user_id} in {group_id}: {e}")
        await _send_error(websocket, str(e))
        return

    if hub.join_room(websocket, group_id):
        logger.info(f"[WS] User {user_id} joined group {group_id}")
    else:
        logger.debug(f"[WS] User {user_id} already in group {group_id}")


async def _handle_leave_group(websocket: WebSocket, user_id: str, data: dict) -> None:
    group_id = data.get("groupId")
    if not group_id:
        await _send_error(websocket, "Group ID is required")
        return
    if hub.leave_room(websocket, group_id):
        logger.info(f"[WS] User {user_id} left group {group_id}")


async def _handle_send_message(websocket: WebSocket, user_id: str, data: dict) -> None:
    try:
        payload = SendMessagePayload.model_validate(data)
    except ValidationError:
        await _send_error(websocket, "Invalid message payload", events.SEND_MESSAGE)
        return

    if not payload.content.strip() or not payload.group:
        await _send_error(
            websocket, "Missing required message data: content, sender, or group",
            events.SEND_MESSAGE,
        )
        return

    if len(payload.content) > get_config().chat.max_content_length:
        await _send_error(websocket, "Message content is too long", events.SEND_MESSAGE)
        return

    # SECURITY: the connection's bound user is the sender, whatever the client claims
    if payload.sender and payload.sender != user_id:
        logger.warning(
            f"[WS] send-message sender mismatch: claimed={payload.sender} bound={user_id}"
        )

    groups = GroupService.get_instance()
    try:
        groups.require_member(payload.group, user_id)
    except GroupError as e:
        await _send_error(websocket, str(e), events.SEND_MESSAGE)
        return

    message = MessageService.get_instance().create(
        payload.group, MessageSender(id=user_id), payload.content
    )
    groups.set_last_message(message)

    logger.info(
        f"[WS] Group message sent to group {payload.group} by {user_id} "
        f"({hub.room_size(payload.group)} connection(s))"
    )
    await hub.emit_to_room(
        payload.group, events.RECEIVE_MESSAGE, message.model_dump(mode="json")
    )


_HANDLERS = {
    events.JOIN_GROUP: _handle_join_group,
    events.LEAVE_GROUP: _handle_leave_group,
    events.SEND_MESSAGE: _handle_send_message,
}


@router.websocket("/ws/realtime")
async def realtime_endpoint(
    websocket: WebSocket,
    userId: Optional[str] = Query(None, description="Authenticated user ID"),
) -> None:
    """Realtime channel for one authenticated user.

    Protocol Flow:
        1. Client connects with ?userId=<id> (rejected with 1008 without it)
        2. Client sends join-group for each of its groups
        3. Client sends send-message; the server persists it and broadcasts
           receive-message to the group room (sender included)
        4. On disconnect the connection leaves every room

    Args:
        websocket: The WebSocket connection.
        userId: Identity bound to this connection.
    """
    if not userId:
        logger.warning("[WS] Connection without userId rejected")
        await websocket.close(code=1008)  # 1008 = Policy Violation
        return

    await hub.connect(websocket, userId)

    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", 1000))
            raw = message.get("text")
            if raw is None:
                await _send_error(websocket, "Binary frames are not supported")
                continue
            try:
                frame = json.loads(raw)
            except ValueError:
                await _send_error(websocket, "Invalid JSON frame")
                continue

            event, data = events.parse_frame(frame)
            logger.debug("[WS] %s received: event=%s", userId, event)

            handler = _HANDLERS.get(event)
            if handler is None:
                await _send_error(websocket, f"Unknown event: {event}")
                continue
            await handler(websocket, userId, data if isinstance(data, dict) else {})

    except WebSocketDisconnect:
        logger.debug("[WS] %s disconnected", userId)
    finally:
        hub.disconnect(websocket)
