"""Realtime channel event names and frame helpers.

Shared by the server hub and the ChatSession connection so both ends agree
on the wire contract.
"""
from typing import Any, Optional, Tuple

# Client -> server
JOIN_GROUP = "join-group"
LEAVE_GROUP = "leave-group"
SEND_MESSAGE = "send-message"

# Server -> client
RECEIVE_MESSAGE = "receive-message"
ERROR = "error"

NOTIFICATION_PREFIX = "notification-"


def notification_event(user_id: str) -> str:
    """Per-user notification event name, e.g. ``notification-42``."""
    return f"{NOTIFICATION_PREFIX}{user_id}"


def room_name(group_id: str) -> str:
    return f"group:{group_id}"


def envelope(event: str, data: Any) -> dict:
    return {"event": event, "data": data}


def parse_frame(frame: Any) -> Tuple[Optional[str], Any]:
    """Split a decoded frame into ``(event, data)``.

    Returns ``(None, None)`` for anything that is not an event envelope.
    """
    if not isinstance(frame, dict):
        return None, None
    event = frame.get("event")
    if not isinstance(event, str) or not event:
        return None, None
    return event, frame.get("data")
