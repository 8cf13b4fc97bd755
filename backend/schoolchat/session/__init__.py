"""Client-side chat session: one connection, groups, messages, notifications."""

from .api_client import ChatApiClient, ChatApiError
from .connection import RealtimeConnection
from .directory import GroupDirectory
from .message_store import MessageStore, PageRequest, PendingMessage
from .notifier import NotificationRouter
from .rooms import RoomMembershipTracker
from .session import ChatSession, ChatSessionView

__all__ = [
    "ChatApiClient",
    "ChatApiError",
    "ChatSession",
    "ChatSessionView",
    "GroupDirectory",
    "MessageStore",
    "NotificationRouter",
    "PageRequest",
    "PendingMessage",
    "RealtimeConnection",
    "RoomMembershipTracker",
]
