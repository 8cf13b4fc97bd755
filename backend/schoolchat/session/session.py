"""ChatSession: per-user owner of all client-side chat state.

One session is created for an authenticated identity and passed to
whatever needs chat state. It owns exactly one realtime connection and
wires the components together:

    RealtimeConnection --receive-message--> GroupDirectory (lastMessage)
                                        --> MessageStore   (active buffer)
                                        --> NotificationRouter
    GroupDirectory --changes--> RoomMembershipTracker --join/leave--> server

Consumers read state through :meth:`ChatSession.view`, an immutable
snapshot, and change it only through the session's methods.
"""
import logging
from typing import Any, Dict, Iterable, List, Optional, Union

from pydantic import BaseModel, ConfigDict, ValidationError

from schoolchat.config import ClientSettings, get_config
from schoolchat.groups.schemas import Group, GroupCreate, MemberRef
from schoolchat.identity import UserIdentity
from schoolchat.messages.schemas import Message
from schoolchat.notifications.schemas import Notification
from schoolchat.realtime import events

from .api_client import ChatApiClient
from .connection import CONNECT, DISCONNECT, RealtimeConnection
from .directory import GroupDirectory
from .message_store import MessageStore, PendingMessage
from .notifier import NotificationRouter
from .rooms import RoomMembershipTracker

logger = logging.getLogger(__name__)


class ChatSessionView(BaseModel):
    """Read-only snapshot of a session for rendering."""
    model_config = ConfigDict(frozen=True)

    userId: str
    groups: List[Group]
    selectedGroup: Optional[Group] = None
    activeGroupId: Optional[str] = None
    messages: List[Message]
    pending: List[PendingMessage]
    hasMoreMessages: bool
    isLoadingMessages: bool
    notifications: List[Notification]
    unreadCount: int
    isConnected: bool


class ChatSession:
    """Client-side chat session for one logged-in user.

    Args:
        identity: The authenticated user.
        api: Persistence API client. Created from settings when omitted,
            in which case the session closes it on stop().
        connection: Realtime connection. Created from settings when omitted.
        settings: Client settings (defaults to the ``client`` config section).
    """

    def __init__(
        self,
        identity: UserIdentity,
        api: Optional[ChatApiClient] = None,
        connection: Optional[RealtimeConnection] = None,
        *,
        settings: Optional[ClientSettings] = None,
    ) -> None:
        settings = settings or get_config().client
        self.identity = identity
        self._owns_api = api is None
        self.api = api or ChatApiClient(
            identity, settings.api_base_url, timeout=settings.request_timeout
        )
        self.connection = connection or RealtimeConnection(settings.realtime_url)

        self.directory = GroupDirectory(self.api)
        self.store = MessageStore(
            self.api,
            self.connection,
            identity.userId,
            page_size=settings.page_size,
            max_fetch_failures=settings.max_fetch_failures,
        )
        self.notifier = NotificationRouter(identity)
        self.rooms = RoomMembershipTracker(self.connection, identity.userId)

        self._started = False
        self._unsubscribe = None
        self._handlers: Dict[str, Any] = {}

    async def __aenter__(self) -> "ChatSession":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()

    # -- Lifecycle ------------------------------------------------------------

    async def start(self) -> None:
        """Wire handlers, load the group list and open the realtime connection."""
        if self._started:
            return
        self._started = True

        self._handlers = {
            CONNECT: self._on_connect,
            DISCONNECT: self._on_disconnect,
            events.RECEIVE_MESSAGE: self.handle_live_message,
            events.notification_event(self.identity.userId): self.notifier.receive,
            events.ERROR: self._on_server_error,
        }
        for event, handler in self._handlers.items():
            self.connection.on(event, handler)
        self._unsubscribe = self.directory.subscribe(self.rooms.reconcile)

        await self.directory.refresh()
        await self.connection.connect(self.identity.userId)
        logger.info("[ChatSession] Started for user %s", self.identity.userId)

    async def stop(self) -> None:
        """Deselect, disconnect and release resources. Safe to call twice."""
        if not self._started:
            return
        self._started = False

        await self.store.select_group(None)
        self.directory.select(None)

        for event, handler in self._handlers.items():
            self.connection.off(event, handler)
        self._handlers = {}
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

        await self.connection.disconnect()
        self.rooms.reset()
        if self._owns_api:
            await self.api.close()
        logger.info("[ChatSession] Stopped for user %s", self.identity.userId)

    # -- Realtime -------------------------------------------------------------

    async def handle_live_message(self, payload: Any) -> Optional[Notification]:
        """Route one ``receive-message`` event to the components.

        Returns:
            The notification created for it, if any.
        """
        try:
            message = Message.model_validate(payload)
        except ValidationError as e:
            logger.warning(f"[ChatSession] Dropping malformed message: {e}")
            return None

        if not self.directory.on_live_message(message):
            # Probably just added to a group we have not fetched yet
            await self.directory.refresh()

        self.store.on_live_message(message)
        return self.notifier.classify(message, self.store.active_group_id, self.directory.groups)

    def _on_connect(self, _data: Any) -> None:
        self.rooms.reconcile(self.directory.groups)

    def _on_disconnect(self, _data: Any) -> None:
        self.rooms.reset()
        # Echoes for anything still pending went to the closed socket
        self.store.drop_pending()

    def _on_server_error(self, data: Any) -> None:
        message = data.get("message") if isinstance(data, dict) else data
        logger.warning(f"[ChatSession] Server reported error: {message}")
        if isinstance(data, dict) and data.get("event") == events.SEND_MESSAGE:
            self.store.reject_pending(str(message))

    # -- Messages -------------------------------------------------------------

    async def select_group(self, group_id: Optional[str]) -> None:
        self.directory.select(group_id)
        await self.store.select_group(group_id)

    async def load_older(self) -> bool:
        return await self.store.load_older()

    def send_message(self, content: str) -> Optional[PendingMessage]:
        return self.store.send(content)

    # -- Groups ---------------------------------------------------------------

    async def refresh_groups(self) -> bool:
        return await self.directory.refresh()

    async def create_group(self, data: Union[GroupCreate, dict]) -> Group:
        return await self.directory.create_group(data)

    async def add_members(self, group_id: str, members: Iterable[Union[str, MemberRef, dict]]) -> Group:
        return await self.directory.add_members(group_id, members)

    async def remove_member(self, group_id: str, member_id: str) -> Group:
        return await self.directory.remove_member(group_id, member_id)

    # -- Notifications --------------------------------------------------------

    def create_notification(
        self,
        notification_type: str,
        title: str,
        message: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[Notification]:
        return self.notifier.create_notification(notification_type, title, message, metadata)

    def mark_all_notifications_read(self) -> None:
        self.notifier.mark_all_read()

    def mark_notification_read(self, notification_id: str) -> bool:
        return self.notifier.mark_read(notification_id)

    def clear_notifications(self) -> None:
        self.notifier.clear()

    # -- Projection -----------------------------------------------------------

    def view(self) -> ChatSessionView:
        return ChatSessionView(
            userId=self.identity.userId,
            groups=self.directory.groups,
            selectedGroup=self.directory.selected_group,
            activeGroupId=self.store.active_group_id,
            messages=list(self.store.messages),
            pending=list(self.store.pending),
            hasMoreMessages=self.store.has_more_messages,
            isLoadingMessages=self.store.is_loading_messages,
            notifications=[n.model_copy() for n in self.notifier.visible()],
            unreadCount=self.notifier.unread_count,
            isConnected=self.connection.is_connected,
        )
