"""In-session notification list.

Notifications come from two places: live messages for groups the user is
not looking at (see :meth:`NotificationRouter.classify`) and
``notification-<userId>`` events pushed by the server. Newest first.
"""
import logging
from typing import Any, Dict, Iterable, List, Optional

from pydantic import ValidationError

from schoolchat.groups.schemas import Group
from schoolchat.identity import UserIdentity
from schoolchat.messages.schemas import Message
from schoolchat.notifications.categories import filter_for_display, is_enabled
from schoolchat.notifications.schemas import Notification, NotificationType

logger = logging.getLogger(__name__)

UNKNOWN_GROUP = "Unknown Group"


class NotificationRouter:
    """Creates, receives and tracks notifications for one user."""

    def __init__(self, identity: UserIdentity) -> None:
        self._identity = identity
        self._notifications: List[Notification] = []

    @property
    def notifications(self) -> List[Notification]:
        return list(self._notifications)

    @property
    def unread_count(self) -> int:
        return sum(1 for n in self._notifications if not n.isRead)

    def visible(self) -> List[Notification]:
        """Notifications the user's preferences allow to be shown."""
        return filter_for_display(self._notifications, self._identity.notificationSettings)

    def classify(
        self,
        message: Message,
        active_group_id: Optional[str],
        groups: Iterable[Group],
    ) -> Optional[Notification]:
        """Turn a live message into a notification when the user should see one.

        No notification is produced for the group being viewed or for the
        user's own messages. Never raises.
        """
        try:
            if message.group == active_group_id:
                return None
            if message.sender_id == self._identity.userId:
                return None

            name = next((g.name for g in groups if g.id == message.group), None)
            if name is None:
                logger.debug("[Notifier] Message for unknown group %s", message.group)
                name = UNKNOWN_GROUP

            return self.create_notification(
                NotificationType.MESSAGE.value,
                "You got a new message",
                f"New message in {name}",
                {
                    "group": name,
                    "groupId": message.group,
                    "sender": message.sender.model_dump(),
                },
            )
        except Exception:
            logger.exception("[Notifier] Failed to classify message %s", getattr(message, "id", None))
            return None

    def create_notification(
        self,
        notification_type: str,
        title: str,
        message: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[Notification]:
        """Prepend a new unread notification unless its category is switched off."""
        if not is_enabled(self._identity.notificationSettings, notification_type):
            logger.debug("[Notifier] %s notifications disabled, skipping", notification_type)
            return None

        notification = Notification(
            type=notification_type,
            title=title,
            message=message,
            **(metadata or {}),
        )
        self._notifications.insert(0, notification)
        return notification

    def receive(self, payload: Any) -> Optional[Notification]:
        """Handle a server-pushed notification event."""
        try:
            notification = Notification.model_validate(payload)
        except ValidationError as e:
            logger.warning(f"[Notifier] Dropping malformed notification: {e}")
            return None

        if any(n.id == notification.id for n in self._notifications):
            return None
        self._notifications.insert(0, notification)
        return notification

    def mark_all_read(self) -> None:
        for notification in self._notifications:
            notification.isRead = True

    def mark_read(self, notification_id: str) -> bool:
        for notification in self._notifications:
            if notification.id == notification_id:
                notification.isRead = True
                return True
        return False

    def clear(self) -> None:
        self._notifications.clear()
