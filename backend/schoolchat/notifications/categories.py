"""Mapping from notification types to user preference categories."""
from typing import Iterable, List, Optional

from schoolchat.identity import NotificationSettings

from .schemas import Notification

# notification type -> NotificationSettings field
CATEGORY_BY_TYPE = {
    "message": "groupChat",
    "announcement": "schoolUpdate",
    "schoolUpdate": "schoolUpdate",
    "gradeUpdate": "schoolUpdate",
    "calendar": "calendar",
    "systemUpdate": "systemUpdate",
}


def category_for(notification_type: str) -> Optional[str]:
    """Preference category of a type, or None for unknown types."""
    return CATEGORY_BY_TYPE.get(notification_type)


def is_enabled(settings: Optional[NotificationSettings], notification_type: str) -> bool:
    """Whether the user wants notifications of this type.

    Missing settings and unknown types are allowed.
    """
    if settings is None:
        return True
    category = category_for(notification_type)
    if category is None:
        return True
    return bool(getattr(settings, category))


def filter_for_display(
    notifications: Iterable[Notification],
    settings: Optional[NotificationSettings],
) -> List[Notification]:
    """Drop notifications whose category the user has switched off.

    Applied at render time so disabling a category also hides the backlog.
    """
    return [n for n in notifications if is_enabled(settings, n.type)]
