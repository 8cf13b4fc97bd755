"""Pydantic schemas for user-facing notifications."""
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from schoolchat.messages.service import utcnow


class NotificationType(str, Enum):
    """Known notification types.

    Producers outside the chat layer may send other type strings; those are
    kept as-is and always allowed by preference filtering.
    """
    MESSAGE = "message"
    ANNOUNCEMENT = "announcement"
    SCHOOL_UPDATE = "schoolUpdate"
    GRADE_UPDATE = "gradeUpdate"
    CALENDAR = "calendar"
    SYSTEM_UPDATE = "systemUpdate"


class Notification(BaseModel):
    """A notification shown in the user's notification list.

    Attributes:
        id: Unique notification ID.
        type: Notification type (see NotificationType).
        title: Short headline.
        message: Body text.
        timestamp: Creation time (naive UTC).
        isRead: Read state; only ever moves from False to True.
        group: Display name of the group (message notifications).
        groupId: ID of the group (message notifications).
        sender: Sender reference (message notifications).
    """
    # External producers attach extra metadata (eventId, subject, ...)
    model_config = ConfigDict(extra="allow")

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    type: str
    title: str = ""
    message: str = ""
    timestamp: datetime = Field(default_factory=utcnow)
    isRead: bool = False
    group: Optional[str] = None
    groupId: Optional[str] = None
    sender: Optional[Any] = None


class NotificationSend(BaseModel):
    """Request body for POST /api/notifications/send."""
    userId: Optional[str] = None
    notification: Optional[Dict[str, Any]] = None
