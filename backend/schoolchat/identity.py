"""Authenticated user identity consumed by the chat layer.

Authentication itself lives upstream. The chat server trusts the identity
headers set by the auth gateway, and the ChatSession is handed a
UserIdentity once session verification has completed.
"""
from enum import Enum
from typing import Optional

from fastapi import Header, HTTPException
from pydantic import BaseModel, Field


class UserRole(str, Enum):
    """Role of a school user."""
    TEACHER = "teacher"
    STUDENT = "student"
    PARENT = "parent"


class NotificationSettings(BaseModel):
    """Per-category notification toggles.

    Attributes:
        groupChat: Messages in chat groups the user is not viewing.
        schoolUpdate: Announcements, school updates and grade updates.
        calendar: Calendar event changes.
        systemUpdate: System maintenance notices.
    """
    groupChat: bool = True
    schoolUpdate: bool = True
    calendar: bool = True
    systemUpdate: bool = True


class UserIdentity(BaseModel):
    """Identity of the logged-in user, read-only for the chat layer."""
    userId: str = Field(..., min_length=1, description="Unique user ID")
    role: UserRole = Field(..., description="teacher, student or parent")
    notificationSettings: Optional[NotificationSettings] = Field(
        default=None,
        description="Notification preferences (None means all allowed)"
    )


async def get_current_user(
    x_user_id: Optional[str] = Header(None),
    x_user_role: Optional[str] = Header(None),
) -> UserIdentity:
    """FastAPI dependency resolving the caller from gateway headers.

    Raises:
        HTTPException: 401 when the identity headers are missing or invalid.
    """
    if not x_user_id or not x_user_role:
        raise HTTPException(status_code=401, detail="Not authorized, no identity")
    try:
        role = UserRole(x_user_role)
    except ValueError:
        raise HTTPException(status_code=401, detail=f"Unknown role: {x_user_role}")
    return UserIdentity(userId=x_user_id, role=role)
