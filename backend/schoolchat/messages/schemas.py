"""Pydantic schemas for group chat messages.

Messages are immutable once created. Pages of history are returned newest
page first (page 1 = most recent), with messages inside a page in
chronological order (oldest first).
"""
import uuid
from datetime import datetime, timezone
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator


class MessageSender(BaseModel):
    """Reference to the user who authored a message."""
    id: str = Field(..., description="User ID of the sender")
    displayName: str = Field(default="", description="Display name, if known")


class Message(BaseModel):
    """A chat message belonging to exactly one group.

    Attributes:
        id: Unique message identifier.
        group: ID of the owning group.
        sender: Author reference. A bare user ID is accepted on input.
        content: Message text.
        createdAt: Creation time (UTC); display order and pagination cursor.
    """
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    group: str = Field(..., description="Group ID this message belongs to")
    sender: MessageSender
    content: str
    createdAt: datetime

    @field_validator("sender", mode="before")
    @classmethod
    def _normalize_sender(cls, value):
        if isinstance(value, str):
            return {"id": value}
        return value

    @field_validator("createdAt")
    @classmethod
    def _naive_utc(cls, value: datetime) -> datetime:
        # Stored and compared as naive UTC
        if value.tzinfo is not None:
            return value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    @property
    def sender_id(self) -> str:
        return self.sender.id


class PaginationInfo(BaseModel):
    currentPage: int = 1
    totalPages: int = 0
    totalMessages: int = 0
    hasNextPage: bool = False
    # Alias of hasNextPage kept for older clients
    hasMore: bool = False


class MessagePage(BaseModel):
    """One page of older messages relative to a page cursor."""
    messages: List[Message] = Field(default_factory=list)
    pagination: PaginationInfo = Field(default_factory=PaginationInfo)


class RecentMessages(BaseModel):
    messages: List[Message] = Field(default_factory=list)
    totalMessages: int = 0


class SendMessagePayload(BaseModel):
    """Payload of the realtime ``send-message`` event."""
    sender: Optional[str] = None
    content: str = ""
    group: str = ""
