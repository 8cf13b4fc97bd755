"""Pydantic schemas for chat groups."""
import uuid
from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

from schoolchat.messages.schemas import MessageSender

MemberRole = Literal["teacher", "student"]


class GroupMember(BaseModel):
    user: str = Field(..., description="User ID of the member")
    role: MemberRole = "student"
    joinedAt: Optional[datetime] = None


class LastMessage(BaseModel):
    """Denormalized preview of the newest message in a group."""
    id: Optional[str] = None
    sender: Optional[MessageSender] = None
    content: str = ""
    createdAt: Optional[datetime] = None


class Group(BaseModel):
    """A chat group as returned by the groups API."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str
    description: str = ""
    creator: Optional[str] = None
    members: List[GroupMember] = Field(default_factory=list)
    lastMessage: Optional[LastMessage] = None
    isActive: bool = True
    createdAt: Optional[datetime] = None
    updatedAt: Optional[datetime] = None

    def is_member(self, user_id: str) -> bool:
        return any(m.user == user_id for m in self.members)

    def is_teacher(self, user_id: str) -> bool:
        return any(m.user == user_id and m.role == "teacher" for m in self.members)


class MemberRef(BaseModel):
    """Member entry in create/add requests: ``{"user": "<id>"}``."""
    user: str = Field(..., min_length=1)


class GroupCreate(BaseModel):
    """Request body for creating a group."""
    name: str = Field(default="", max_length=50)
    description: str = Field(default="", max_length=200)
    members: List[MemberRef] = Field(default_factory=list)


class MembersAdd(BaseModel):
    """Request body for adding members to a group."""
    members: List[MemberRef] = Field(default_factory=list)
