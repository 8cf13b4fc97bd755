"""GroupService: DuckDB-backed chat groups and their membership.

Rules enforced here (the routers only translate errors to HTTP):
    - Only teachers create groups or change membership.
    - The creating teacher is always a member with the teacher role.
    - Only a teacher who is a member of the group may modify it.
    - Teachers cannot be removed from a group.
"""
import logging
import uuid
from typing import Dict, List, Optional

import duckdb

from schoolchat.config import get_config
from schoolchat.identity import UserIdentity, UserRole
from schoolchat.messages.schemas import Message, MessageSender
from schoolchat.messages.service import utcnow

from .schemas import Group, GroupCreate, GroupMember, LastMessage, MemberRef

logger = logging.getLogger(__name__)

_CREATE_GROUPS = """
CREATE TABLE IF NOT EXISTS chat_groups (
    id               VARCHAR PRIMARY KEY,
    name             VARCHAR NOT NULL,
    description      VARCHAR NOT NULL DEFAULT '',
    creator          VARCHAR NOT NULL,
    is_active        BOOLEAN NOT NULL DEFAULT TRUE,
    last_message_id  VARCHAR,
    last_sender_id   VARCHAR,
    last_sender_name VARCHAR,
    last_content     VARCHAR,
    last_message_at  TIMESTAMP,
    created_at       TIMESTAMP NOT NULL,
    updated_at       TIMESTAMP NOT NULL
)
"""

_CREATE_MEMBER_SEQUENCE = "CREATE SEQUENCE IF NOT EXISTS chat_group_members_seq START 1"

_CREATE_MEMBERS = """
CREATE TABLE IF NOT EXISTS chat_group_members (
    seq       BIGINT DEFAULT nextval('chat_group_members_seq'),
    group_id  VARCHAR NOT NULL,
    user_id   VARCHAR NOT NULL,
    role      VARCHAR NOT NULL DEFAULT 'student',
    joined_at TIMESTAMP NOT NULL
)
"""

_INDEX = "CREATE INDEX IF NOT EXISTS idx_chat_group_members_user ON chat_group_members(user_id)"

_GROUP_COLUMNS = (
    "id, name, description, creator, is_active, last_message_id, last_sender_id, "
    "last_sender_name, last_content, last_message_at, created_at, updated_at"
)


# =============================================================================
# Errors
# =============================================================================


class GroupError(Exception):
    """Base class for group rule violations."""
    status_code = 400


class GroupValidationError(GroupError):
    status_code = 400


class GroupPermissionError(GroupError):
    status_code = 403


class GroupNotFoundError(GroupError):
    status_code = 404


# =============================================================================
# Service
# =============================================================================


class GroupService:
    """Singleton service for chat groups stored in DuckDB."""

    _instance: Optional["GroupService"] = None

    def __init__(self, db_path: Optional[str] = None) -> None:
        self._db_path = db_path or get_config().chat.database
        self._conn = duckdb.connect(self._db_path)
        self._conn.execute(_CREATE_GROUPS)
        self._conn.execute(_CREATE_MEMBER_SEQUENCE)
        self._conn.execute(_CREATE_MEMBERS)
        self._conn.execute(_INDEX)
        logger.info("[GroupService] Initialized with db=%s", self._db_path)

    @classmethod
    def get_instance(cls, db_path: Optional[str] = None) -> "GroupService":
        if cls._instance is None:
            cls._instance = cls(db_path)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        if cls._instance is not None:
            cls._instance.close()
            cls._instance = None

    def close(self) -> None:
        self._conn.close()

    # -----------------------------------------------------------------------
    # Queries
    # -----------------------------------------------------------------------

    def get(self, group_id: str) -> Optional[Group]:
        row = self._conn.execute(
            f"SELECT {_GROUP_COLUMNS} FROM chat_groups WHERE id = ?", [group_id]
        ).fetchone()
        if row is None:
            return None
        return self._row_to_group(row, self._members_of([group_id])[group_id])

    def list_for_user(self, user_id: str) -> List[Group]:
        """Active groups the user belongs to, most recently active first."""
        rows = self._conn.execute(
            f"""
            SELECT {_GROUP_COLUMNS} FROM chat_groups g
            WHERE g.is_active
              AND EXISTS (
                  SELECT 1 FROM chat_group_members m
                  WHERE m.group_id = g.id AND m.user_id = ?
              )
            ORDER BY g.last_message_at DESC NULLS LAST, g.updated_at DESC
            """,
            [user_id],
        ).fetchall()
        members = self._members_of([r[0] for r in rows])
        return [self._row_to_group(r, members[r[0]]) for r in rows]

    def require_member(self, group_id: str, user_id: str) -> Group:
        """Return the group if ``user_id`` belongs to it.

        Raises:
            GroupNotFoundError: Unknown group.
            GroupPermissionError: The user is not a member.
        """
        group = self.get(group_id)
        if group is None:
            raise GroupNotFoundError("Group not found")
        if not group.is_member(user_id):
            raise GroupPermissionError("You are not a member of this group")
        return group

    # -----------------------------------------------------------------------
    # Mutations
    # -----------------------------------------------------------------------

    def create(self, creator: UserIdentity, data: GroupCreate) -> Group:
        if creator.role != UserRole.TEACHER:
            raise GroupPermissionError("Only teachers are authorized to create groups.")
        if not data.name.strip() or not data.members:
            raise GroupValidationError("Please provide a group name and a list of members.")

        # Later entries win, first position is kept: the creator stays a teacher
        unique: Dict[str, GroupMember] = {}
        for member in [GroupMember(user=m.user, role="student") for m in data.members] + [
            GroupMember(user=creator.userId, role="teacher")
        ]:
            unique[member.user] = member

        group_id = str(uuid.uuid4())
        now = utcnow()
        self._conn.execute(
            """
            INSERT INTO chat_groups (id, name, description, creator, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            [group_id, data.name.strip(), data.description.strip(), creator.userId, now, now],
        )
        self._insert_members(group_id, list(unique.values()), now)
        logger.info(
            "[GroupService] %s created group %s (%d members)",
            creator.userId, group_id, len(unique),
        )
        return self.get(group_id)

    def add_members(self, actor: UserIdentity, group_id: str, members: List[MemberRef]) -> Group:
        if actor.role != UserRole.TEACHER:
            raise GroupPermissionError("Only teachers are authorized to add members to groups.")
        if not members:
            raise GroupValidationError("Please provide a list of members to add.")
        group = self._require_teacher_of(actor, group_id)

        existing = {m.user for m in group.members}
        to_add: Dict[str, GroupMember] = {}
        for ref in members:
            if ref.user not in existing:
                to_add[ref.user] = GroupMember(user=ref.user, role="student")
        if not to_add:
            raise GroupValidationError("All selected users are already members of this group.")

        now = utcnow()
        self._insert_members(group_id, list(to_add.values()), now)
        self._touch(group_id, now)
        logger.info("[GroupService] Added %d member(s) to group %s", len(to_add), group_id)
        return self.get(group_id)

    def remove_member(self, actor: UserIdentity, group_id: str, member_id: str) -> Group:
        if actor.role != UserRole.TEACHER:
            raise GroupPermissionError(
                "Only teachers are authorized to remove members from groups."
            )
        group = self._require_teacher_of(actor, group_id)

        target = next((m for m in group.members if m.user == member_id), None)
        if target is None:
            raise GroupNotFoundError("Member not found in this group.")
        if target.role == "teacher":
            raise GroupPermissionError("Cannot remove teachers from the group.")

        self._conn.execute(
            "DELETE FROM chat_group_members WHERE group_id = ? AND user_id = ?",
            [group_id, member_id],
        )
        self._touch(group_id, utcnow())
        logger.info("[GroupService] Removed %s from group %s", member_id, group_id)
        return self.get(group_id)

    def set_last_message(self, message: Message) -> None:
        """Record ``message`` as the group's newest message preview."""
        self._conn.execute(
            """
            UPDATE chat_groups
            SET last_message_id = ?, last_sender_id = ?, last_sender_name = ?,
                last_content = ?, last_message_at = ?, updated_at = ?
            WHERE id = ?
            """,
            [
                message.id, message.sender.id, message.sender.displayName,
                message.content, message.createdAt, utcnow(), message.group,
            ],
        )

    # -----------------------------------------------------------------------
    # Internal
    # -----------------------------------------------------------------------

    def _require_teacher_of(self, actor: UserIdentity, group_id: str) -> Group:
        group = self.get(group_id)
        if group is None:
            raise GroupNotFoundError("Group not found.")
        if not group.is_teacher(actor.userId):
            raise GroupPermissionError("You are not authorized to modify this group.")
        return group

    def _insert_members(self, group_id: str, members: List[GroupMember], joined_at) -> None:
        for member in members:
            self._conn.execute(
                """
                INSERT INTO chat_group_members (group_id, user_id, role, joined_at)
                VALUES (?, ?, ?, ?)
                """,
                [group_id, member.user, member.role, joined_at],
            )

    def _touch(self, group_id: str, when) -> None:
        self._conn.execute(
            "UPDATE chat_groups SET updated_at = ? WHERE id = ?", [when, group_id]
        )

    def _members_of(self, group_ids: List[str]) -> Dict[str, List[GroupMember]]:
        members: Dict[str, List[GroupMember]] = {gid: [] for gid in group_ids}
        if not group_ids:
            return members
        placeholders = ", ".join("?" for _ in group_ids)
        rows = self._conn.execute(
            f"""
            SELECT group_id, user_id, role, joined_at FROM chat_group_members
            WHERE group_id IN ({placeholders})
            ORDER BY seq
            """,
            group_ids,
        ).fetchall()
        for group_id, user_id, role, joined_at in rows:
            members[group_id].append(GroupMember(user=user_id, role=role, joinedAt=joined_at))
        return members

    @staticmethod
    def _row_to_group(row, members: List[GroupMember]) -> Group:
        (
            group_id, name, description, creator, is_active, last_id, last_sender_id,
            last_sender_name, last_content, last_at, created_at, updated_at,
        ) = row
        last_message = None
        if last_id is not None:
            last_message = LastMessage(
                id=last_id,
                sender=MessageSender(id=last_sender_id, displayName=last_sender_name or ""),
                content=last_content or "",
                createdAt=last_at,
            )
        return Group(
            id=group_id,
            name=name,
            description=description,
            creator=creator,
            members=members,
            lastMessage=last_message,
            isActive=is_active,
            createdAt=created_at,
            updatedAt=updated_at,
        )
