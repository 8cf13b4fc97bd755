"""MessageService: DuckDB-backed group message history.

Messages are append-only. Each row carries a monotonically increasing
``seq`` so that messages created within the same timestamp still have a
stable order for pagination.
"""
import logging
import math
from datetime import datetime, timezone
from typing import List, Optional

import duckdb

from schoolchat.config import get_config

from .schemas import Message, MessagePage, MessageSender, PaginationInfo

logger = logging.getLogger(__name__)

_CREATE_SEQUENCE = "CREATE SEQUENCE IF NOT EXISTS chat_messages_seq START 1"

_CREATE_TABLE = """
CREATE TABLE IF NOT EXISTS chat_messages (
    seq         BIGINT DEFAULT nextval('chat_messages_seq') PRIMARY KEY,
    id          VARCHAR NOT NULL,
    group_id    VARCHAR NOT NULL,
    sender_id   VARCHAR NOT NULL,
    sender_name VARCHAR NOT NULL DEFAULT '',
    content     VARCHAR NOT NULL,
    created_at  TIMESTAMP NOT NULL
)
"""

_INDEX = "CREATE INDEX IF NOT EXISTS idx_chat_messages_group ON chat_messages(group_id)"

_COLUMNS = "id, group_id, sender_id, sender_name, content, created_at"


def utcnow() -> datetime:
    """Naive UTC timestamp, the form DuckDB TIMESTAMP columns store."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class MessageService:
    """Singleton service storing chat messages in DuckDB."""

    _instance: Optional["MessageService"] = None

    def __init__(self, db_path: Optional[str] = None) -> None:
        self._db_path = db_path or get_config().chat.database
        self._conn = duckdb.connect(self._db_path)
        self._conn.execute(_CREATE_SEQUENCE)
        self._conn.execute(_CREATE_TABLE)
        self._conn.execute(_INDEX)
        logger.info("[MessageService] Initialized with db=%s", self._db_path)

    @classmethod
    def get_instance(cls, db_path: Optional[str] = None) -> "MessageService":
        if cls._instance is None:
            cls._instance = cls(db_path)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Close and forget the singleton (used by tests)."""
        if cls._instance is not None:
            cls._instance.close()
            cls._instance = None

    def close(self) -> None:
        self._conn.close()

    # -----------------------------------------------------------------------
    # Writes
    # -----------------------------------------------------------------------

    def create(
        self,
        group_id: str,
        sender: MessageSender,
        content: str,
        created_at: Optional[datetime] = None,
    ) -> Message:
        """Persist a new message.

        Raises:
            ValueError: If the content is empty after trimming.
        """
        content = content.strip()
        if not content:
            raise ValueError("Message content is required")

        message = Message(
            group=group_id,
            sender=sender,
            content=content,
            createdAt=created_at or utcnow(),
        )
        self._conn.execute(
            f"INSERT INTO chat_messages ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?)",
            [
                message.id, group_id, sender.id, sender.displayName,
                message.content, message.createdAt,
            ],
        )
        return message

    # -----------------------------------------------------------------------
    # Reads
    # -----------------------------------------------------------------------

    def count(self, group_id: str) -> int:
        return self._conn.execute(
            "SELECT COUNT(*) FROM chat_messages WHERE group_id = ?", [group_id]
        ).fetchone()[0]

    def get_page(self, group_id: str, page: int = 1, limit: Optional[int] = None) -> MessagePage:
        """Return one page of history, page 1 being the most recent.

        Messages inside the page are oldest first.
        """
        chat_cfg = get_config().chat
        limit = min(max(limit or chat_cfg.page_size, 1), chat_cfg.max_page_size)
        page = max(page, 1)

        total = self.count(group_id)
        rows = self._conn.execute(
            f"""
            SELECT {_COLUMNS} FROM chat_messages
            WHERE group_id = ?
            ORDER BY created_at DESC, seq DESC
            LIMIT ? OFFSET ?
            """,
            [group_id, limit, (page - 1) * limit],
        ).fetchall()
        messages = [self._row_to_message(r) for r in reversed(rows)]

        total_pages = math.ceil(total / limit)
        has_next = page < total_pages
        return MessagePage(
            messages=messages,
            pagination=PaginationInfo(
                currentPage=page,
                totalPages=total_pages,
                totalMessages=total,
                hasNextPage=has_next,
                hasMore=has_next,
            ),
        )

    def recent(self, group_id: str, limit: Optional[int] = None) -> List[Message]:
        """Return the newest ``limit`` messages, oldest first."""
        return self.get_page(group_id, 1, limit).messages

    # -----------------------------------------------------------------------
    # Internal
    # -----------------------------------------------------------------------

    @staticmethod
    def _row_to_message(row) -> Message:
        msg_id, group_id, sender_id, sender_name, content, created_at = row
        return Message(
            id=msg_id,
            group=group_id,
            sender=MessageSender(id=sender_id, displayName=sender_name),
            content=content,
            createdAt=created_at,
        )
