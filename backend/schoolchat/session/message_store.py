"""Message buffer for the group the user is currently viewing.

The buffer is always sorted ascending by ``createdAt`` and never holds the
same message id twice. History is fetched page by page from the
persistence API (page 1 is the most recent). Live messages from the
realtime channel are appended as they arrive.

Every fetch is tagged with a :class:`PageRequest`. Switching groups bumps
the selection generation, so a response for a previous selection is
recognised and discarded instead of overwriting the new group's buffer.
"""
import bisect
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Optional, Set, Tuple

from pydantic import BaseModel, Field

from schoolchat.config import get_config
from schoolchat.messages.schemas import Message, MessagePage
from schoolchat.messages.service import utcnow
from schoolchat.realtime import events

from .api_client import ChatApiClient, ChatApiError
from .connection import RealtimeConnection

logger = logging.getLogger(__name__)


def _created_at(message: Message) -> datetime:
    return message.createdAt


@dataclass(frozen=True)
class PageRequest:
    """Identity of one history fetch."""
    group_id: str
    page: int
    generation: int


class PendingMessage(BaseModel):
    """A message handed to the realtime channel and not yet echoed back."""
    clientId: str = Field(default_factory=lambda: str(uuid.uuid4()))
    group: str
    content: str
    sentAt: datetime = Field(default_factory=utcnow)


class MessageStore:
    """Paginated, deduplicated message buffer for the active group.

    Args:
        api: Persistence API client.
        connection: Realtime connection used for sends.
        user_id: The logged-in user; used to match echoes of own sends.
        page_size: Messages per page (defaults to ``client.page_size``).
        max_fetch_failures: Consecutive ``load_older`` failures after which
            pagination stops (defaults to ``client.max_fetch_failures``).
    """

    def __init__(
        self,
        api: ChatApiClient,
        connection: RealtimeConnection,
        user_id: str,
        *,
        page_size: Optional[int] = None,
        max_fetch_failures: Optional[int] = None,
    ) -> None:
        cfg = get_config().client
        self._api = api
        self._connection = connection
        self._user_id = user_id
        self._page_size = page_size or cfg.page_size
        self._max_fetch_failures = max_fetch_failures or cfg.max_fetch_failures
        self._max_content_length = get_config().chat.max_content_length

        self.active_group_id: Optional[str] = None
        self.cursor_page = 1
        self.has_more_messages = True
        self.is_loading_messages = False

        self._messages: List[Message] = []
        self._ids: Set[str] = set()
        self._pending: List[PendingMessage] = []
        self._generation = 0
        self._fetch_failures = 0

    @property
    def messages(self) -> Tuple[Message, ...]:
        return tuple(self._messages)

    @property
    def pending(self) -> Tuple[PendingMessage, ...]:
        return tuple(self._pending)

    @property
    def generation(self) -> int:
        return self._generation

    # -- Selection ------------------------------------------------------------

    async def select_group(self, group_id: Optional[str]) -> None:
        """Switch the active group and load its most recent page.

        ``None`` clears the selection and the buffer.
        """
        self._generation += 1
        self.active_group_id = group_id
        self._reset()
        if group_id is None:
            return
        await self.load_initial(group_id)

    async def load_initial(self, group_id: str) -> bool:
        """Load page 1 of ``group_id`` into the buffer.

        The page replaces the buffer. Live messages newer than the page that
        arrived while it was loading are kept.

        Returns:
            True if the page was applied, False on failure, when
            ``group_id`` is not the active group, or when the response
            arrived for a selection that is no longer active.
        """
        if group_id != self.active_group_id:
            logger.warning(
                f"[MessageStore] Ignoring load for {group_id}, active group is {self.active_group_id}"
            )
            return False

        # A reload supersedes any older-page fetch still in flight
        self._generation += 1
        request = PageRequest(group_id, 1, self._generation)
        self.is_loading_messages = True
        try:
            page = await self._fetch(request)
        except ChatApiError as e:
            if not self._is_current(request):
                return False
            logger.warning(f"[MessageStore] Failed to load messages for group {group_id}: {e}")
            self._replace([])
            self.has_more_messages = False
            self.is_loading_messages = False
            return False

        if not self._is_current(request):
            logger.debug("[MessageStore] Discarding stale page %s", request)
            return False

        self._replace_with_page(page.messages)
        self.cursor_page = 1
        self.has_more_messages = page.pagination.hasNextPage and bool(page.messages)
        self._fetch_failures = 0
        self.is_loading_messages = False
        return True

    async def load_older(self) -> bool:
        """Prepend the next page of older history.

        No-op while nothing is selected, while a load is in flight, or once
        history is exhausted.

        Returns:
            True if a page was applied.
        """
        if self.active_group_id is None or self.is_loading_messages or not self.has_more_messages:
            return False

        request = PageRequest(self.active_group_id, self.cursor_page + 1, self._generation)
        self.is_loading_messages = True
        try:
            page = await self._fetch(request)
        except ChatApiError as e:
            if not self._is_current(request):
                return False
            self.is_loading_messages = False
            self._fetch_failures += 1
            logger.warning(
                f"[MessageStore] Failed to load page {request.page} for group "
                f"{request.group_id} ({self._fetch_failures}/{self._max_fetch_failures}): {e}"
            )
            if self._fetch_failures >= self._max_fetch_failures:
                logger.warning("[MessageStore] Giving up on older history for %s", request.group_id)
                self.has_more_messages = False
            return False

        if not self._is_current(request):
            logger.debug("[MessageStore] Discarding stale page %s", request)
            return False

        self._merge(page.messages)
        self.cursor_page = request.page
        self.has_more_messages = page.pagination.hasNextPage and bool(page.messages)
        self._fetch_failures = 0
        self.is_loading_messages = False
        return True

    # -- Live updates ---------------------------------------------------------

    def on_live_message(self, message: Message) -> bool:
        """Add a message from the realtime channel to the active buffer.

        Returns:
            True if the buffer changed.
        """
        if message.group != self.active_group_id:
            return False

        self._resolve_pending(message)

        if message.id in self._ids:
            return False
        self._ids.add(message.id)

        if not self._messages or message.createdAt >= self._messages[-1].createdAt:
            self._messages.append(message)
        else:
            bisect.insort(self._messages, message, key=_created_at)
        return True

    def send(self, content: str) -> Optional[PendingMessage]:
        """Send a message to the active group.

        Nothing is inserted into the buffer; the message appears when the
        server echoes it back. Until then it is tracked in ``pending``.

        Returns:
            The pending entry, or None when nothing was sent.
        """
        text = (content or "").strip()
        if not self.active_group_id or not text:
            return None
        if len(text) > self._max_content_length:
            logger.warning(
                f"[MessageStore] Message to {self.active_group_id} exceeds "
                f"{self._max_content_length} characters, not sent"
            )
            return None
        if not self._connection.is_connected:
            logger.warning("[MessageStore] Offline, message to %s not sent", self.active_group_id)
            return None

        pending = PendingMessage(group=self.active_group_id, content=text)
        self._connection.send(
            events.SEND_MESSAGE,
            {"sender": self._user_id, "content": text, "group": self.active_group_id},
        )
        self._pending.append(pending)
        return pending

    def reject_pending(self, reason: str) -> Optional[PendingMessage]:
        """Drop the oldest pending send after the server refused it.

        The server handles a connection's frames in order, so a refusal
        always belongs to the oldest send still waiting for its echo.
        """
        if not self._pending:
            return None
        rejected = self._pending.pop(0)
        logger.warning(f"[MessageStore] Send to {rejected.group} rejected: {reason}")
        return rejected

    def drop_pending(self) -> Tuple[PendingMessage, ...]:
        """Forget every pending send, e.g. when the connection drops."""
        dropped = tuple(self._pending)
        self._pending.clear()
        if dropped:
            logger.warning(f"[MessageStore] Dropped {len(dropped)} unconfirmed message(s)")
        return dropped

    # -- Internal -------------------------------------------------------------

    async def _fetch(self, request: PageRequest) -> MessagePage:
        return await self._api.get_group_messages(
            request.group_id, page=request.page, limit=self._page_size
        )

    def _is_current(self, request: PageRequest) -> bool:
        return request.generation == self._generation and request.group_id == self.active_group_id

    def _reset(self) -> None:
        self._replace([])
        self._pending.clear()
        self.cursor_page = 1
        self.has_more_messages = True
        self.is_loading_messages = False
        self._fetch_failures = 0

    def _replace(self, messages: List[Message]) -> None:
        self._messages = list(messages)
        self._ids = {m.id for m in self._messages}

    def _replace_with_page(self, messages: List[Message]) -> None:
        newest = max((m.createdAt for m in messages), default=None)
        page_ids = {m.id for m in messages}
        live = [
            m for m in self._messages
            if m.id not in page_ids and (newest is None or m.createdAt > newest)
        ]
        self._replace(sorted(list(messages) + live, key=_created_at))

    def _merge(self, messages: Iterable[Message]) -> None:
        fresh = []
        for message in messages:
            if message.id in self._ids:
                continue
            self._ids.add(message.id)
            fresh.append(message)
        # Stable sort keeps arrival order for equal timestamps
        self._messages = sorted(fresh + self._messages, key=_created_at)

    def _resolve_pending(self, message: Message) -> None:
        if message.sender_id != self._user_id:
            return
        for i, pending in enumerate(self._pending):
            if pending.group == message.group and pending.content == message.content.strip():
                del self._pending[i]
                return
