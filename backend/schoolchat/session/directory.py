"""The user's group list, kept in sync with the persistence API."""
import logging
from typing import Callable, Iterable, List, Optional, Union

from schoolchat.groups.schemas import Group, GroupCreate, LastMessage, MemberRef
from schoolchat.messages.schemas import Message

from .api_client import ChatApiClient, ChatApiError

logger = logging.getLogger(__name__)

Listener = Callable[[List[Group]], None]


class GroupDirectory:
    """Group list plus the snapshot of the selected group.

    Membership changes go through the API and are followed by a full
    refresh. Live messages only touch the affected group's ``lastMessage``.
    """

    def __init__(self, api: ChatApiClient) -> None:
        self._api = api
        self._groups: List[Group] = []
        self._selected: Optional[Group] = None
        self._listeners: List[Listener] = []

    @property
    def groups(self) -> List[Group]:
        return list(self._groups)

    @property
    def selected_group(self) -> Optional[Group]:
        return self._selected

    def get(self, group_id: str) -> Optional[Group]:
        return next((g for g in self._groups if g.id == group_id), None)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Call ``listener`` with the new list after every change.

        Returns:
            A function that removes the listener.
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def select(self, group_id: Optional[str]) -> Optional[Group]:
        self._selected = self.get(group_id) if group_id else None
        return self._selected

    async def refresh(self) -> bool:
        """Replace the list with the server's. Keeps the old list on failure."""
        try:
            groups = await self._api.get_groups()
        except ChatApiError as e:
            logger.error(f"[Directory] Failed to refresh groups: {e}")
            return False

        self._groups = list(groups)
        if self._selected is not None:
            # The selected group may have been deleted or the user removed
            self._selected = self.get(self._selected.id)
        self._notify()
        return True

    def on_live_message(self, message: Message) -> bool:
        """Update the ``lastMessage`` preview of the message's group.

        Returns:
            False if the group is not in the list.
        """
        for i, group in enumerate(self._groups):
            if group.id != message.group:
                continue
            current = group.lastMessage
            if current is not None and current.createdAt is not None and current.createdAt > message.createdAt:
                return True
            updated = group.model_copy(update={
                "lastMessage": LastMessage(
                    id=message.id,
                    sender=message.sender,
                    content=message.content,
                    createdAt=message.createdAt,
                ),
                "updatedAt": message.createdAt,
            })
            # Most recently active first
            del self._groups[i]
            self._groups.insert(0, updated)
            if self._selected is not None and self._selected.id == updated.id:
                self._selected = updated
            self._notify()
            return True
        return False

    async def create_group(self, data: Union[GroupCreate, dict]) -> Group:
        group = await self._api.create_group(data)
        logger.info(f"[Directory] Created group {group.id} ({group.name})")
        await self.refresh()
        return group

    async def add_members(self, group_id: str, members: Iterable[Union[str, MemberRef, dict]]) -> Group:
        group = await self._api.add_members(group_id, members)
        if self._selected is not None and self._selected.id == group_id:
            self._selected = group
        await self.refresh()
        return group

    async def remove_member(self, group_id: str, member_id: str) -> Group:
        group = await self._api.remove_member(group_id, member_id)
        if self._selected is not None and self._selected.id == group_id:
            self._selected = group
        await self.refresh()
        return group

    def _notify(self) -> None:
        snapshot = self.groups
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("[Directory] Listener failed")
