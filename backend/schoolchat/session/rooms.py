"""Keeps the realtime room subscriptions in line with the group list."""
import logging
from typing import FrozenSet, Iterable, Set

from schoolchat.groups.schemas import Group
from schoolchat.realtime import events

from .connection import RealtimeConnection

logger = logging.getLogger(__name__)


class RoomMembershipTracker:
    """Joins and leaves group rooms as the user's groups change.

    The joined set is only meaningful for the current connection; it is
    cleared on disconnect so the next connect re-joins every group.
    """

    def __init__(self, connection: RealtimeConnection, user_id: str) -> None:
        self._connection = connection
        self._user_id = user_id
        self._joined: Set[str] = set()

    @property
    def joined(self) -> FrozenSet[str]:
        return frozenset(self._joined)

    def reconcile(self, groups: Iterable[Group]) -> None:
        """Join rooms for new groups and leave rooms for groups that are gone."""
        if not self._connection.is_connected:
            logger.debug("[Rooms] Offline, skipping reconcile")
            return

        wanted = {g.id for g in groups}

        for group_id in sorted(wanted - self._joined):
            self._connection.send(events.JOIN_GROUP, {"groupId": group_id, "userId": self._user_id})
            self._joined.add(group_id)

        for group_id in sorted(self._joined - wanted):
            self._connection.send(events.LEAVE_GROUP, {"groupId": group_id, "userId": self._user_id})
            self._joined.discard(group_id)
            logger.info(f"[Rooms] Left room for group {group_id}")

    def reset(self) -> None:
        self._joined.clear()
