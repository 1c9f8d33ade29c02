import asyncio
from typing import Dict, FrozenSet, List, Optional, Set

from logging_config import get_logger
from realtime.sessions import SessionStore

logger = get_logger(__name__)


class RoomRouter:
    """Maps a support request id to the connections following it.

    One lock guards both the room map and the reverse connection -> rooms
    index, so a disconnect leaves every room in a single pass and a fanout
    never sees a half-updated member set. Empty rooms are dropped.
    """

    def __init__(self, sessions: Optional[SessionStore] = None):
        self.sessions = sessions
        self._rooms: Dict[str, Set[str]] = {}
        self._memberships: Dict[str, Set[str]] = {}
        self._lock = asyncio.Lock()

    async def join(self, connection_id: str, request_id: str) -> bool:
        """Returns True when the connection was not already a member."""
        async with self._lock:
            if self.sessions is not None and connection_id not in self.sessions:
                logger.warning(f"Refusing join of unknown connection {connection_id} to room {request_id}")
                return False
            members = self._rooms.setdefault(request_id, set())
            added = connection_id not in members
            members.add(connection_id)
            self._memberships.setdefault(connection_id, set()).add(request_id)
        if added:
            logger.debug(f"Connection {connection_id} joined room {request_id} ({len(members)} members)")
        return added

    async def leave(self, connection_id: str, request_id: str) -> bool:
        async with self._lock:
            removed = self._discard(connection_id, request_id)
        if removed:
            logger.debug(f"Connection {connection_id} left room {request_id}")
        return removed

    async def drop_connection(self, connection_id: str) -> List[str]:
        async with self._lock:
            rooms = list(self._memberships.get(connection_id, ()))
            for request_id in rooms:
                self._discard(connection_id, request_id)
        if rooms:
            logger.debug(f"Connection {connection_id} removed from rooms {rooms}")
        return rooms

    async def members_of(self, request_id: str) -> FrozenSet[str]:
        async with self._lock:
            return frozenset(self._rooms.get(request_id, ()))

    async def rooms_of(self, connection_id: str) -> FrozenSet[str]:
        async with self._lock:
            return frozenset(self._memberships.get(connection_id, ()))

    def room_count(self) -> int:
        return len(self._rooms)

    def member_count(self, request_id: str) -> int:
        return len(self._rooms.get(request_id, ()))

    def _discard(self, connection_id: str, request_id: str) -> bool:
        members = self._rooms.get(request_id)
        if not members or connection_id not in members:
            return False
        members.discard(connection_id)
        if not members:
            del self._rooms[request_id]
        rooms = self._memberships.get(connection_id)
        if rooms is not None:
            rooms.discard(request_id)
            if not rooms:
                del self._memberships[connection_id]
        return True
