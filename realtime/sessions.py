import asyncio
import uuid
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

from constants import OUTBOUND_QUEUE_SIZE
from identity import Identity
from logging_config import get_logger

logger = get_logger(__name__)


class Connection:
    """A live, authenticated client connection.

    Outbound frames go through a bounded queue drained by the connection's
    sender task; `offer` never blocks, it refuses the frame instead.
    """

    def __init__(self, identity: Identity, queue_size: int = OUTBOUND_QUEUE_SIZE, connection_id: Optional[str] = None):
        self.connection_id = connection_id or str(uuid.uuid4())
        self.identity = identity
        self.connected_at = datetime.now(timezone.utc).isoformat()
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self.closed = False
        self.dropped = 0

    @property
    def user_id(self) -> str:
        return self.identity.user_id

    def offer(self, frame: str) -> bool:
        if self.closed:
            return False
        try:
            self.queue.put_nowait(frame)
        except asyncio.QueueFull:
            self.dropped += 1
            return False
        return True

    def close(self) -> None:
        self.closed = True

    def __repr__(self):
        return f"Connection({self.connection_id!r}, user={self.identity.user_id!r}, role={self.identity.role!r})"


class SessionStore:
    """Registry of live connections, keyed by connection id."""

    def __init__(self, queue_size: int = OUTBOUND_QUEUE_SIZE):
        self.queue_size = queue_size
        self._connections: Dict[str, Connection] = {}
        self._lock = asyncio.Lock()

    async def register(self, identity: Identity, connection_id: Optional[str] = None) -> Connection:
        connection = Connection(identity, self.queue_size, connection_id)
        async with self._lock:
            self._connections[connection.connection_id] = connection
            total = len(self._connections)
        logger.info(f"Registered connection {connection.connection_id} for user {identity.user_id} ({total} live)")
        return connection

    async def unregister(self, connection_id: str) -> Optional[Connection]:
        async with self._lock:
            connection = self._connections.pop(connection_id, None)
            total = len(self._connections)
        if connection:
            connection.close()
            logger.info(f"Unregistered connection {connection_id} ({total} live)")
        return connection

    def get(self, connection_id: str) -> Optional[Connection]:
        return self._connections.get(connection_id)

    async def get_many(self, connection_ids: Iterable[str]) -> List[Connection]:
        async with self._lock:
            return [self._connections[cid] for cid in connection_ids if cid in self._connections]

    async def snapshot(self) -> List[Connection]:
        async with self._lock:
            return list(self._connections.values())

    def __contains__(self, connection_id: str) -> bool:
        return connection_id in self._connections

    def __len__(self) -> int:
        return len(self._connections)
