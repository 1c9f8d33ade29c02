import asyncio
from typing import Callable, Optional

from fastapi import WebSocket, WebSocketDisconnect

from constants import OUTBOUND_QUEUE_SIZE
from identity import Identity, IdentityService
from logging_config import get_logger
from realtime.bus import LocalEventBus
from realtime.events import (
    BROADCAST,
    Envelope,
    JoinRequest,
    LeaveRequest,
    Room,
    Typing,
    decode_command,
    user_typing,
)
from realtime.fanout import FanoutEngine
from realtime.handshake import ChannelHandshake
from realtime.rooms import RoomRouter
from realtime.sessions import Connection, SessionStore

logger = get_logger(__name__)

JoinPolicy = Callable[[Identity, str], bool]


def allow_all(identity: Identity, request_id: str) -> bool:
    return True


class RealtimeHub:
    """Owns the live-connection registries and serves the persistent channel.

    Handlers receive the hub by injection; nothing here is module-global.
    """

    def __init__(
        self,
        identity_service: IdentityService,
        queue_size: int = OUTBOUND_QUEUE_SIZE,
        bus_factory: Callable[[FanoutEngine], object] = LocalEventBus,
        join_policy: JoinPolicy = allow_all,
    ):
        self.sessions = SessionStore(queue_size)
        self.rooms = RoomRouter(self.sessions)
        self.fanout = FanoutEngine(self.sessions, self.rooms)
        self.handshake = ChannelHandshake(identity_service)
        self.bus = bus_factory(self.fanout)
        self.join_policy = join_policy

    async def start(self) -> None:
        await self.bus.start()

    async def stop(self) -> None:
        await self.bus.stop()

    async def publish(self, event, request_id: Optional[str] = None, exclude: Optional[str] = None) -> None:
        """Publish to Room(request_id) when given, otherwise to every session."""
        audience = Room(request_id) if request_id else BROADCAST
        await self.bus.publish(Envelope(event=event, audience=audience, exclude=exclude))

    async def serve(self, websocket: WebSocket) -> None:
        result = await self.handshake.authenticate(websocket)
        if result is None:
            return

        await websocket.accept(subprotocol=result.subprotocol)
        connection = await self.sessions.register(result.identity)
        sender = asyncio.create_task(self._pump(websocket, connection))
        message_count = 0
        try:
            while True:
                data = await websocket.receive_text()
                message_count += 1
                logger.debug(f"Received frame #{message_count} from connection {connection.connection_id}")
                await self.handle_frame(connection, data)
        except WebSocketDisconnect:
            logger.info(f"WebSocket disconnected for connection {connection.connection_id}")
        except Exception as e:
            logger.error(f"WebSocket error for connection {connection.connection_id}: {e}", exc_info=True)
        finally:
            await self.disconnect(connection)
            sender.cancel()
            try:
                await sender
            except asyncio.CancelledError:
                pass
            try:
                await websocket.close()
            except Exception as e:
                logger.debug(f"Error closing WebSocket: {e}")

    async def handle_frame(self, connection: Connection, data: str) -> None:
        try:
            command = decode_command(data)
        except ValueError as e:
            logger.warning(f"Ignoring malformed frame from connection {connection.connection_id}: {e}")
            return

        if isinstance(command, JoinRequest):
            await self.join(connection, command.data)
        elif isinstance(command, LeaveRequest):
            await self.rooms.leave(connection.connection_id, command.data)
        elif isinstance(command, Typing):
            await self.typing(connection, command.data.request_id, command.data.is_typing)

    async def join(self, connection: Connection, request_id: str) -> bool:
        try:
            allowed = self.join_policy(connection.identity, request_id)
        except Exception as e:
            logger.error(f"Join policy failed for {connection.connection_id} on {request_id}: {e}", exc_info=True)
            allowed = False
        if not allowed:
            logger.warning(f"User {connection.user_id} may not follow request {request_id}")
            return False
        await self.rooms.join(connection.connection_id, request_id)
        return True

    async def typing(self, connection: Connection, request_id: str, is_typing: bool) -> None:
        # Typing is only relayed to rooms the sender actually follows
        if request_id not in await self.rooms.rooms_of(connection.connection_id):
            logger.debug(f"Dropping typing signal from {connection.connection_id}: not in room {request_id}")
            return
        await self.publish(
            user_typing(connection.user_id, request_id, is_typing),
            request_id=request_id,
            exclude=connection.connection_id,
        )

    async def disconnect(self, connection: Connection) -> None:
        await self.sessions.unregister(connection.connection_id)
        rooms = await self.rooms.drop_connection(connection.connection_id)
        logger.info(f"User {connection.user_id} left (connection {connection.connection_id}, rooms {rooms})")

    async def _pump(self, websocket: WebSocket, connection: Connection) -> None:
        while True:
            frame = await connection.queue.get()
            try:
                await websocket.send_text(frame)
            except Exception as e:
                logger.debug(f"Send to connection {connection.connection_id} failed: {e}")
                return
