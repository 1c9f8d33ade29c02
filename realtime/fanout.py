from dataclasses import dataclass

from logging_config import get_logger
from realtime.events import Envelope, Room, encode
from realtime.rooms import RoomRouter
from realtime.sessions import SessionStore

logger = get_logger(__name__)


@dataclass
class FanoutResult:
    targeted: int = 0
    delivered: int = 0
    dropped: int = 0


class FanoutEngine:
    """Delivers one event to every live member of its audience, once each.

    Delivery is an enqueue onto each connection's bounded outbound queue. A
    full or closed queue loses that single delivery; the publisher is never
    blocked and never sees an error, since the write behind the event has
    already been committed.
    """

    def __init__(self, sessions: SessionStore, rooms: RoomRouter):
        self.sessions = sessions
        self.rooms = rooms

    async def publish(self, envelope: Envelope) -> FanoutResult:
        result = FanoutResult()
        event_type = envelope.event.type
        try:
            frame = encode(envelope.event)
            if isinstance(envelope.audience, Room):
                member_ids = await self.rooms.members_of(envelope.audience.request_id)
                targets = await self.sessions.get_many(sorted(member_ids))
            else:
                targets = await self.sessions.snapshot()

            for connection in targets:
                if connection.connection_id == envelope.exclude:
                    continue
                result.targeted += 1
                if connection.offer(frame):
                    result.delivered += 1
                else:
                    result.dropped += 1
                    logger.warning(
                        f"Dropped {event_type} for connection {connection.connection_id} "
                        f"({'closed' if connection.closed else 'queue full'})"
                    )
        except Exception as e:
            logger.error(f"Fanout of {event_type} failed: {e}", exc_info=True)
            return result

        logger.debug(
            f"Fanout {event_type} to {envelope.audience}: "
            f"{result.delivered}/{result.targeted} delivered, {result.dropped} dropped"
        )
        return result
