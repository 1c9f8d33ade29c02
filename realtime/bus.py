import asyncio
import time
from typing import Optional

import redis

from logging_config import get_logger
from realtime.events import Envelope
from realtime.fanout import FanoutEngine
from redis_keys import REDIS_EVENTS_CHANNEL

logger = get_logger(__name__)


class LocalEventBus:
    """Single-instance bus: publishing goes straight into the local fanout."""

    name = "local"

    def __init__(self, fanout: FanoutEngine):
        self.fanout = fanout

    async def publish(self, envelope: Envelope) -> None:
        try:
            await self.fanout.publish(envelope)
        except Exception as e:
            logger.error(f"Local publish of {envelope.event.type} failed: {e}", exc_info=True)

    async def start(self) -> None:
        logger.info("Local event bus ready")

    async def stop(self) -> None:
        return None


class RedisEventBus:
    """Relays envelopes between server instances over Redis pub/sub.

    Each instance tracks only its own websocket connections. Writers publish
    the envelope to one channel; every instance's listener receives it and
    hands it to its local fanout.
    """

    name = "redis"

    def __init__(self, fanout: FanoutEngine, redis_client: redis.Redis, channel: str = REDIS_EVENTS_CHANNEL):
        self.fanout = fanout
        self.redis_client = redis_client
        self.channel = channel
        self._task: Optional[asyncio.Task] = None

    async def publish(self, envelope: Envelope) -> None:
        try:
            subscribers = self.redis_client.publish(self.channel, envelope.to_json())
            logger.debug(f"Published {envelope.event.type} to {self.channel}, {subscribers} subscribers")
        except Exception as e:
            logger.error(f"Redis publish of {envelope.event.type} failed: {e}", exc_info=True)

    async def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._listen())
            logger.info(f"Started Redis event listener on {self.channel}")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info("Stopped Redis event listener")

    async def dispatch(self, message: dict) -> None:
        if message.get("type") != "message":
            return
        try:
            envelope = Envelope.from_json(message["data"])
        except (ValueError, KeyError) as e:
            logger.error(f"Discarding malformed envelope from {self.channel}: {e}")
            return
        await self.fanout.publish(envelope)

    async def _listen(self) -> None:
        pubsub = None
        try:
            pubsub = self.redis_client.pubsub()
            pubsub.subscribe(self.channel)
            loop = asyncio.get_running_loop()

            def get_message():
                try:
                    return pubsub.get_message(timeout=1.0, ignore_subscribe_messages=True)
                except Exception as e:
                    logger.error(f"Error in pubsub.get_message() on {self.channel}: {e}", exc_info=True)
                    time.sleep(1.0)
                    return None

            while True:
                message = await loop.run_in_executor(None, get_message)
                if message is None:
                    continue
                await self.dispatch(message)
        except asyncio.CancelledError:
            logger.info(f"Redis listener task cancelled for {self.channel}")
            raise
        except Exception as e:
            logger.error(f"Error in Redis listener for {self.channel}: {e}", exc_info=True)
        finally:
            if pubsub:
                try:
                    pubsub.close()
                except Exception as e:
                    logger.error(f"Error closing pub/sub for {self.channel}: {e}")
