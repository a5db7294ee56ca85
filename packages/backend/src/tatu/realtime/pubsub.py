"""Redis pub/sub — connection pool and the cross-process fan-out relay.

Learn: Presence and room membership live in each process's memory. With
more than one process, a message sent through process A must still
reach a recipient connected to process B. The relay solves that:

1. the gateway PUBLISHes every fan-out envelope on one channel
2. every process SUBSCRIBEs and performs local delivery

Redis pub/sub is fire-and-forget; a client that misses an event can
always re-fetch through get_conversations / get_messages.

Channel: tatu:realtime:fanout
"""

import asyncio
import json
from typing import Awaitable, Callable, Optional

import redis.asyncio as aioredis
import structlog

from tatu.config import settings

logger = structlog.get_logger()

FANOUT_CHANNEL = "tatu:realtime:fanout"

# Global Redis connection pool (initialized in lifespan)
_redis: Optional[aioredis.Redis] = None


async def init_redis() -> aioredis.Redis:
    """Initialize the Redis connection pool."""
    global _redis
    _redis = aioredis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
    )
    # Verify connection
    await _redis.ping()
    return _redis


async def close_redis() -> None:
    """Close the Redis connection pool."""
    global _redis
    if _redis:
        await _redis.aclose()
        _redis = None


def get_redis() -> aioredis.Redis:
    """Get the Redis connection (must be initialized first)."""
    if _redis is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return _redis


class RealtimeRelay:
    """Publishes fan-out envelopes and feeds received ones to local delivery.

    A dropped subscription is logged and re-established with capped
    exponential backoff; envelopes published while it is down are lost.
    """

    def __init__(
        self,
        redis: aioredis.Redis,
        deliver: Callable[[dict], Awaitable[None]],
        channel: str = FANOUT_CHANNEL,
        retry_delay: float = 1.0,
        max_retry_delay: float = 30.0,
    ):
        self.redis = redis
        self.deliver = deliver
        self.channel = channel
        self.retry_delay = retry_delay
        self.max_retry_delay = max_retry_delay
        self._pubsub = None
        self._task: Optional[asyncio.Task] = None

    async def publish(self, envelope: dict) -> None:
        await self.redis.publish(self.channel, json.dumps(envelope))

    async def start(self) -> None:
        await self._subscribe()
        self._task = asyncio.create_task(self._listen())
        logger.info("realtime.relay_started", channel=self.channel)

    async def _subscribe(self) -> None:
        self._pubsub = self.redis.pubsub()
        await self._pubsub.subscribe(self.channel)

    async def _listen(self) -> None:
        attempt = 0
        while True:
            try:
                if self._pubsub is None:
                    await self._subscribe()
                    logger.info("realtime.relay_resubscribed", channel=self.channel)
                async for message in self._pubsub.listen():
                    attempt = 0
                    await self._handle(message)
                # listen() only ends when the connection is gone
                raise ConnectionError("subscription ended")
            except asyncio.CancelledError:
                raise
            except Exception as e:
                delay = min(self.retry_delay * 2**attempt, self.max_retry_delay)
                attempt += 1
                logger.warning(
                    "realtime.relay_disconnected",
                    channel=self.channel,
                    error=str(e),
                    retry_in=delay,
                )
                await self._discard_pubsub()
                await asyncio.sleep(delay)

    async def _handle(self, message: dict) -> None:
        if message["type"] != "message":
            return
        try:
            envelope = json.loads(message["data"])
        except (TypeError, json.JSONDecodeError):
            logger.warning("realtime.relay_bad_envelope")
            return
        try:
            await self.deliver(envelope)
        except Exception:
            logger.exception("realtime.relay_delivery_failed", event_name=envelope.get("event"))

    async def _discard_pubsub(self) -> None:
        pubsub, self._pubsub = self._pubsub, None
        if pubsub is None:
            return
        try:
            await pubsub.aclose()
        except Exception as e:
            logger.debug("realtime.relay_close_failed", error=str(e))

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.warning("realtime.relay_listener_failed", error=str(e))
            self._task = None
        if self._pubsub:
            try:
                await self._pubsub.unsubscribe(self.channel)
            except Exception as e:
                logger.warning("realtime.relay_unsubscribe_failed", error=str(e))
            await self._discard_pubsub()
        logger.info("realtime.relay_stopped", channel=self.channel)
