"""
Redis pub/sub event channel for chat sessions.

One shared broadcast channel carries every event as a JSON envelope; each
connection also listens on its own user channel. Echoes of a connection's
own emissions are dropped, other sessions of the same user still get them.

Presence is a Redis hash of open connections per user id. A user is announced
online on their first connection and offline when their last one closes.
"""

import asyncio
import inspect
import logging
import uuid
from collections import defaultdict
from contextlib import suppress
from typing import Any, Callable, Optional

import redis
import redis.asyncio as aioredis

from DonationChat.chat_shared import config
from DonationChat.chat_shared.errors import ChannelUnavailableError
from DonationChat.chat.protocol import (
    EVENT_JOIN,
    EVENT_PRESENCE_SNAPSHOT,
    EVENT_USER_CONNECTED,
    EVENT_USER_DISCONNECTED,
    deserialize_envelope,
    serialize_envelope,
    user_channel,
)

logger = logging.getLogger(__name__)

Handler = Callable[[dict], Any]

_REDIS_ERRORS = (redis.exceptions.ConnectionError, redis.exceptions.TimeoutError, OSError)


class ChannelClient:
    """Bidirectional event channel keyed by user id."""

    def __init__(self, redis_client: Optional[aioredis.Redis] = None):
        if redis_client is not None:
            self._redis = redis_client
        else:
            self._redis = aioredis.Redis(
                host=config.REDIS_HOST,
                port=config.REDIS_PORT,
                db=config.REDIS_CHANNEL_DB,
                decode_responses=True,
                socket_connect_timeout=config.REDIS_SOCKET_TIMEOUT,
            )
        self.connection_id = str(uuid.uuid4())
        self.user_id: Optional[str] = None
        self._pubsub = None
        self._listener: Optional[asyncio.Task] = None
        self._handlers: dict[str, list[Handler]] = defaultdict(list)

    @property
    def connected(self) -> bool:
        return self._pubsub is not None

    # ─── Handlers ───

    def on(self, event: str, handler: Handler) -> None:
        self._handlers[event].append(handler)

    def off(self, event: str, handler: Optional[Handler] = None) -> None:
        """Unregister one handler, or every handler for the event."""
        if handler is None:
            self._handlers.pop(event, None)
            return
        handlers = self._handlers.get(event, [])
        if handler in handlers:
            handlers.remove(handler)

    def handler_count(self, event: Optional[str] = None) -> int:
        if event is not None:
            return len(self._handlers.get(event, []))
        return sum(len(h) for h in self._handlers.values())

    # ─── Lifecycle ───

    async def connect(self, user_id: str) -> None:
        if self.connected:
            if self.user_id == user_id:
                return
            await self.disconnect()

        pubsub = self._redis.pubsub()
        try:
            await pubsub.subscribe(config.EVENTS_CHANNEL, user_channel(user_id))
            open_count = await self._redis.hincrby(config.PRESENCE_KEY, user_id, 1)
            online = await self._redis.hgetall(config.PRESENCE_KEY)
        except _REDIS_ERRORS as e:
            with suppress(*_REDIS_ERRORS):
                await pubsub.aclose()
            raise ChannelUnavailableError(f"connect as {user_id}: {e}")

        self._pubsub = pubsub
        self.user_id = user_id
        self._listener = asyncio.create_task(self._listen())

        snapshot = sorted(
            _text(uid) for uid, count in online.items() if int(count) > 0
        )
        await self._dispatch(EVENT_PRESENCE_SNAPSHOT, {"onlineUserIds": snapshot})

        if open_count == 1:
            await self._publish(EVENT_USER_CONNECTED, {"userId": user_id})
        await self._publish(EVENT_JOIN, {"userId": user_id})

    async def emit(self, event: str, payload: dict) -> None:
        if not self.connected:
            raise ChannelUnavailableError("not connected")
        await self._publish(event, payload)

    async def disconnect(self) -> None:
        if not self.connected:
            return

        listener, self._listener = self._listener, None
        if listener is not None:
            listener.cancel()
            with suppress(asyncio.CancelledError):
                await listener
        await self._release()

    async def close(self) -> None:
        """Disconnect and close the underlying Redis connection."""
        await self.disconnect()
        await self._redis.aclose()

    # ─── Internals ───

    async def _release(self) -> None:
        """Drop this connection's presence count and close its pubsub."""
        user_id = self.user_id
        pubsub, self._pubsub = self._pubsub, None
        try:
            remaining = await self._redis.hincrby(config.PRESENCE_KEY, user_id, -1)
            if remaining <= 0:
                await self._redis.hdel(config.PRESENCE_KEY, user_id)
                await self._redis.publish(
                    config.EVENTS_CHANNEL,
                    serialize_envelope(
                        EVENT_USER_DISCONNECTED, {"userId": user_id},
                        self.connection_id, user_id,
                    ),
                )
            await pubsub.unsubscribe()
        except _REDIS_ERRORS as e:
            logger.warning("channel teardown for %s incomplete: %s", user_id, e)
        finally:
            self.user_id = None
            with suppress(*_REDIS_ERRORS):
                await pubsub.aclose()

    async def _publish(self, event: str, payload: dict) -> None:
        data = serialize_envelope(event, payload, self.connection_id, self.user_id)
        try:
            await self._redis.publish(config.EVENTS_CHANNEL, data)
        except _REDIS_ERRORS as e:
            raise ChannelUnavailableError(f"emit {event}: {e}")

    async def _listen(self) -> None:
        pubsub = self._pubsub
        while True:
            try:
                raw = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
            except _REDIS_ERRORS as e:
                logger.warning("channel listener stopped, connection dropped: %s", e)
                # connected goes False so the next poll tick reconnects
                self._listener = None
                await self._release()
                return
            if raw is None or raw.get("type") != "message":
                await asyncio.sleep(0)
                continue

            try:
                envelope = deserialize_envelope(raw["data"])
            except (ValueError, KeyError, TypeError) as e:
                logger.warning("dropping malformed channel event: %s", e)
                continue

            if envelope.origin == self.connection_id:
                continue
            await self._dispatch(envelope.event, envelope.payload)

    async def _dispatch(self, event: str, payload: dict) -> None:
        for handler in list(self._handlers.get(event, ())):
            try:
                result = handler(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("handler for %s failed", event)


def _text(value) -> str:
    return value.decode() if isinstance(value, bytes) else str(value)
