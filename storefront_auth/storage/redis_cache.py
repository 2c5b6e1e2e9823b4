from __future__ import annotations

import asyncio
import json
from typing import Any, Awaitable, Callable, Dict, List, Optional

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from storefront_auth.logging import get_logger
from storefront_auth.storage.errors import StorageError

logger = get_logger(__name__)

MessageHandler = Callable[[Dict[str, Any]], Awaitable[None]]


class RedisKeyValueStore:
    """Key-value persistence shared by every instance pointed at the same Redis."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(
        self,
        redis_url: str | None = None,
        *,
        namespace: str = "storefront_auth",
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        client: Any = None,
    ):
        if client is None and redis_url is None:
            raise ValueError("redis_url or client is required")
        self.redis_url = redis_url
        self.namespace = namespace
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def _key(self, key: str) -> str:
        return f"{self.namespace}:kv:{key}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        if self.redis_url is None:
            return
        # Short-lived sync client so the async one is not bound to a temporary loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def get(self, key: str) -> Optional[str]:
        try:
            return await self.client.get(self._key(key))
        except RedisError as exc:
            raise StorageError("redis get failed", {"key": key, "error": str(exc)}) from exc

    async def set(self, key: str, value: str) -> None:
        try:
            await self.client.set(self._key(key), value)
        except RedisError as exc:
            raise StorageError("redis set failed", {"key": key, "error": str(exc)}) from exc

    async def set_many(self, values: Dict[str, str]) -> None:
        try:
            pipe = self.client.pipeline()
            for key, value in values.items():
                pipe.set(self._key(key), value)
            await pipe.execute()
        except RedisError as exc:
            raise StorageError(
                "redis set_many failed", {"keys": list(values), "error": str(exc)}
            ) from exc

    async def delete(self, *keys: str) -> None:
        if not keys:
            return
        try:
            await self.client.delete(*(self._key(k) for k in keys))
        except RedisError as exc:
            raise StorageError(
                "redis delete failed", {"keys": list(keys), "error": str(exc)}
            ) from exc

    async def close(self) -> None:
        """Close the Redis connection pool."""
        await self.client.aclose()


class RedisEventBus:
    """Cross-instance event bus over Redis pub/sub.

    Messages are JSON objects. Delivery is best effort: a subscriber that is
    not listening when a message is published never sees it.
    """

    def __init__(
        self,
        redis_url: str | None = None,
        *,
        namespace: str = "storefront_auth",
        client: Any = None,
    ):
        if client is None and redis_url is None:
            raise ValueError("redis_url or client is required")
        self.namespace = namespace
        self.client = client or aioredis.from_url(redis_url, decode_responses=True)
        self._handlers: Dict[str, List[MessageHandler]] = {}
        self._pubsub: Any = None
        self._listener: Optional[asyncio.Task] = None

    def _channel(self, channel: str) -> str:
        return f"{self.namespace}:events:{channel}"

    async def publish(self, channel: str, message: Dict[str, Any]) -> None:
        try:
            await self.client.publish(self._channel(channel), json.dumps(message))
        except RedisError as exc:
            # Pings are advisory; a lost one only delays convergence
            logger.warning("event_publish_failed", channel=channel, error=str(exc))

    async def subscribe(self, channel: str, handler: MessageHandler) -> Callable[[], None]:
        handlers = self._handlers.setdefault(channel, [])
        handlers.append(handler)
        if len(handlers) == 1:
            if self._pubsub is None:
                self._pubsub = self.client.pubsub()
            await self._pubsub.subscribe(self._channel(channel))
        if self._listener is None or self._listener.done():
            self._listener = asyncio.create_task(self._listen())

        def _unsubscribe() -> None:
            registered = self._handlers.get(channel, [])
            if handler in registered:
                registered.remove(handler)

        return _unsubscribe

    async def _listen(self) -> None:
        try:
            async for message in self._pubsub.listen():
                if message.get("type") != "message":
                    continue
                await self._dispatch(message.get("channel", ""), message.get("data"))
        except asyncio.CancelledError:
            raise
        except RedisError as exc:
            logger.error("event_listener_failed", error=str(exc))

    async def _dispatch(self, raw_channel: str, data: Any) -> None:
        prefix = f"{self.namespace}:events:"
        channel = raw_channel[len(prefix):] if raw_channel.startswith(prefix) else raw_channel
        try:
            payload = json.loads(data) if isinstance(data, str) else data
        except json.JSONDecodeError:
            logger.warning("event_payload_invalid", channel=channel)
            return
        if not isinstance(payload, dict):
            return
        for handler in list(self._handlers.get(channel, [])):
            try:
                await handler(payload)
            except Exception as exc:
                logger.error("event_handler_failed", channel=channel, error=str(exc))

    async def close(self) -> None:
        if self._listener:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
            self._listener = None
        if self._pubsub is not None:
            await self._pubsub.aclose()
            self._pubsub = None
        self._handlers.clear()
