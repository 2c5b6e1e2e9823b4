from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Protocol, Set

from storefront_auth.logging import get_logger

logger = get_logger(__name__)

MessageHandler = Callable[[Dict[str, Any]], Awaitable[None]]

# Channels for cross-instance pings
TOKENS_UPDATED_CHANNEL = "secure_tokens_updated"
TOKENS_CLEARED_CHANNEL = "token_clear_event"


class EventBus(Protocol):
    async def publish(self, channel: str, message: Dict[str, Any]) -> None:
        ...

    async def subscribe(self, channel: str, handler: MessageHandler) -> Callable[[], None]:
        ...

    async def close(self) -> None:
        ...


class InMemoryEventBus:
    """Process-local bus shared by instances in the same event loop.

    Handlers run as separate tasks so a publisher never re-enters a
    subscriber synchronously. ``drain()`` waits for in-flight deliveries.
    """

    def __init__(self) -> None:
        self._handlers: Dict[str, List[MessageHandler]] = {}
        self._pending: Set[asyncio.Task] = set()

    async def publish(self, channel: str, message: Dict[str, Any]) -> None:
        for handler in list(self._handlers.get(channel, [])):
            task = asyncio.create_task(self._deliver(channel, handler, dict(message)))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

    async def _deliver(self, channel: str, handler: MessageHandler, message: Dict[str, Any]) -> None:
        try:
            await handler(message)
        except Exception as exc:
            logger.error("event_handler_failed", channel=channel, error=str(exc))

    async def subscribe(self, channel: str, handler: MessageHandler) -> Callable[[], None]:
        self._handlers.setdefault(channel, []).append(handler)

        def _unsubscribe() -> None:
            registered = self._handlers.get(channel, [])
            if handler in registered:
                registered.remove(handler)

        return _unsubscribe

    async def drain(self) -> None:
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def close(self) -> None:
        await self.drain()
        self._handlers.clear()
