"""In-process fan-out of chat provider push events to waiting message streams."""

import asyncio
from collections import defaultdict

import structlog

logger = structlog.get_logger()


class ChatEventBroker:
    """Wakes streams watching a channel when the provider reports activity on it."""

    def __init__(self):
        self._waiters: dict[str, set[asyncio.Event]] = defaultdict(set)

    def publish(self, channel_id: str) -> int:
        """Wake every waiter on the channel. Returns how many were woken."""
        waiters = self._waiters.get(channel_id, set())
        for event in waiters:
            event.set()
        if waiters:
            logger.debug("chat_event_delivered", channel_id=channel_id, waiters=len(waiters))
        return len(waiters)

    def watching(self, channel_id: str) -> int:
        return len(self._waiters.get(channel_id, ()))

    async def wait(self, channel_id: str, timeout: float) -> bool:
        """Block until the channel is published or the timeout passes. True when woken by an event."""
        event = asyncio.Event()
        self._waiters[channel_id].add(event)
        try:
            await asyncio.wait_for(event.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False
        finally:
            self._waiters[channel_id].discard(event)
            if not self._waiters[channel_id]:
                del self._waiters[channel_id]


broker = ChatEventBroker()
