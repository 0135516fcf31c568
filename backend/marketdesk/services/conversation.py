"""Ticket conversation controller - one channel of a ticket, kept in sync with the server."""

import asyncio
import time
from contextlib import aclosing
from typing import Callable

import pydantic
import structlog

from marketdesk.api.health import MESSAGES_SENT
from marketdesk.errors import MarketdeskError
from marketdesk.schemas.ticket import ChannelType, Message, OutgoingMessage, SenderRole
from marketdesk.services.notifications import Notifier
from marketdesk.services.reconcile import OptimisticTracker, ScrollState, reconcile
from marketdesk.services.streams import MessageStream, PollResult

logger = structlog.get_logger()


class TicketConversation:
    """Displayed message list for one ticket channel.

    Server history comes from the stream. Messages sent from here show up at
    once as optimistic entries and are swapped for the server copy when the
    send returns it. A returned copy stays in the view until a fetch that
    started after the send has completed, so the message never blinks out
    between the send response and the next poll.
    """

    def __init__(
        self,
        stream: MessageStream,
        notifier: Notifier | None = None,
        channel: ChannelType = ChannelType.BRAND_AGENT,
        sender_role: SenderRole = SenderRole.AGENT,
        sender_name: str | None = None,
        grace_seconds: float = 5.0,
        scroll_threshold_px: int = 100,
        clock=time.monotonic,
        on_update: Callable[[list[Message]], None] | None = None,
    ):
        self.stream = stream
        self.notifier = notifier or Notifier()
        self.channel = ChannelType(channel)
        self.sender_role = SenderRole(sender_role)
        self.sender_name = sender_name
        self.tracker = OptimisticTracker(grace_seconds=grace_seconds, clock=clock)
        self.scroll = ScrollState(threshold_px=scroll_threshold_px)
        self.on_update = on_update
        self.connected = True
        self.loaded = False
        self._server: list[Message] = []
        # message id -> (message, number of fetches started before the send returned)
        self._acknowledged: dict[str, tuple[Message, int]] = {}
        self._fetch_seq = 0
        self._closed = False

    @property
    def ticket_id(self) -> str:
        return self.stream.ticket_id

    @property
    def closed(self) -> bool:
        return self._closed

    def view(self) -> list[Message]:
        """Current display list for the active channel."""
        self.tracker.expire()
        server_ids = {m.id for m in self._server}
        acknowledged = [m for m, _ in self._acknowledged.values() if m.id not in server_ids]
        return reconcile(self._server + acknowledged, self.tracker.messages(), self.channel)

    def apply(self, result: PollResult, seq: int) -> None:
        """Fold one fetch result into the conversation. `seq` is the fetch's start number."""
        if self._closed:
            return
        if not result.connected:
            if self.connected:
                logger.warning("ticket_conversation_disconnected", ticket_id=self.ticket_id, error=result.error)
            self.connected = False
            return
        if not self.connected:
            logger.info("ticket_conversation_reconnected", ticket_id=self.ticket_id)
        self.connected = True
        self.loaded = True
        self._server = list(result.messages)
        self.tracker.observe(self._server)
        self._acknowledged = {
            message_id: (message, acked_at)
            for message_id, (message, acked_at) in self._acknowledged.items()
            if acked_at >= seq
        }

    def _start_fetch(self) -> int:
        self._fetch_seq += 1
        return self._fetch_seq

    def _notify(self) -> None:
        if self.on_update is not None:
            self.on_update(self.view())

    async def refresh(self) -> list[Message]:
        """Fetch history once and return the updated view."""
        seq = self._start_fetch()
        result = await self.stream.poll(self.channel)
        self.apply(result, seq)
        self._notify()
        return self.view()

    async def send(self, text: str) -> bool:
        """Send a message on the active channel. Failures become error notices, never exceptions."""
        if self._closed:
            return False
        try:
            draft = OutgoingMessage(
                ticket_id=self.ticket_id,
                text=text,
                sender_role=self.sender_role,
                channel_type=self.channel,
            )
        except pydantic.ValidationError:
            await self.notifier.error("Message cannot be empty", ticket_id=self.ticket_id)
            return False

        self.tracker.add(draft, sender_name=self.sender_name, known_ids={m.id for m in self._server})
        self._notify()

        try:
            confirmed = await self.stream.send(draft)
        except MarketdeskError as e:
            self.tracker.mark_failed(draft.client_id)
            MESSAGES_SENT.labels(transport=self.stream.transport, outcome="failed").inc()
            self._notify()
            await self.notifier.error("Failed to send message", ticket_id=self.ticket_id, error=str(e))
            return False

        self.tracker.mark_sent(draft.client_id)
        if confirmed is not None:
            self.tracker.observe([confirmed])
            self._acknowledged[confirmed.id] = (confirmed, self._fetch_seq)
        MESSAGES_SENT.labels(transport=self.stream.transport, outcome="sent").inc()
        logger.info("ticket_message_sent", ticket_id=self.ticket_id, channel=self.channel.value,
                    echoed=confirmed is not None)
        self._notify()
        await self.notifier.success("Message sent successfully")
        return True

    async def switch_channel(self, channel: ChannelType) -> list[Message]:
        """Move to the other conversation of the ticket and load it."""
        channel = ChannelType(channel)
        if channel != self.channel:
            self.channel = channel
            self._server = []
            self.loaded = False
            self.scroll = ScrollState(threshold_px=self.scroll.threshold_px)
        return await self.refresh()

    def update_scroll(self, scroll_top: float, scroll_height: float, client_height: float) -> bool:
        """True when the viewport should jump to the newest message."""
        return self.scroll.on_messages(self.view(), scroll_top, scroll_height, client_height)

    async def run(self, stop_event: asyncio.Event | None = None) -> None:
        """Follow the stream until close() or `stop_event`. A channel switch restarts the subscription."""
        watcher = asyncio.ensure_future(self._close_on(stop_event)) if stop_event is not None else None
        try:
            await self._follow()
        finally:
            if watcher is not None:
                watcher.cancel()

    async def _close_on(self, stop_event: asyncio.Event) -> None:
        await stop_event.wait()
        await self.close()

    async def _follow(self) -> None:
        while not self._closed:
            channel = self.channel
            seq = self._start_fetch()
            async with aclosing(self.stream.subscribe(channel)) as results:
                switched = False
                async for result in results:
                    if channel != self.channel:
                        switched = True
                        break
                    self.apply(result, seq)
                    self._notify()
                    seq = self._start_fetch()
            if not switched:
                break

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self.stream.close()
        except MarketdeskError as e:
            logger.warning("ticket_conversation_close_failed", ticket_id=self.ticket_id, error=str(e))
