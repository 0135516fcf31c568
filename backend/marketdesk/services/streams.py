"""Message streams - one interface over the two ticket conversation transports.

RestPollingStream reads the marketplace backend every poll interval.
ChatGatewayStream reads the hosted chat provider on the same interval and is
woken early by push events. A conversation uses exactly one of them, picked
by `settings.message_transport`.
"""

import asyncio
from dataclasses import dataclass, field
from typing import AsyncIterator

import pydantic
import structlog

from marketdesk.adapters.chat import ChatGateway, ticket_channel_id
from marketdesk.adapters.marketplace import MarketplaceClient
from marketdesk.api.health import POLL_REQUESTS, POLL_FAILURES
from marketdesk.config import Settings, settings as default_settings
from marketdesk.errors import MarketdeskError
from marketdesk.schemas.ticket import ChannelType, Message, MessageType, OutgoingMessage, SenderRole
from marketdesk.services.events import ChatEventBroker, broker as default_broker
from marketdesk.services.reconcile import visible_on_channel

logger = structlog.get_logger()


@dataclass
class PollResult:
    connected: bool
    messages: list[Message] = field(default_factory=list)
    error: str | None = None


class MessageStream:
    """Base stream: history, send and a subscription that pulls history on an interval."""

    transport = "base"

    def __init__(self, ticket_id: str, poll_interval: float = 3.0):
        self.ticket_id = ticket_id
        self.poll_interval = poll_interval
        self._closed = asyncio.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    async def history(self, channel: ChannelType) -> list[Message]:
        raise NotImplementedError

    async def send(self, draft: OutgoingMessage) -> Message | None:
        """Send a message. None when the transport accepted it without returning it."""
        raise NotImplementedError

    async def _wait(self, channel: ChannelType) -> None:
        try:
            await asyncio.wait_for(self._closed.wait(), timeout=self.poll_interval)
        except asyncio.TimeoutError:
            pass

    async def poll(self, channel: ChannelType) -> PollResult:
        """One history fetch, converted to a PollResult instead of raising."""
        POLL_REQUESTS.labels(transport=self.transport).inc()
        try:
            messages = await self.history(channel)
        except (MarketdeskError, pydantic.ValidationError) as e:
            POLL_FAILURES.labels(transport=self.transport).inc()
            logger.warning("ticket_poll_failed", ticket_id=self.ticket_id,
                           transport=self.transport, error=str(e))
            return PollResult(connected=False, error=str(e))
        return PollResult(connected=True, messages=messages)

    async def subscribe(self, channel: ChannelType) -> AsyncIterator[PollResult]:
        """Yield a PollResult per fetch until close(). Failed fetches do not stop the loop."""
        while not self.closed:
            result = await self.poll(channel)
            if self.closed:
                # Response landed after teardown
                break
            yield result
            await self._wait(channel)

    async def close(self) -> None:
        self._closed.set()


class RestPollingStream(MessageStream):
    transport = "rest"

    def __init__(self, client: MarketplaceClient, ticket_id: str, poll_interval: float = 3.0):
        super().__init__(ticket_id, poll_interval)
        self.client = client

    async def history(self, channel: ChannelType) -> list[Message]:
        return await self.client.get_messages(self.ticket_id, channel)

    async def send(self, draft: OutgoingMessage) -> Message | None:
        return await self.client.send_message(draft)


_ROLE_ALIASES = {"influencer": SenderRole.CREATOR.value}


def _role_from_user_id(user_id: str | None) -> str | None:
    """Provider user ids look like `agent_12` or `brand-7`."""
    if not user_id:
        return None
    prefix = user_id.replace("-", "_").split("_", 1)[0]
    prefix = _ROLE_ALIASES.get(prefix, prefix)
    return prefix if prefix in SenderRole._value2member_map_ else None


def chat_message_to_message(raw: dict, ticket_id: str) -> Message:
    """Convert a chat provider message into the ticket Message shape."""
    user = raw.get("user") or {}
    sender_id = raw.get("sender_id") or user.get("id")
    is_system = raw.get("type") == "system" or sender_id == "system"
    role = SenderRole.SYSTEM.value if is_system else (raw.get("sender_role") or _role_from_user_id(sender_id))
    return Message.model_validate({
        "id": raw.get("id") or "",
        "ticket_id": ticket_id,
        "sender_id": sender_id,
        "sender_role": role,
        "sender_name": user.get("name"),
        "channel_type": raw.get("channel_type"),
        "text": raw.get("text") or "",
        "message_type": MessageType.SYSTEM.value if is_system else MessageType.TEXT.value,
        "created_at": raw.get("created_at"),
        "client_id": raw.get("client_id"),
    })


class ChatGatewayStream(MessageStream):
    transport = "chat"

    def __init__(
        self,
        gateway: ChatGateway,
        ticket_id: str,
        poll_interval: float = 3.0,
        history_limit: int = 50,
        broker: ChatEventBroker | None = None,
    ):
        super().__init__(ticket_id, poll_interval)
        self.gateway = gateway
        self.history_limit = history_limit
        self.broker = broker or default_broker
        self.channel_id = ticket_channel_id(ticket_id)
        self._joined = False

    async def open(self) -> str:
        self.channel_id = await self.gateway.join_channel(self.ticket_id)
        self._joined = True
        return self.channel_id

    async def history(self, channel: ChannelType) -> list[Message]:
        raw = await self.gateway.get_messages(self.channel_id, limit=self.history_limit)
        messages = []
        for item in raw:
            try:
                messages.append(chat_message_to_message(item, self.ticket_id))
            except pydantic.ValidationError as e:
                logger.warning("chat_message_skipped", ticket_id=self.ticket_id,
                               message_id=item.get("id"), errors=e.error_count())
        # The provider channel holds both threads; narrow to the requested one
        return [m for m in messages if visible_on_channel(m, channel)]

    async def send(self, draft: OutgoingMessage) -> Message | None:
        raw = await self.gateway.send_message(
            self.channel_id, draft.text, draft.sender_role.value,
            extra={"channel_type": draft.channel_type.value, "client_id": draft.client_id},
        )
        if not raw.get("id"):
            logger.info("chat_message_sent_without_echo", ticket_id=self.ticket_id)
            return None
        message = chat_message_to_message(raw, self.ticket_id)
        return message.model_copy(update={
            "client_id": message.client_id or draft.client_id,
            "channel_type": message.channel_type or draft.channel_type,
            "sender_role": message.sender_role or draft.sender_role,
        })

    async def _wait(self, channel: ChannelType) -> None:
        pushed = asyncio.ensure_future(self.broker.wait(self.channel_id, self.poll_interval))
        closed = asyncio.ensure_future(self._closed.wait())
        done, pending = await asyncio.wait({pushed, closed}, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()

    async def close(self) -> None:
        await super().close()
        if self._joined:
            self._joined = False
            await self.gateway.leave_channel(self.ticket_id)


def create_message_stream(
    ticket_id: str,
    config: Settings | None = None,
    client: MarketplaceClient | None = None,
    gateway: ChatGateway | None = None,
    broker: ChatEventBroker | None = None,
) -> MessageStream:
    """Build the stream for the configured transport."""
    config = config or default_settings
    if config.message_transport == "chat":
        if gateway is None:
            raise ValueError("The chat transport needs a connected ChatGateway")
        return ChatGatewayStream(
            gateway, ticket_id,
            poll_interval=config.poll_interval_seconds,
            history_limit=config.history_limit,
            broker=broker,
        )
    if config.message_transport == "rest":
        if client is None:
            raise ValueError("The rest transport needs a MarketplaceClient")
        return RestPollingStream(client, ticket_id, poll_interval=config.poll_interval_seconds)
    raise ValueError(f"Unknown message transport: {config.message_transport}")
