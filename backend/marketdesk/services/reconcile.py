"""Ticket message reconciliation - merge polled history with optimistic sends.

A ticket carries two conversations (brand <-> agent, creator <-> agent) told
apart only by the message channel tag. The displayed list for one channel is
the server history plus any locally sent messages the server has not
confirmed yet, de-duplicated and ordered by time.
"""

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum

import structlog

from marketdesk.schemas.ticket import (
    OPTIMISTIC_PREFIX, ChannelType, Message, OutgoingMessage, SenderRole,
)

logger = structlog.get_logger()

def effective_timestamp(message: Message, now: datetime | None = None) -> datetime:
    """created_at, else timestamp, else the current time."""
    if message.created_at is not None:
        return message.created_at
    if message.timestamp is not None:
        return message.timestamp
    return now or datetime.now(timezone.utc)


def visible_on_channel(message: Message, channel: ChannelType) -> bool:
    role = message.sender_role
    if role == SenderRole.SYSTEM:
        return True
    if role == SenderRole.BRAND:
        return channel == ChannelType.BRAND_AGENT
    if role == SenderRole.CREATOR:
        return channel == ChannelType.CREATOR_AGENT
    return message.effective_channel == channel


def reconcile(
    server_messages: list[Message],
    optimistic_messages: list[Message],
    channel: ChannelType,
    now: datetime | None = None,
) -> list[Message]:
    """Build the display list for one channel.

    Server copies win over optimistic ones with the same id, and an optimistic
    message whose correlation id the server has echoed is dropped.
    """
    now = now or datetime.now(timezone.utc)
    echoed = {m.client_id for m in server_messages if m.client_id}
    seen: set[str] = set()
    merged: list[Message] = []

    for message in server_messages:
        if message.id in seen:
            continue
        seen.add(message.id)
        merged.append(message)

    for message in optimistic_messages:
        if message.id in seen or (message.client_id and message.client_id in echoed):
            continue
        seen.add(message.id)
        merged.append(message)

    # sorted() is stable, so messages without timestamps keep arrival order
    merged = sorted(merged, key=lambda m: effective_timestamp(m, now))
    return [m for m in merged if visible_on_channel(m, channel)]


class OptimisticState(str, Enum):
    PENDING = "pending"  # shown, send in flight
    SENT = "sent"  # send succeeded, waiting for the echo in history


@dataclass
class _Entry:
    message: Message
    state: OptimisticState = OptimisticState.PENDING
    sent_at: float | None = None
    # Server ids already displayed when the message was queued; never an echo
    baseline: frozenset[str] = frozenset()


class OptimisticTracker:
    """Tracks locally sent messages until the server history confirms them.

    An entry leaves the tracker when a server message echoes its correlation
    id. Backends that do not echo are matched by content instead: only after
    the send succeeded, only against a server message with the same role,
    channel and text that was not yet displayed when the entry was queued and
    not created before it. The grace timer after a successful send is only a
    safety net for echoes that never show up.
    """

    def __init__(self, grace_seconds: float = 5.0, clock=time.monotonic):
        self.grace_seconds = grace_seconds
        self._clock = clock
        self._entries: dict[str, _Entry] = {}
        # Server ids that already confirmed an entry by content
        self._claimed: set[str] = set()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, client_id: str) -> bool:
        return client_id in self._entries

    def add(self, draft: OutgoingMessage, sender_name: str | None = None, known_ids=()) -> Message:
        """Queue a local message. `known_ids` are the server ids displayed right now."""
        now = datetime.now(timezone.utc)
        message = Message(
            id=f"{OPTIMISTIC_PREFIX}{draft.client_id}",
            ticket_id=draft.ticket_id,
            sender_role=draft.sender_role,
            sender_name=sender_name,
            channel_type=draft.channel_type,
            text=draft.text,
            message_type=draft.message_type,
            created_at=now,
            timestamp=now,
            client_id=draft.client_id,
        )
        self._entries[draft.client_id] = _Entry(message=message, baseline=frozenset(known_ids))
        return message

    def mark_sent(self, client_id: str) -> None:
        entry = self._entries.get(client_id)
        if entry is not None:
            entry.state = OptimisticState.SENT
            entry.sent_at = self._clock()

    def mark_failed(self, client_id: str) -> Message | None:
        entry = self._entries.pop(client_id, None)
        return entry.message if entry else None

    def state(self, client_id: str) -> OptimisticState | None:
        entry = self._entries.get(client_id)
        return entry.state if entry else None

    def observe(self, server_messages: list[Message]) -> list[str]:
        """Drop every entry confirmed by the given server history. Returns confirmed client ids."""
        confirmed: list[str] = []
        echoed = {m.client_id for m in server_messages if m.client_id}

        for client_id, entry in list(self._entries.items()):
            if client_id in echoed:
                confirmed.append(client_id)
                continue
            if entry.state != OptimisticState.SENT:
                continue
            match = self._content_match(entry, server_messages)
            if match is not None:
                self._claimed.add(match.id)
                confirmed.append(client_id)

        for client_id in confirmed:
            del self._entries[client_id]
        return confirmed

    def _content_match(self, entry: _Entry, server_messages: list[Message]) -> Message | None:
        local = entry.message
        for candidate in server_messages:
            if (candidate.id in self._claimed or candidate.id in entry.baseline
                    or candidate.is_optimistic or candidate.client_id):
                continue
            if (candidate.sender_role == local.sender_role
                    and candidate.effective_channel == local.effective_channel
                    and candidate.text == local.text):
                stamp = candidate.created_at or candidate.timestamp
                if stamp is None or local.created_at is None or stamp >= local.created_at:
                    return candidate
        return None

    def expire(self) -> list[Message]:
        """Safety net: drop sent entries whose echo has not appeared within the grace period."""
        now = self._clock()
        expired = [
            client_id for client_id, entry in self._entries.items()
            if entry.state == OptimisticState.SENT
            and entry.sent_at is not None
            and now - entry.sent_at >= self.grace_seconds
        ]
        removed = [self._entries.pop(client_id).message for client_id in expired]
        if removed:
            logger.warning("optimistic_messages_expired_unconfirmed", count=len(removed))
        return removed

    def messages(self) -> list[Message]:
        return [entry.message for entry in self._entries.values()]


@dataclass
class ScrollState:
    """Auto-scroll vs. "new messages" indicator for a message list viewport."""
    threshold_px: int = 100
    last_message_id: str | None = None
    has_new_messages: bool = False

    def is_near_bottom(self, scroll_top: float, scroll_height: float, client_height: float) -> bool:
        return scroll_top + client_height >= scroll_height - self.threshold_px

    def on_messages(
        self,
        messages: list[Message],
        scroll_top: float,
        scroll_height: float,
        client_height: float,
    ) -> bool:
        """Record the newest message; returns True when the viewport should jump to the bottom."""
        if not messages or messages[-1].id == self.last_message_id:
            return False
        self.last_message_id = messages[-1].id
        if self.is_near_bottom(scroll_top, scroll_height, client_height):
            self.has_new_messages = False
            return True
        self.has_new_messages = True
        return False

    def scrolled_to_bottom(self) -> None:
        self.has_new_messages = False
