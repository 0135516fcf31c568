"""Ticket and ticket message schemas."""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Any

from pydantic import BaseModel, Field, AliasChoices, field_validator, model_validator

# Client-generated ids for messages not yet confirmed by the server
OPTIMISTIC_PREFIX = "temp-"


class TicketStatus(str, Enum):
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"
    CLOSED = "closed"


class TicketPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class SenderRole(str, Enum):
    BRAND = "brand"
    CREATOR = "creator"
    AGENT = "agent"
    SYSTEM = "system"


class ChannelType(str, Enum):
    BRAND_AGENT = "brand_agent"
    CREATOR_AGENT = "creator_agent"


class MessageType(str, Enum):
    TEXT = "text"
    FILE = "file"
    SYSTEM = "system"


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes from the backend as UTC so they sort against aware ones."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _id_to_str(value: Any) -> Any:
    # Backend ids are BigInt and may arrive as numbers
    if value is None or isinstance(value, str):
        return value
    return str(value)


class Message(BaseModel):
    id: str
    ticket_id: Optional[str] = None
    sender_id: Optional[str] = None
    sender_role: Optional[SenderRole] = None
    sender_name: Optional[str] = None
    channel_type: Optional[ChannelType] = None
    text: str = Field("", validation_alias=AliasChoices("text", "message_text", "message"))
    message_type: MessageType = MessageType.TEXT
    file_url: Optional[str] = None
    file_name: Optional[str] = None
    created_at: Optional[datetime] = None
    timestamp: Optional[datetime] = None
    client_id: Optional[str] = None

    model_config = {"populate_by_name": True}

    @model_validator(mode="before")
    @classmethod
    def _legacy_sender(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        sender = data.get("sender")
        if isinstance(sender, dict):
            # {name, user_type} as attached by the CRM message handlers
            user_type = sender.get("user_type")
            role = "creator" if user_type == "influencer" else user_type
            if not data.get("sender_role") and isinstance(role, str) and role in SenderRole._value2member_map_:
                data = {**data, "sender_role": role}
            if not data.get("sender_name") and sender.get("name"):
                data = {**data, "sender_name": sender["name"]}
        elif not data.get("sender_role") and isinstance(sender, str) and sender in SenderRole._value2member_map_:
            data = {**data, "sender_role": sender}
        return data

    @field_validator("id", "ticket_id", "sender_id", mode="before")
    @classmethod
    def _coerce_ids(cls, value: Any) -> Any:
        return _id_to_str(value)

    @field_validator("created_at", "timestamp")
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value)

    @property
    def effective_channel(self) -> ChannelType:
        """Messages without a channel tag predate the split and belong to the brand thread."""
        return self.channel_type or ChannelType.BRAND_AGENT

    @property
    def is_optimistic(self) -> bool:
        return self.id.startswith(OPTIMISTIC_PREFIX)


class OutgoingMessage(BaseModel):
    """A message the local user is about to send."""
    ticket_id: str
    text: str = Field(..., min_length=1, max_length=5000)
    sender_role: SenderRole = SenderRole.AGENT
    channel_type: ChannelType = ChannelType.BRAND_AGENT
    message_type: MessageType = MessageType.TEXT
    client_id: str = Field(default_factory=lambda: uuid.uuid4().hex)

    @field_validator("text")
    @classmethod
    def _strip(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Message text must not be blank")
        return value

    def to_payload(self) -> dict:
        """Request body for POST /crm/tickets/:id/messages."""
        return {
            "message_text": self.text,
            "message": self.text,  # legacy field still read by older handlers
            "message_type": self.message_type.value,
            "sender_role": self.sender_role.value,
            "channel_type": self.channel_type.value,
            "client_id": self.client_id,
        }


class Ticket(BaseModel):
    id: str
    order_id: Optional[str] = None
    agent_id: Optional[str] = None
    stream_channel_id: Optional[str] = None
    status: TicketStatus = TicketStatus.OPEN
    priority: TicketPriority = TicketPriority.MEDIUM
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    order: Optional[dict] = None
    agent: Optional[dict] = None

    @field_validator("id", "order_id", "agent_id", mode="before")
    @classmethod
    def _coerce_ids(cls, value: Any) -> Any:
        return _id_to_str(value)
