"""Hosted chat provider payloads."""

from typing import Optional

from pydantic import BaseModel, Field, AliasChoices


class ChatToken(BaseModel):
    """Credentials handed out by GET /chat/token."""
    token: str
    user_id: str = Field(..., validation_alias=AliasChoices("user_id", "userId"))
    api_key: Optional[str] = Field(None, validation_alias=AliasChoices("api_key", "apiKey"))


class ChatEvent(BaseModel):
    """Push event delivered by the chat provider's webhook."""
    type: str
    cid: Optional[str] = None
    channel_id: Optional[str] = None
    channel_type: Optional[str] = None
    message: Optional[dict] = None
    created_at: Optional[str] = None

    @property
    def target_channel(self) -> Optional[str]:
        if self.channel_id:
            return self.channel_id
        if self.cid and ":" in self.cid:
            return self.cid.split(":", 1)[1]
        return self.cid


class ChatEventAck(BaseModel):
    ok: bool
    delivered: int
