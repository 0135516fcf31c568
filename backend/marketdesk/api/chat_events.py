"""Chat provider push webhook - wakes the streams watching the affected channel."""

import structlog
from fastapi import APIRouter, Depends, HTTPException
from pydantic import ValidationError

from marketdesk.api.health import CHAT_EVENTS, ERRORS
from marketdesk.middleware.auth import verify_chat_signature
from marketdesk.schemas.chat import ChatEvent, ChatEventAck
from marketdesk.services.events import broker

logger = structlog.get_logger()
router = APIRouter(prefix="/webhooks", tags=["webhooks"])

# Event types that change what a channel's history returns
HISTORY_EVENTS = ("message.new", "message.updated", "message.deleted")


@router.post("/chat", response_model=ChatEventAck)
async def receive_chat_event(body: bytes = Depends(verify_chat_signature)):
    """Accept a signed push event and wake any stream polling that channel."""
    try:
        event = ChatEvent.model_validate_json(body)
    except ValidationError as e:
        ERRORS.labels(type="chat_event_invalid").inc()
        logger.warning("chat_event_invalid", error=str(e))
        raise HTTPException(status_code=422, detail="Invalid chat event payload")

    CHAT_EVENTS.labels(type=event.type).inc()
    channel_id = event.target_channel
    delivered = 0
    if channel_id and event.type in HISTORY_EVENTS:
        delivered = broker.publish(channel_id)

    logger.info("chat_event_received", type=event.type, channel_id=channel_id, delivered=delivered)
    return ChatEventAck(ok=True, delivered=delivered)
