"""Webhook authentication - HMAC signature check for chat provider push events."""

import hashlib
import hmac

from fastapi import HTTPException, Header, Request

from marketdesk.config import settings


def sign_chat_payload(body: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of the raw request body, as the chat provider sends it."""
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


async def verify_chat_signature(
    request: Request,
    x_signature: str = Header(None, description="HMAC-SHA256 of the body, keyed with the chat API secret"),
) -> bytes:
    """Check the X-Signature header against the raw body. Returns the body."""
    if not settings.chat_api_secret:
        raise HTTPException(status_code=503, detail="Chat webhook not configured")
    if not x_signature:
        raise HTTPException(status_code=401, detail="X-Signature header required")
    body = await request.body()
    expected = sign_chat_payload(body, settings.chat_api_secret)
    if not hmac.compare_digest(expected, x_signature.strip().lower()):
        raise HTTPException(status_code=401, detail="Invalid signature")
    return body
