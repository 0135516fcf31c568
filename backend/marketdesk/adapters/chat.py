"""Chat gateway adapter - hosted real-time chat provider over its REST API.

Thin pass-through: no retry, no backoff and no offline queue. Every failure is
raised to the caller as ChatGatewayError.
"""

import httpx
import structlog

from marketdesk.config import Settings, settings as default_settings
from marketdesk.errors import ChatGatewayError

logger = structlog.get_logger()

CHANNEL_TYPE = "messaging"
MESSAGE_CUSTOM_TYPE = "agent_message"
ROLE_PREFIXES = ("agent", "brand", "creator", "influencer")


def ticket_channel_id(ticket_id: str) -> str:
    return f"ticket_{ticket_id}"


def bare_user_id(user_id: str) -> str:
    """Strip a provider role prefix: `agent-123` and `agent_123` both become `123`."""
    for prefix in ROLE_PREFIXES:
        for sep in ("-", "_"):
            if user_id.startswith(prefix + sep) and len(user_id) > len(prefix) + 1:
                return user_id[len(prefix) + 1:]
    return user_id


class ChatGateway:
    """Adapter for the hosted chat provider, scoped to one connected user."""

    def __init__(
        self,
        config: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        config = config or default_settings
        self.base_url = config.chat_base_url.rstrip("/")
        self.api_key = config.chat_api_key
        self.timeout = config.chat_timeout
        self._transport = transport
        self._user_id: str | None = None
        self._token: str | None = None

    @property
    def user_id(self) -> str | None:
        return self._user_id

    @property
    def is_connected(self) -> bool:
        return bool(self._user_id and self._token)

    def connect_user(self, user_id: str, token: str) -> None:
        """Bind the provider user and token used by every later call."""
        if not user_id or not token:
            raise ChatGatewayError("connect_user requires a user id and token")
        self._user_id = user_id
        self._token = token
        logger.info("chat_user_connected", user_id=user_id)

    def disconnect_user(self) -> None:
        if self._user_id:
            logger.info("chat_user_disconnected", user_id=self._user_id)
        self._user_id = None
        self._token = None

    async def _call(self, method: str, path: str, json: dict | None = None) -> dict:
        if not self.is_connected:
            raise ChatGatewayError("Chat user is not connected")
        headers = {
            "Authorization": self._token,
            "Stream-Auth-Type": "jwt",
            "Content-Type": "application/json",
        }
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url, timeout=self.timeout, transport=self._transport,
            ) as client:
                resp = await client.request(
                    method, path, headers=headers, params={"api_key": self.api_key}, json=json,
                )
                resp.raise_for_status()
                return resp.json()
        except httpx.HTTPStatusError as e:
            logger.error("chat_request_failed", path=path, status=e.response.status_code)
            raise ChatGatewayError(f"Chat provider returned {e.response.status_code}",
                                   e.response.status_code) from e
        except (httpx.HTTPError, ValueError) as e:
            logger.error("chat_request_failed", path=path, error=str(e))
            raise ChatGatewayError(str(e)) from e

    async def join_channel(self, ticket_id: str) -> str:
        """Watch the ticket's channel and return its id."""
        channel_id = ticket_channel_id(ticket_id)
        await self._call(
            "POST", f"/channels/{CHANNEL_TYPE}/{channel_id}/query",
            json={"watch": True, "state": True, "messages": {"limit": 0}},
        )
        logger.info("chat_channel_joined", channel_id=channel_id, user_id=self._user_id)
        return channel_id

    async def leave_channel(self, ticket_id: str) -> None:
        channel_id = ticket_channel_id(ticket_id)
        await self._call("POST", f"/channels/{CHANNEL_TYPE}/{channel_id}/stop-watching", json={})
        logger.info("chat_channel_left", channel_id=channel_id)

    async def send_message(self, channel_id: str, text: str, role: str, extra: dict | None = None) -> dict:
        """Send a message tagged with the composite `<role>_<userId>` sender id."""
        sender_id = f"{role}_{bare_user_id(self._user_id)}"
        message = {
            "text": text,
            "user_id": sender_id,
            "customType": MESSAGE_CUSTOM_TYPE,
            "sender_role": role,
            "sender_id": sender_id,
            **(extra or {}),
        }
        data = await self._call("POST", f"/channels/{CHANNEL_TYPE}/{channel_id}/message",
                                json={"message": message})
        return data.get("message") or {}

    async def get_messages(self, channel_id: str, limit: int = 50) -> list[dict]:
        data = await self._call(
            "POST", f"/channels/{CHANNEL_TYPE}/{channel_id}/query",
            json={"state": True, "messages": {"limit": limit}},
        )
        return data.get("messages") or []

    async def get_user_channels(self, limit: int = 50) -> list[dict]:
        data = await self._call(
            "POST", "/channels",
            json={
                "filter_conditions": {"members": {"$in": [self._user_id]}},
                "sort": [{"field": "last_message_at", "direction": -1}],
                "limit": limit,
                "state": True,
            },
        )
        return data.get("channels") or []
