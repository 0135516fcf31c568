"""Marketplace REST adapter - typed calls for tickets, orders, agents, profiles and chat tokens."""

from typing import Any

import httpx
import pydantic
import structlog

from marketdesk.config import Settings, settings as default_settings
from marketdesk.errors import ApiError, AuthenticationError, ConflictError
from marketdesk.schemas.chat import ChatToken
from marketdesk.schemas.common import Agent, Package, Profile, TicketPage
from marketdesk.schemas.order import Deliverable, Order, OrderStatus
from marketdesk.schemas.ticket import (
    ChannelType, Message, OutgoingMessage, Ticket, TicketPriority, TicketStatus,
)
from marketdesk.services.session import Session

logger = structlog.get_logger()


def _extract(payload: Any, key: str) -> Any:
    """Find `key` in the response envelope; some handlers put it beside `data`."""
    if not isinstance(payload, dict):
        return None
    data = payload.get("data")
    if isinstance(data, dict) and key in data:
        return data[key]
    if key in payload:
        return payload[key]
    return data


def _parse(model, raw: Any, entity: str):
    """Validate one entity from a response body; a malformed body is an ApiError."""
    try:
        return model.model_validate(raw)
    except pydantic.ValidationError as e:
        logger.error("marketplace_response_invalid", entity=entity, errors=e.error_count())
        raise ApiError(f"Malformed {entity} in response") from e


def _parse_optional(model, raw: Any, entity: str):
    """Mutation responses may omit the entity; None tells the caller to refetch."""
    if not isinstance(raw, dict) or not raw:
        return None
    return _parse(model, raw, entity)


def _parse_list(model, items: Any, entity: str) -> list:
    """Validate a list of entities, skipping the ones that do not parse."""
    if not isinstance(items, list):
        return []
    parsed = []
    for item in items:
        try:
            parsed.append(model.model_validate(item))
        except pydantic.ValidationError as e:
            item_id = item.get("id") if isinstance(item, dict) else None
            logger.warning("marketplace_item_skipped", entity=entity, item_id=item_id, errors=e.error_count())
    return parsed


class MarketplaceClient:
    """Adapter for the marketplace backend. Every call carries the session's bearer token."""

    def __init__(
        self,
        session: Session,
        config: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        config = config or default_settings
        self.session = session
        self.base_url = config.api_base_url.rstrip("/")
        self.timeout = config.request_timeout
        self._transport = transport

    async def _request(self, method: str, path: str, **kwargs) -> dict:
        headers = {"Content-Type": "application/json", **self.session.auth_headers()}
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url, timeout=self.timeout, transport=self._transport,
            ) as client:
                resp = await client.request(method, path, headers=headers, **kwargs)
        except httpx.HTTPError as e:
            logger.error("marketplace_request_failed", method=method, path=path, error=str(e))
            raise ApiError(f"Network error: {e}") from e

        try:
            payload = resp.json()
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {"data": payload}

        if resp.status_code == 401:
            self.session.handle_unauthorized()
            raise AuthenticationError("Authentication required", 401, payload)

        message = payload.get("message") or payload.get("error") or resp.reason_phrase
        if resp.status_code in (404, 409) and method != "GET":
            logger.warning("marketplace_state_conflict", method=method, path=path,
                           status=resp.status_code, message=message)
            raise ConflictError(message, resp.status_code, payload)
        if resp.status_code >= 400:
            logger.error("marketplace_request_rejected", method=method, path=path,
                         status=resp.status_code, message=message)
            raise ApiError(message, resp.status_code, payload)
        if payload.get("success") is False:
            raise ApiError(message or "Request failed", resp.status_code, payload)
        return payload

    # --- Auth ---

    async def agent_login(self, email: str, password: str) -> str:
        """Log an agent in and store the returned token in the session."""
        payload = await self._request("POST", "/auth/agent-login", json={"email": email, "password": password})
        token = _extract(payload, "token")
        if not isinstance(token, str) or not token:
            raise ApiError("Login response did not include a token")
        self.session.login(token)
        return token

    async def me(self) -> Profile:
        payload = await self._request("GET", "/auth/me")
        return _parse(Profile, _extract(payload, "user"), "profile")

    async def get_profile(self) -> Profile:
        payload = await self._request("GET", "/profile")
        return _parse(Profile, _extract(payload, "profile"), "profile")

    # --- Tickets ---

    async def list_tickets(self, status: TicketStatus | None = None, limit: int = 50, offset: int = 0) -> TicketPage:
        params: dict = {"limit": limit, "offset": offset}
        if status:
            params["status"] = TicketStatus(status).value
        payload = await self._request("GET", "/crm/tickets", params=params)
        data = payload.get("data") or {}
        tickets = _parse_list(Ticket, data.get("tickets"), "ticket")
        return TicketPage(
            tickets=tickets,
            total=int(data.get("total", len(tickets))),
            limit=int(data.get("limit", limit)),
            offset=int(data.get("offset", offset)),
        )

    async def get_ticket(self, ticket_id: str) -> Ticket:
        payload = await self._request("GET", f"/crm/tickets/{ticket_id}")
        return _parse(Ticket, _extract(payload, "ticket"), "ticket")

    async def get_ticket_by_order(self, order_id: str) -> Ticket:
        payload = await self._request("GET", f"/crm/tickets/order/{order_id}")
        return _parse(Ticket, _extract(payload, "ticket"), "ticket")

    async def get_messages(self, ticket_id: str, channel_type: ChannelType | None = None) -> list[Message]:
        params = {"channelType": ChannelType(channel_type).value} if channel_type else None
        payload = await self._request("GET", f"/crm/tickets/{ticket_id}/messages", params=params)
        return _parse_list(Message, _extract(payload, "messages"), "message")

    async def send_message(self, draft: OutgoingMessage) -> Message | None:
        """Send a ticket message. None when the backend accepted it without echoing it back."""
        payload = await self._request("POST", f"/crm/tickets/{draft.ticket_id}/messages", json=draft.to_payload())
        raw = _extract(payload, "message")
        if not isinstance(raw, dict) or raw.get("id") is None:
            logger.info("ticket_message_sent_without_echo", ticket_id=draft.ticket_id)
            return None
        message = _parse(Message, raw, "message")
        # Keep the correlation id even when the backend does not echo it
        updates = {"client_id": message.client_id or draft.client_id}
        if message.channel_type is None:
            updates["channel_type"] = draft.channel_type
        if message.sender_role is None:
            updates["sender_role"] = draft.sender_role
        return message.model_copy(update=updates)

    async def update_ticket_status(self, ticket_id: str, status: TicketStatus) -> Ticket | None:
        payload = await self._request("PUT", f"/crm/tickets/{ticket_id}/status",
                                      json={"status": TicketStatus(status).value})
        return _parse_optional(Ticket, _extract(payload, "ticket"), "ticket")

    async def update_ticket_priority(self, ticket_id: str, priority: TicketPriority) -> Ticket | None:
        payload = await self._request("PUT", f"/crm/tickets/{ticket_id}/priority",
                                      json={"priority": TicketPriority(priority).value})
        return _parse_optional(Ticket, _extract(payload, "ticket"), "ticket")

    async def reassign_ticket(self, ticket_id: str, agent_id: str) -> Ticket | None:
        payload = await self._request("PUT", f"/crm/tickets/{ticket_id}/reassign",
                                      json={"agent_id": agent_id, "new_agent_id": agent_id})
        return _parse_optional(Ticket, _extract(payload, "ticket"), "ticket")

    # --- Orders ---

    async def list_orders(self, status: OrderStatus | None = None) -> list[Order]:
        params = {"status": OrderStatus(status).value} if status else None
        payload = await self._request("GET", "/orders", params=params)
        return _parse_list(Order, _extract(payload, "orders"), "order")

    async def get_order(self, order_id: str) -> Order:
        payload = await self._request("GET", f"/orders/{order_id}")
        return _parse(Order, _extract(payload, "order"), "order")

    async def accept_order(self, order_id: str) -> Order | None:
        payload = await self._request("PUT", f"/orders/{order_id}/accept")
        return _parse_optional(Order, _extract(payload, "order"), "order")

    async def reject_order(self, order_id: str, rejection_message: str) -> Order | None:
        payload = await self._request("PUT", f"/orders/{order_id}/reject",
                                      json={"rejectionMessage": rejection_message})
        return _parse_optional(Order, _extract(payload, "order"), "order")

    async def submit_deliverables(self, order_id: str, deliverables: list[Deliverable]) -> Order | None:
        body = {"deliverables": [d.model_dump(exclude_none=True) for d in deliverables]}
        payload = await self._request("POST", f"/orders/{order_id}/deliverables", json=body)
        return _parse_optional(Order, _extract(payload, "order"), "order")

    async def update_order_status(self, order_id: str, status: OrderStatus) -> Order | None:
        payload = await self._request("PUT", f"/orders/{order_id}/status",
                                      json={"status": OrderStatus(status).value})
        return _parse_optional(Order, _extract(payload, "order"), "order")

    # --- Directory ---

    async def list_agents(self) -> list[Agent]:
        payload = await self._request("GET", "/admin/agents")
        return _parse_list(Agent, _extract(payload, "agents"), "agent")

    async def list_packages(self) -> list[Package]:
        payload = await self._request("GET", "/packages")
        return _parse_list(Package, _extract(payload, "packages"), "package")

    # --- Chat ---

    async def get_chat_token(self) -> ChatToken:
        payload = await self._request("GET", "/chat/token")
        return _parse(ChatToken, payload.get("data") or {}, "chat token")

    async def join_ticket_chat(self, ticket_id: str) -> str:
        payload = await self._request("POST", f"/chat/tickets/{ticket_id}/join")
        data = payload.get("data") or {}
        channel_id = data.get("channelId") if isinstance(data, dict) else None
        return str(channel_id or f"ticket_{ticket_id}")

    async def leave_ticket_chat(self, ticket_id: str) -> None:
        await self._request("POST", f"/chat/tickets/{ticket_id}/leave")
