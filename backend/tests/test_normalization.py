"""Tests for payload normalization and parsing."""

from datetime import timezone
from decimal import Decimal

import pytest

from marketdesk.schemas.chat import ChatEvent
from marketdesk.schemas.common import Agent, Package
from marketdesk.schemas.order import Order, OrderStatus
from marketdesk.schemas.ticket import (
    ChannelType, Message, OutgoingMessage, SenderRole, Ticket, TicketPriority, TicketStatus,
)


class TestMessageNormalization:
    def test_minimal_payload(self):
        message = Message.model_validate({"id": 5, "message_text": "Hello"})
        assert message.id == "5"
        assert message.text == "Hello"
        assert message.sender_role is None
        assert message.channel_type is None
        assert message.effective_channel == ChannelType.BRAND_AGENT

    def test_legacy_sender_field(self):
        message = Message.model_validate({"id": 1, "sender": "creator", "message": "hi"})
        assert message.sender_role == SenderRole.CREATOR
        assert message.text == "hi"

    def test_sender_object(self):
        message = Message.model_validate({"id": 1, "message_text": "hi",
                                          "sender": {"name": "Priya", "user_type": "influencer"}})
        assert message.sender_role == SenderRole.CREATOR
        assert message.sender_name == "Priya"

    def test_sender_object_with_unknown_type(self):
        message = Message.model_validate({"id": 1, "text": "hi", "sender": {"name": "Ops", "user_type": "admin"},
                                          "sender_name": "Ops Desk"})
        assert message.sender_role is None
        assert message.sender_name == "Ops Desk"

    def test_sender_role_wins_over_legacy_sender(self):
        message = Message.model_validate({"id": 1, "sender": "creator", "sender_role": "agent", "text": "hi"})
        assert message.sender_role == SenderRole.AGENT

    def test_naive_timestamps_are_utc(self):
        message = Message.model_validate({"id": 1, "text": "x", "created_at": "2024-05-01T10:00:00"})
        assert message.created_at.tzinfo == timezone.utc

    def test_optimistic_prefix(self):
        assert Message(id="temp-abc", text="x").is_optimistic
        assert not Message(id="123", text="x").is_optimistic

    def test_unknown_channel_rejected(self):
        with pytest.raises(Exception):
            Message.model_validate({"id": 1, "text": "x", "channel_type": "brand_creator"})


class TestOutgoingMessage:
    def test_payload(self):
        draft = OutgoingMessage(ticket_id="1", text=" Hello ", client_id="abc")
        assert draft.to_payload() == {
            "message_text": "Hello",
            "message": "Hello",
            "message_type": "text",
            "sender_role": "agent",
            "channel_type": "brand_agent",
            "client_id": "abc",
        }

    def test_client_id_generated(self):
        first = OutgoingMessage(ticket_id="1", text="a")
        second = OutgoingMessage(ticket_id="1", text="a")
        assert first.client_id and first.client_id != second.client_id

    def test_blank_text_rejected(self):
        with pytest.raises(Exception):
            OutgoingMessage(ticket_id="1", text="   ")

    def test_max_length(self):
        with pytest.raises(Exception):
            OutgoingMessage(ticket_id="1", text="x" * 5001)


class TestOrderNormalization:
    def test_full_payload(self):
        order = Order.model_validate({
            "id": 10, "brand_id": 1, "creator_id": 2, "package_id": 3,
            "quantity": 2, "total_amount": "4999.50", "status": "in_progress",
            "deliverables": None, "reference_links": None, "delivery_time": 7,
            "order_date": "2024-05-01T10:00:00Z",
        })
        assert order.id == "10"
        assert order.total_amount == Decimal("4999.50")
        assert order.status == OrderStatus.IN_PROGRESS
        assert order.deliverables == []
        assert order.reference_links == []
        assert order.delivery_time == "7"
        assert order.created_at.tzinfo is not None

    def test_confirmed_is_accepted(self):
        assert Order.model_validate({"id": 1, "status": "confirmed"}).status == OrderStatus.ACCEPTED

    def test_unknown_status_rejected(self):
        with pytest.raises(Exception):
            Order.model_validate({"id": 1, "status": "shipped"})

    def test_embedded_ticket(self):
        order = Order.model_validate({"id": 1, "ticket": {"id": 9, "status": "in_progress", "priority": "high"}})
        assert order.ticket.id == "9"
        assert order.ticket.status == TicketStatus.IN_PROGRESS
        assert order.ticket.priority == TicketPriority.HIGH


class TestDirectory:
    def test_agent_assigned_tickets(self):
        agent = Agent.model_validate({"id": 3, "name": "Asha"})
        tickets = [Ticket(id="1", agent_id="3"), Ticket(id="2", agent_id="4"), Ticket(id="3", agent_id="3")]
        assert [t.id for t in agent.assigned(tickets)] == ["1", "3"]

    def test_package_price(self):
        package = Package.model_validate({"id": 1, "title": "Reel", "price": 1500})
        assert package.price == Decimal("1500")
        assert package.currency == "INR"


class TestChatEvent:
    def test_target_from_cid(self):
        assert ChatEvent(type="message.new", cid="messaging:ticket_4").target_channel == "ticket_4"

    def test_channel_id_wins(self):
        assert ChatEvent(type="message.new", cid="messaging:x", channel_id="ticket_5").target_channel == "ticket_5"
