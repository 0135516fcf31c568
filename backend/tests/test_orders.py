"""Tests for the order lifecycle controller."""

import asyncio

import pytest
from unittest.mock import AsyncMock, MagicMock

from marketdesk.errors import ApiError, ConflictError, InvalidTransitionError
from marketdesk.schemas.order import Deliverable, Order, OrderStatus
from marketdesk.schemas.ticket import SenderRole, Ticket, TicketPriority, TicketStatus
from marketdesk.services.notifications import Notifier
from marketdesk.services.orders import (
    ORDER_TRANSITIONS, OrderLifecycle, check_transition, status_label,
)


def order(status="pending", **extra):
    return Order(id="1", brand_id="10", creator_id="20", status=status, **extra)


class TestTransitionTables:
    @pytest.mark.parametrize("current,target", [
        ("pending", "accepted"),
        ("pending", "rejected"),
        ("pending", "cancelled"),
        ("accepted", "in_progress"),
        ("accepted", "review"),
        ("in_progress", "review"),
        ("review", "completed"),
        ("review", "in_progress"),
        ("review", "cancelled"),
    ])
    def test_allowed(self, current, target):
        check_transition(OrderStatus(current), OrderStatus(target))  # Should not raise

    @pytest.mark.parametrize("current,target", [
        ("pending", "review"),
        ("pending", "completed"),
        ("accepted", "accepted"),
        ("accepted", "rejected"),
        ("in_progress", "completed"),
        ("completed", "cancelled"),
        ("rejected", "accepted"),
        ("cancelled", "pending"),
    ])
    def test_rejected(self, current, target):
        with pytest.raises(InvalidTransitionError) as exc:
            check_transition(OrderStatus(current), OrderStatus(target))
        assert exc.value.current == current
        assert exc.value.target == target

    def test_terminal_states_have_no_exits(self):
        for status in OrderStatus:
            assert (ORDER_TRANSITIONS[status] == frozenset()) == status.is_terminal

    def test_ticket_table(self):
        check_transition(TicketStatus.CLOSED, TicketStatus.OPEN)
        check_transition(TicketStatus.OPEN, TicketStatus.RESOLVED)
        with pytest.raises(InvalidTransitionError):
            check_transition(TicketStatus.CLOSED, TicketStatus.RESOLVED)
        with pytest.raises(InvalidTransitionError):
            check_transition(TicketStatus.RESOLVED, TicketStatus.IN_PROGRESS)


class TestOrderMutations:
    def setup_method(self):
        self.client = MagicMock()
        self.client.get_order = AsyncMock(return_value=order("pending"))
        self.client.accept_order = AsyncMock(return_value=order("accepted"))
        self.client.reject_order = AsyncMock(return_value=order("rejected", rejection_message="Timeline too short"))
        self.client.submit_deliverables = AsyncMock(return_value=order("review"))
        self.client.update_order_status = AsyncMock()
        self.notifier = Notifier()
        self.lifecycle = OrderLifecycle(self.client, self.notifier)

    def test_accept_pending_order(self):
        result = asyncio.run(self.lifecycle.accept_order("1"))
        assert result.ok
        assert result.order.status == OrderStatus.ACCEPTED
        assert self.lifecycle.orders["1"].status == OrderStatus.ACCEPTED
        self.client.accept_order.assert_awaited_once_with("1")
        assert self.notifier.last("success").text == "Order accepted successfully"

    def test_accept_conflict_rolls_back_and_notifies(self):
        self.lifecycle.orders["1"] = order("pending")
        self.client.accept_order.side_effect = ConflictError("Order is not in pending status", 409)
        self.client.get_order.return_value = order("accepted")

        async def scenario():
            result = await self.lifecycle.accept_order("1")
            local = self.lifecycle.orders["1"].status
            refreshed = await self.lifecycle.refresh("1")
            return result, local, refreshed

        result, local, refreshed = asyncio.run(scenario())
        assert not result.ok
        assert local == OrderStatus.PENDING
        assert self.notifier.last("error").text == "Failed to accept order"
        assert refreshed.status == OrderStatus.ACCEPTED
        assert self.lifecycle.orders["1"].status == OrderStatus.ACCEPTED

    def test_accept_already_accepted_is_blocked_locally(self):
        self.lifecycle.orders["1"] = order("accepted")
        result = asyncio.run(self.lifecycle.accept_order("1"))
        assert not result.ok
        self.client.accept_order.assert_not_awaited()
        assert self.notifier.last("error").text == "Failed to accept order"

    def test_reject_requires_message(self):
        result = asyncio.run(self.lifecycle.reject_order("1", ""))
        assert not result.ok
        self.client.reject_order.assert_not_awaited()
        self.client.get_order.assert_not_awaited()
        assert "rejection message" in self.notifier.last("error").text

    def test_reject_whitespace_message_blocked(self):
        result = asyncio.run(self.lifecycle.reject_order("1", "   "))
        assert not result.ok
        self.client.reject_order.assert_not_awaited()

    def test_reject_sends_trimmed_message(self):
        result = asyncio.run(self.lifecycle.reject_order("1", "  Timeline too short "))
        assert result.ok
        self.client.reject_order.assert_awaited_once_with("1", "Timeline too short")
        assert result.order.rejection_message == "Timeline too short"

    def test_submit_empty_deliverables_blocked(self):
        result = asyncio.run(self.lifecycle.submit_deliverables("1", []))
        assert not result.ok
        self.client.submit_deliverables.assert_not_awaited()

    def test_submit_requires_http_urls(self):
        self.lifecycle.orders["1"] = order("accepted")
        result = asyncio.run(self.lifecycle.submit_deliverables("1", [{"url": "ftp://files/video.mp4"}]))
        assert not result.ok
        assert "Invalid deliverable URL" in result.error
        self.client.submit_deliverables.assert_not_awaited()

    def test_submit_blank_url_blocked(self):
        result = asyncio.run(self.lifecycle.submit_deliverables("1", [{"url": ""}]))
        assert not result.ok
        self.client.submit_deliverables.assert_not_awaited()

    def test_submit_from_accepted_moves_to_review(self):
        self.lifecycle.orders["1"] = order("accepted")
        result = asyncio.run(self.lifecycle.submit_deliverables(
            "1", ["https://cdn.example.com/reel.mp4", {"url": "https://cdn.example.com/cover.png", "size": 12}],
        ))
        assert result.ok
        assert result.order.status == OrderStatus.REVIEW
        sent = self.client.submit_deliverables.await_args.args[1]
        assert all(isinstance(d, Deliverable) for d in sent)
        assert [d.url for d in sent] == ["https://cdn.example.com/reel.mp4", "https://cdn.example.com/cover.png"]

    def test_submit_from_pending_is_invalid(self):
        result = asyncio.run(self.lifecycle.submit_deliverables("1", ["https://cdn.example.com/reel.mp4"]))
        assert not result.ok
        self.client.submit_deliverables.assert_not_awaited()

    def test_network_failure_becomes_failed_result(self):
        self.client.accept_order.side_effect = ApiError("Network error: timed out")
        result = asyncio.run(self.lifecycle.accept_order("1"))
        assert not result.ok
        assert result.error == "Network error: timed out"
        assert self.lifecycle.orders["1"].status == OrderStatus.PENDING

    def test_cancel_from_review(self):
        self.lifecycle.orders["1"] = order("review")
        self.client.update_order_status.return_value = order("cancelled")
        result = asyncio.run(self.lifecycle.cancel_order("1"))
        assert result.ok
        self.client.update_order_status.assert_awaited_once_with("1", OrderStatus.CANCELLED)

    def test_approve_and_request_changes(self):
        self.lifecycle.orders["1"] = order("review")
        self.client.update_order_status.return_value = order("in_progress")
        assert asyncio.run(self.lifecycle.request_changes("1")).ok
        self.lifecycle.orders["1"] = order("review")
        self.client.update_order_status.return_value = order("completed")
        assert asyncio.run(self.lifecycle.approve_order("1")).ok

    def test_sparse_response_keeps_local_fields(self):
        self.lifecycle.orders["1"] = order("pending", total_amount=2500, currency="USD", quantity=3)
        self.client.accept_order.return_value = Order.model_validate({"id": 1, "status": "confirmed"})
        result = asyncio.run(self.lifecycle.accept_order("1"))
        assert result.ok
        kept = self.lifecycle.orders["1"]
        assert kept.status == OrderStatus.ACCEPTED
        assert kept.total_amount == 2500
        assert kept.currency == "USD"
        assert kept.quantity == 3
        assert kept.brand_id == "10"

    def test_response_without_order_refetches(self):
        self.lifecycle.orders["1"] = order("review", total_amount=900)
        self.client.update_order_status.return_value = None
        self.client.get_order.return_value = order("completed", total_amount=900)
        result = asyncio.run(self.lifecycle.approve_order("1"))
        assert result.ok
        assert result.order.status == OrderStatus.COMPLETED
        self.client.get_order.assert_awaited_once_with("1")
        assert self.notifier.last("success").text == "Order moved to Completed"

    def test_refetch_failure_after_mutation_rolls_back(self):
        self.lifecycle.orders["1"] = order("review")
        self.client.update_order_status.return_value = None
        self.client.get_order.side_effect = ApiError("Malformed order in response")
        result = asyncio.run(self.lifecycle.approve_order("1"))
        assert not result.ok
        assert self.lifecycle.orders["1"].status == OrderStatus.REVIEW
        assert self.notifier.last("error").text == "Failed to update order"

    def test_update_status_unknown_value(self):
        result = asyncio.run(self.lifecycle.update_status("1", "shipped"))
        assert not result.ok
        self.client.update_order_status.assert_not_awaited()

    def test_cancel_completed_order_blocked(self):
        self.lifecycle.orders["1"] = order("completed")
        result = asyncio.run(self.lifecycle.cancel_order("1"))
        assert not result.ok
        self.client.update_order_status.assert_not_awaited()


class TestTicketMutations:
    def setup_method(self):
        self.client = MagicMock()
        self.client.get_ticket = AsyncMock(return_value=Ticket(id="7", status="open"))
        self.client.update_ticket_status = AsyncMock(return_value=Ticket(id="7", status="closed"))
        self.client.update_ticket_priority = AsyncMock(return_value=Ticket(id="7", priority="urgent"))
        self.notifier = Notifier()
        self.lifecycle = OrderLifecycle(self.client, self.notifier)

    def test_close_open_ticket(self):
        result = asyncio.run(self.lifecycle.update_ticket_status("7", TicketStatus.CLOSED))
        assert result.ok
        assert result.ticket.status == TicketStatus.CLOSED
        self.client.update_ticket_status.assert_awaited_once_with("7", TicketStatus.CLOSED)

    def test_closed_ticket_cannot_be_resolved(self):
        self.lifecycle.tickets["7"] = Ticket(id="7", status="closed")
        result = asyncio.run(self.lifecycle.update_ticket_status("7", "resolved"))
        assert not result.ok
        self.client.update_ticket_status.assert_not_awaited()
        assert self.lifecycle.tickets["7"].status == TicketStatus.CLOSED

    def test_priority_any_member(self):
        result = asyncio.run(self.lifecycle.update_priority("7", "urgent"))
        assert result.ok
        self.client.update_ticket_priority.assert_awaited_once_with("7", TicketPriority.URGENT)

    def test_ticket_response_without_body_refetches(self):
        self.lifecycle.tickets["7"] = Ticket(id="7", status="open", priority="low")
        self.client.update_ticket_status.return_value = None
        self.client.get_ticket.return_value = Ticket(id="7", status="resolved", priority="low")
        result = asyncio.run(self.lifecycle.update_ticket_status("7", "resolved"))
        assert result.ok
        assert result.ticket.status == TicketStatus.RESOLVED
        self.client.get_ticket.assert_awaited_once_with("7")

    def test_sparse_ticket_response_keeps_local_fields(self):
        self.lifecycle.tickets["7"] = Ticket(id="7", status="open", order_id="5")
        result = asyncio.run(self.lifecycle.update_priority("7", "urgent"))
        assert result.ok
        assert result.ticket.priority == TicketPriority.URGENT
        assert result.ticket.order_id == "5"
        assert result.ticket.status == TicketStatus.OPEN

    def test_priority_unknown_blocked(self):
        result = asyncio.run(self.lifecycle.update_priority("7", "critical"))
        assert not result.ok
        self.client.update_ticket_priority.assert_not_awaited()
        self.client.get_ticket.assert_not_awaited()


class TestRoleView:
    def test_creator_pending(self):
        view = OrderLifecycle.role_view(order("pending"), SenderRole.CREATOR)
        assert view.actions == ["accept", "reject"]
        assert view.label == "Pending"

    def test_creator_can_submit_when_accepted_or_in_progress(self):
        for status in ("accepted", "in_progress"):
            view = OrderLifecycle.role_view(order(status), "creator")
            assert view.actions == ["submit_deliverables"]

    def test_legacy_confirmed_status_reads_as_accepted(self):
        legacy = Order.model_validate({"id": 1, "status": "confirmed"})
        assert legacy.status == OrderStatus.ACCEPTED
        assert OrderLifecycle.role_view(legacy, "creator").actions == ["submit_deliverables"]

    def test_brand_review(self):
        view = OrderLifecycle.role_view(order("review"), SenderRole.BRAND)
        assert view.actions == ["approve", "request_changes", "cancel"]
        assert view.label == "Under Review"

    def test_brand_terminal_has_no_actions(self):
        for status in ("completed", "cancelled", "rejected"):
            assert OrderLifecycle.role_view(order(status), "brand").actions == []

    def test_rejected_carries_message(self):
        rejected = order("rejected", rejection_message="Out of scope")
        view = OrderLifecycle.role_view(rejected, SenderRole.CREATOR)
        assert view.rejection_message == "Out of scope"
        assert view.label == "Rejected: Out of scope"
        assert status_label(order("rejected")) == "Rejected"
