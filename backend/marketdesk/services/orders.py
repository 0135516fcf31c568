"""Order lifecycle - transition tables, guarded mutations and role views.

Every mutation is checked against the transition tables before anything is
sent. The local copy moves first, the backend call follows, and a failure
rolls the local copy back and turns into an error notice. The next refresh()
of the order is always authoritative.
"""

from dataclasses import dataclass, field
from urllib.parse import urlparse

import pydantic
import structlog

from marketdesk.adapters.marketplace import MarketplaceClient
from marketdesk.api.health import ORDER_MUTATIONS
from marketdesk.errors import InvalidTransitionError, MarketdeskError, ValidationError
from marketdesk.schemas.order import Deliverable, Order, OrderStatus
from marketdesk.schemas.ticket import SenderRole, Ticket, TicketPriority, TicketStatus
from marketdesk.services.notifications import Notifier

logger = structlog.get_logger()

ORDER_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.ACCEPTED, OrderStatus.REJECTED, OrderStatus.CANCELLED}),
    OrderStatus.ACCEPTED: frozenset({OrderStatus.IN_PROGRESS, OrderStatus.REVIEW, OrderStatus.CANCELLED}),
    OrderStatus.IN_PROGRESS: frozenset({OrderStatus.REVIEW, OrderStatus.CANCELLED}),
    OrderStatus.REVIEW: frozenset({OrderStatus.COMPLETED, OrderStatus.IN_PROGRESS, OrderStatus.CANCELLED}),
    OrderStatus.COMPLETED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.REJECTED: frozenset(),
}

TICKET_TRANSITIONS: dict[TicketStatus, frozenset[TicketStatus]] = {
    TicketStatus.OPEN: frozenset({TicketStatus.IN_PROGRESS, TicketStatus.RESOLVED, TicketStatus.CLOSED}),
    TicketStatus.IN_PROGRESS: frozenset({TicketStatus.OPEN, TicketStatus.RESOLVED, TicketStatus.CLOSED}),
    TicketStatus.RESOLVED: frozenset({TicketStatus.OPEN, TicketStatus.CLOSED}),
    TicketStatus.CLOSED: frozenset({TicketStatus.OPEN}),
}

STATUS_LABELS = {
    OrderStatus.PENDING: "Pending",
    OrderStatus.ACCEPTED: "Accepted",
    OrderStatus.IN_PROGRESS: "In Progress",
    OrderStatus.REVIEW: "Under Review",
    OrderStatus.COMPLETED: "Completed",
    OrderStatus.CANCELLED: "Cancelled",
    OrderStatus.REJECTED: "Rejected",
}


def check_transition(current, target) -> None:
    """Raise InvalidTransitionError unless current -> target is in the order or ticket table."""
    if isinstance(current, TicketStatus):
        table = TICKET_TRANSITIONS
        target = TicketStatus(target)
    else:
        table = ORDER_TRANSITIONS
        current, target = OrderStatus(current), OrderStatus(target)
    if target not in table[current]:
        raise InvalidTransitionError(current.value, target.value)


def status_label(order: Order) -> str:
    if order.status == OrderStatus.REJECTED and order.rejection_message:
        return f"Rejected: {order.rejection_message}"
    return STATUS_LABELS[order.status]


def _is_http_url(url: str) -> bool:
    parsed = urlparse(url.strip())
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def _merge(local, response):
    """Overlay the fields the server actually sent onto the local copy."""
    return local.model_copy(update={name: getattr(response, name) for name in response.model_fields_set})


@dataclass
class MutationResult:
    ok: bool
    order: Order | None = None
    ticket: Ticket | None = None
    error: str | None = None


@dataclass
class RoleView:
    status: OrderStatus
    label: str
    actions: list[str] = field(default_factory=list)
    rejection_message: str | None = None


class OrderLifecycle:
    """Order and ticket mutations for the brand, creator and agent dashboards."""

    def __init__(self, client: MarketplaceClient, notifier: Notifier | None = None):
        self.client = client
        self.notifier = notifier or Notifier()
        self.orders: dict[str, Order] = {}
        self.tickets: dict[str, Ticket] = {}

    # --- Reads ---

    async def refresh(self, order_id: str) -> Order:
        """Fetch the order and replace the local copy."""
        order = await self.client.get_order(order_id)
        order = _merge(self.orders[order_id], response)
        self.orders[order_id] = order
        return order

    async def refresh_ticket(self, ticket_id: str) -> Ticket:
        ticket = await self.client.get_ticket(ticket_id)
        ticket = _merge(self.tickets[ticket_id], response)
        self.tickets[ticket_id] = ticket
        return ticket

    async def _order(self, order_id: str) -> Order:
        order = self.orders.get(order_id)
        return order if order is not None else await self.refresh(order_id)

    async def _ticket(self, ticket_id: str) -> Ticket:
        ticket = self.tickets.get(ticket_id)
        return ticket if ticket is not None else await self.refresh_ticket(ticket_id)

    # --- Order mutations ---

    async def _mutate_order(self, action: str, order_id: str, target: OrderStatus, dispatch,
                            success_text: str, failure_text: str, **local) -> MutationResult:
        previous = self.orders.get(order_id)
        try:
            current = await self._order(order_id)
            previous = current
            check_transition(current.status, target)
            self.orders[order_id] = current.model_copy(update={"status": target, **local})
            response = await dispatch()
            if response is None:
                response = await self.client.get_order(order_id)
        except MarketdeskError as e:
            if previous is not None:
                self.orders[order_id] = previous
            ORDER_MUTATIONS.labels(action=action, outcome="failed").inc()
            logger.warning(f"order_{action}_failed", order_id=order_id, error=str(e))
            await self.notifier.error(failure_text, order_id=order_id, error=str(e))
            return MutationResult(ok=False, order=previous, error=str(e))

        order = _merge(self.orders[order_id], response)
        self.orders[order_id] = order
        ORDER_MUTATIONS.labels(action=action, outcome="ok").inc()
        logger.info(f"order_{action}_succeeded", order_id=order.id, status=order.status.value)
        await self.notifier.success(success_text)
        return MutationResult(ok=True, order=order)

    async def _blocked(self, action: str, order_id: str, error: ValidationError, failure_text: str) -> MutationResult:
        ORDER_MUTATIONS.labels(action=action, outcome="blocked").inc()
        logger.info(f"order_{action}_blocked", order_id=order_id, reason=error.reason)
        await self.notifier.error(f"{failure_text}: {error.reason}", order_id=order_id)
        return MutationResult(ok=False, order=self.orders.get(order_id), error=error.reason)

    async def accept_order(self, order_id: str) -> MutationResult:
        return await self._mutate_order(
            "accept", order_id, OrderStatus.ACCEPTED,
            lambda: self.client.accept_order(order_id),
            "Order accepted successfully", "Failed to accept order",
        )

    async def reject_order(self, order_id: str, rejection_message: str) -> MutationResult:
        message = (rejection_message or "").strip()
        if not message:
            return await self._blocked(
                "reject", order_id,
                ValidationError("A rejection message is required", field="rejection_message"),
                "Failed to reject order",
            )
        return await self._mutate_order(
            "reject", order_id, OrderStatus.REJECTED,
            lambda: self.client.reject_order(order_id, message),
            "Order rejected successfully", "Failed to reject order",
            rejection_message=message,
        )

    async def submit_deliverables(self, order_id: str, deliverables: list) -> MutationResult:
        """Upload deliverable links for an accepted or in-progress order; moves it to review."""
        try:
            items = self._validate_deliverables(deliverables)
        except ValidationError as e:
            return await self._blocked("submit", order_id, e, "Failed to upload deliverables")
        return await self._mutate_order(
            "submit", order_id, OrderStatus.REVIEW,
            lambda: self.client.submit_deliverables(order_id, items),
            "Deliverables uploaded successfully", "Failed to upload deliverables",
            deliverables=items,
        )

    @staticmethod
    def _validate_deliverables(deliverables: list) -> list[Deliverable]:
        if not deliverables:
            raise ValidationError("At least one deliverable is required", field="deliverables")
        items = []
        for entry in deliverables:
            try:
                item = entry if isinstance(entry, Deliverable) else Deliverable.model_validate(
                    entry if isinstance(entry, dict) else {"url": str(entry)}
                )
            except pydantic.ValidationError as e:
                raise ValidationError(f"Invalid deliverable: {e.errors()[0]['msg']}", field="deliverables") from e
            if not _is_http_url(item.url):
                raise ValidationError(f"Invalid deliverable URL: {item.url}", field="deliverables")
            items.append(item)
        return items

    async def update_status(self, order_id: str, status: OrderStatus) -> MutationResult:
        try:
            target = OrderStatus(status)
        except ValueError:
            return await self._blocked(
                "update_status", order_id,
                ValidationError(f"Unknown order status: {status}", field="status"),
                "Failed to update order",
            )
        return await self._mutate_order(
            "update_status", order_id, target,
            lambda: self.client.update_order_status(order_id, target),
            f"Order moved to {STATUS_LABELS[target]}", "Failed to update order",
        )

    async def cancel_order(self, order_id: str) -> MutationResult:
        return await self.update_status(order_id, OrderStatus.CANCELLED)

    async def approve_order(self, order_id: str) -> MutationResult:
        return await self.update_status(order_id, OrderStatus.COMPLETED)

    async def request_changes(self, order_id: str) -> MutationResult:
        return await self.update_status(order_id, OrderStatus.IN_PROGRESS)

    # --- Ticket mutations ---

    async def _mutate_ticket(self, action: str, ticket_id: str, dispatch, check, success_text: str,
                             failure_text: str, **local) -> MutationResult:
        previous = self.tickets.get(ticket_id)
        try:
            current = await self._ticket(ticket_id)
            previous = current
            check(current)
            self.tickets[ticket_id] = current.model_copy(update=local)
            response = await dispatch()
            if response is None:
                response = await self.client.get_ticket(ticket_id)
        except MarketdeskError as e:
            if previous is not None:
                self.tickets[ticket_id] = previous
            ORDER_MUTATIONS.labels(action=action, outcome="failed").inc()
            logger.warning(f"ticket_{action}_failed", ticket_id=ticket_id, error=str(e))
            await self.notifier.error(failure_text, ticket_id=ticket_id, error=str(e))
            return MutationResult(ok=False, ticket=previous, error=str(e))

        ticket = _merge(self.tickets[ticket_id], response)
        self.tickets[ticket_id] = ticket
        ORDER_MUTATIONS.labels(action=action, outcome="ok").inc()
        logger.info(f"ticket_{action}_succeeded", ticket_id=ticket.id)
        await self.notifier.success(success_text)
        return MutationResult(ok=True, ticket=ticket)

    async def update_ticket_status(self, ticket_id: str, status: TicketStatus) -> MutationResult:
        try:
            target = TicketStatus(status)
        except ValueError:
            error = ValidationError(f"Unknown ticket status: {status}", field="status")
            await self.notifier.error(f"Failed to update ticket status: {error.reason}", ticket_id=ticket_id)
            return MutationResult(ok=False, ticket=self.tickets.get(ticket_id), error=error.reason)
        return await self._mutate_ticket(
            "status", ticket_id,
            lambda: self.client.update_ticket_status(ticket_id, target),
            lambda ticket: check_transition(ticket.status, target),
            "Ticket status updated", "Failed to update ticket status",
            status=target,
        )

    async def update_priority(self, ticket_id: str, priority: TicketPriority) -> MutationResult:
        """Any priority may follow any other; unknown values are blocked."""
        try:
            target = TicketPriority(priority)
        except ValueError:
            error = ValidationError(f"Unknown ticket priority: {priority}", field="priority")
            await self.notifier.error(f"Failed to update priority: {error.reason}", ticket_id=ticket_id)
            return MutationResult(ok=False, ticket=self.tickets.get(ticket_id), error=error.reason)
        return await self._mutate_ticket(
            "priority", ticket_id,
            lambda: self.client.update_ticket_priority(ticket_id, target),
            lambda ticket: None,
            "Ticket priority updated", "Failed to update priority",
            priority=target,
        )

    # --- Views ---

    @staticmethod
    def role_view(order: Order, role: SenderRole) -> RoleView:
        """Status label and the actions the given role may take on the order."""
        role = SenderRole(role)
        status = order.status
        actions: list[str] = []
        if role == SenderRole.CREATOR:
            if status == OrderStatus.PENDING:
                actions = ["accept", "reject"]
            elif status in (OrderStatus.ACCEPTED, OrderStatus.IN_PROGRESS):
                actions = ["submit_deliverables"]
        elif role == SenderRole.BRAND:
            if status == OrderStatus.REVIEW:
                actions = ["approve", "request_changes"]
            if not status.is_terminal:
                actions.append("cancel")
        return RoleView(
            status=status,
            label=status_label(order),
            actions=actions,
            rejection_message=order.rejection_message if status == OrderStatus.REJECTED else None,
        )
