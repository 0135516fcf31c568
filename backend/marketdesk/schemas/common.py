"""Common response schemas."""

from decimal import Decimal
from typing import Optional, Any

from pydantic import BaseModel, Field, field_validator

from marketdesk.schemas.ticket import Ticket, _id_to_str


class ApiEnvelope(BaseModel):
    """Shape of every marketplace backend response."""
    success: bool = True
    message: Optional[str] = None
    data: Any = None
    error: Optional[str] = None


class Agent(BaseModel):
    id: str
    name: str = ""
    email: str = ""
    status: Optional[str] = None

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Any:
        return _id_to_str(value)

    def assigned(self, tickets: list[Ticket]) -> list[Ticket]:
        """Tickets currently assigned to this agent (derived, never stored)."""
        return [t for t in tickets if t.agent_id == self.id]


class Package(BaseModel):
    id: str
    title: str = ""
    description: Optional[str] = None
    price: Decimal = Decimal("0")
    currency: str = "INR"
    type: Optional[str] = None
    deliverables: list[Any] = Field(default_factory=list)

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Any:
        return _id_to_str(value)


class Profile(BaseModel):
    id: str
    name: Optional[str] = None
    email: Optional[str] = None
    user_type: Optional[str] = None

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Any:
        return _id_to_str(value)


class TicketPage(BaseModel):
    tickets: list[Ticket]
    total: int
    limit: int
    offset: int


class HealthResponse(BaseModel):
    status: str
    version: str = "1.0.0"
    api: str
    redis: str
    chat: str
