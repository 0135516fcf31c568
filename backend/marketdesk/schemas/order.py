"""Order and deliverable schemas."""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional, Any

from pydantic import BaseModel, Field, AliasChoices, field_validator

from marketdesk.schemas.ticket import Ticket, as_utc, _id_to_str


class OrderStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    IN_PROGRESS = "in_progress"
    REVIEW = "review"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REJECTED = "rejected"

    @classmethod
    def _missing_(cls, value):
        # Older backends store an accepted order as "confirmed"
        if value == "confirmed":
            return cls.ACCEPTED
        return None

    @property
    def is_terminal(self) -> bool:
        return self in (OrderStatus.COMPLETED, OrderStatus.CANCELLED, OrderStatus.REJECTED)


class Deliverable(BaseModel):
    url: str = Field(..., min_length=1)
    filename: Optional[str] = None
    type: Optional[str] = None
    size: Optional[int] = Field(None, ge=0)


class Order(BaseModel):
    id: str
    brand_id: Optional[str] = None
    creator_id: Optional[str] = None
    package_id: Optional[str] = None
    quantity: int = 1
    currency: str = "INR"
    total_amount: Decimal = Decimal("0")
    status: OrderStatus = OrderStatus.PENDING
    rejection_message: Optional[str] = None
    deliverables: list[Deliverable] = Field(default_factory=list)
    additional_instructions: Optional[str] = None
    reference_links: list[str] = Field(default_factory=list)
    delivery_time: Optional[str] = None
    created_at: Optional[datetime] = Field(None, validation_alias=AliasChoices("created_at", "order_date"))
    ticket: Optional[Ticket] = None

    @field_validator("id", "brand_id", "creator_id", "package_id", mode="before")
    @classmethod
    def _coerce_ids(cls, value: Any) -> Any:
        return _id_to_str(value)

    @field_validator("deliverables", "reference_links", mode="before")
    @classmethod
    def _none_to_list(cls, value: Any) -> Any:
        return [] if value is None else value

    @field_validator("delivery_time", mode="before")
    @classmethod
    def _delivery_time_text(cls, value: Any) -> Any:
        return None if value is None else str(value)

    @field_validator("created_at")
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value)
