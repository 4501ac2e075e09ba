"""
Wire messages carried on the broker.

All bodies are UTF-8 JSON with PascalCase keys, the format the rest of the
bookstore system (and the CRM side) already speaks. Only the fields a
consumer actually reads are declared; unknown keys are ignored.
"""

from datetime import datetime
from decimal import Decimal
from typing import Annotated, TypeVar

from pydantic import BaseModel, ConfigDict, Field, PlainSerializer, ValidationError
from pydantic.alias_generators import to_pascal

from .errors import ParseFailure

Money = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_pascal, populate_by_name=True, extra="ignore")

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)


class OrderItemMessage(WireModel):
    book_id: int
    book_title: str = ""
    quantity: int
    unit_price: Money


class OrderMessage(WireModel):
    """Snapshot of an order at creation time (``orders`` queue)."""
    id: int
    order_date: datetime
    items: list[OrderItemMessage] = Field(default_factory=list)
    total_amount: Money
    customer_email: str
    customer_name: str = ""
    status: str = "Pending"


class StatusUpdate(WireModel):
    """CRM-side status change (``order-updates`` queue)."""
    status: str = Field(min_length=1)
    description: str = ""
    salesforce_id: str | None = None
    order_id: int | None = None
    updated_at: datetime | None = None


M = TypeVar("M", bound=WireModel)


def decode(model: type[M], body: str | bytes) -> M:
    """Decode a message body, raising ParseFailure for anything malformed."""
    try:
        return model.model_validate_json(body)
    except ValidationError as exc:
        raise ParseFailure(f"Cannot decode {model.__name__}: {exc.error_count()} error(s)") from exc
