import re
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, NonNegativeFloat, NonNegativeInt, PositiveInt, field_validator, model_validator

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class RequestModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid", str_strip_whitespace=True)


class CheckoutItem(RequestModel):
    name: str = Field(min_length=1)
    unit_amount: PositiveInt = Field(alias="unitAmount")
    quantity: PositiveInt


class CheckoutExtras(RequestModel):
    mode: Optional[Literal["pickup", "delivery"]] = None
    note: Optional[str] = Field(default=None, min_length=1, max_length=500)
    service_fee_minor: Optional[NonNegativeInt] = Field(default=None, alias="serviceFeeMinor")
    delivery_fee_minor: Optional[NonNegativeInt] = Field(default=None, alias="deliveryFeeMinor")
    tip_minor: Optional[NonNegativeInt] = Field(default=None, alias="tipMinor")


class CheckoutRequest(RequestModel):
    merchant_id: str = Field(min_length=1, alias="merchantId")
    currency: str = "eur"
    items: list[CheckoutItem] = Field(min_length=1)
    extras: Optional[CheckoutExtras] = None
    customer_email: Optional[str] = Field(default=None, alias="customerEmail")

    @field_validator("currency")
    @classmethod
    def _currency(cls, value: str) -> str:
        value = value.strip().lower()
        if not re.fullmatch(r"[a-z]{3}", value):
            raise ValueError("invalid currency")
        return value

    @field_validator("customer_email")
    @classmethod
    def _email(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not EMAIL_RE.match(value):
            raise ValueError("invalid email address")
        return value

    @property
    def subtotal(self) -> int:
        return sum(item.unit_amount * item.quantity for item in self.items)

    @property
    def service_fee(self) -> int:
        return (self.extras and self.extras.service_fee_minor) or 0

    @property
    def delivery_fee(self) -> int:
        return (self.extras and self.extras.delivery_fee_minor) or 0

    @property
    def tip(self) -> int:
        return (self.extras and self.extras.tip_minor) or 0

    @property
    def amount_total(self) -> int:
        return self.subtotal + self.service_fee + self.delivery_fee + self.tip

    @property
    def mode(self) -> Optional[str]:
        return self.extras.mode if self.extras else None


class DeliveryPoint(RequestModel):
    address: str = Field(min_length=1)
    phone: Optional[str] = Field(default=None, min_length=5)
    name: Optional[str] = Field(default=None, min_length=1)
    instructions: Optional[str] = Field(default=None, max_length=500)
    postal_code: Optional[str] = Field(default=None, min_length=3, max_length=12, alias="postalCode")
    lat: Optional[float] = Field(default=None, ge=-90, le=90)
    lng: Optional[float] = Field(default=None, ge=-180, le=180)

    @model_validator(mode="after")
    def _coordinates_together(self) -> "DeliveryPoint":
        if (self.lat is None) != (self.lng is None):
            raise ValueError("lat and lng must be provided together")
        return self

    def to_provider(self) -> dict:
        body = self.model_dump(exclude_none=True, exclude={"postal_code", "lat", "lng"})
        if self.postal_code:
            body["postal_code"] = self.postal_code
        if self.lat is not None and self.lng is not None:
            body["location"] = {"latitude": self.lat, "longitude": self.lng}
        return body

    def essentials(self) -> dict:
        return {"address": self.address, "postalCode": self.postal_code, "lat": self.lat, "lng": self.lng}


class ManifestItem(RequestModel):
    title: str = Field(min_length=1)
    quantity: PositiveInt
    price: Optional[NonNegativeInt] = None
    weight: Optional[NonNegativeFloat] = None


class DeliveryQuoteRequest(RequestModel):
    pickup: DeliveryPoint
    dropoff: DeliveryPoint
    items: list[ManifestItem] = Field(min_length=1)
    order_id: Optional[str] = Field(default=None, min_length=1, alias="orderId")


class DeliveryCreateRequest(RequestModel):
    quote_id: Optional[str] = Field(default=None, min_length=1, alias="quoteId")
    pickup: DeliveryPoint
    dropoff: DeliveryPoint
    items: list[ManifestItem] = Field(min_length=1)
    order_id: str = Field(min_length=1, alias="orderId")


class DeliveryCancelRequest(RequestModel):
    delivery_id: str = Field(min_length=1, alias="deliveryId")
    reason: Optional[str] = Field(default=None, min_length=1)


class ConnectOnboardRequest(RequestModel):
    merchant_id: str = Field(min_length=1, alias="merchantId")


# Stripe event objects; unknown fields are ignored.

class IntentPayload(BaseModel):
    id: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    amount: Optional[NonNegativeInt] = None
    amount_received: Optional[NonNegativeInt] = None
    last_payment_error: Optional[dict[str, Any]] = None

    @property
    def order_id(self) -> Optional[str]:
        order_id = self.metadata.get("orderId")
        return order_id.strip() or None if isinstance(order_id, str) else None

    @property
    def settled_amount(self) -> Optional[int]:
        return self.amount_received if self.amount_received is not None else self.amount

    @property
    def failure_message(self) -> Optional[str]:
        return (self.last_payment_error or {}).get("message")


class IntentRef(BaseModel):
    id: str


class ChargePayload(BaseModel):
    payment_intent: Union[str, IntentRef]

    @property
    def intent_id(self) -> str:
        ref = self.payment_intent
        return ref if isinstance(ref, str) else ref.id


def validation_issues(errors: list[dict]) -> list[dict]:
    """Flatten pydantic errors into ``{path, code, message}`` issues."""
    issues = []
    for error in errors:
        loc = list(error.get("loc", ()))
        if loc and loc[0] == "body":
            loc = loc[1:]
        issues.append(
            {
                "path": ".".join(str(part) for part in loc) or "root",
                "code": error.get("type", "invalid"),
                "message": error.get("msg", "Invalid value"),
            }
        )
    return issues
