from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional
from uuid import uuid4

from sqlalchemy import BigInteger, Column
from sqlmodel import Field, Relationship, SQLModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid4().hex


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"
    CANCELED = "CANCELED"


TERMINAL_DELIVERY_STATUSES = ("failed", "canceled")


class Merchant(SQLModel, table=True):
    __tablename__ = "merchants"

    id: str = Field(default_factory=new_id, primary_key=True)
    name: str = ""
    stripe_account_id: Optional[str] = None   # set once Stripe Connect onboarding starts
    commission_bps: int = Field(default=0)    # platform fee, basis points of the subtotal
    notify_email_enabled: bool = False
    notify_email: Optional[str] = None
    notify_sms_enabled: bool = False
    notify_whatsapp_enabled: bool = False
    notify_phone: Optional[str] = None

    orders: List["Order"] = Relationship(back_populates="merchant")


class Order(SQLModel, table=True):
    __tablename__ = "orders"

    id: str = Field(default_factory=new_id, primary_key=True)
    merchant_id: str = Field(foreign_key="merchants.id", index=True)
    currency: str = Field(default="eur", max_length=3)
    amount_total: int                                  # minor units
    status: str = Field(default=OrderStatus.PENDING.value, index=True)
    idempotency_key: Optional[str] = Field(default=None, unique=True)
    stripe_payment_intent_id: Optional[str] = Field(default=None, index=True)
    stripe_client_secret: Optional[str] = None
    notified_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)

    merchant: Optional[Merchant] = Relationship(back_populates="orders")
    items: List["OrderItem"] = Relationship(
        back_populates="order",
        sa_relationship_kwargs={"cascade": "all, delete-orphan"},
    )
    delivery: Optional["Delivery"] = Relationship(
        back_populates="order",
        sa_relationship_kwargs={"uselist": False, "cascade": "all, delete-orphan"},
    )


class OrderItem(SQLModel, table=True):
    __tablename__ = "order_items"

    id: Optional[int] = Field(default=None, primary_key=True)
    order_id: str = Field(foreign_key="orders.id", index=True)
    name: str
    unit_amount: int    # minor units
    quantity: int

    order: Optional[Order] = Relationship(back_populates="items")


class Delivery(SQLModel, table=True):
    __tablename__ = "deliveries"

    id: Optional[int] = Field(default=None, primary_key=True)
    order_id: str = Field(foreign_key="orders.id", unique=True)
    provider: str = Field(default="uber_direct")
    delivery_id: Optional[str] = Field(default=None, index=True)   # courier-side id
    status: Optional[str] = None                                   # courier vocabulary, lowercased
    tracking_url: Optional[str] = None
    fee_total: Optional[int] = None
    currency: Optional[str] = None
    estimate_id: Optional[str] = None                              # quote id
    pickup_at_ms: Optional[int] = Field(default=None, sa_column=Column(BigInteger))
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    order: Optional[Order] = Relationship(back_populates="delivery")

    @property
    def is_active(self) -> bool:
        return bool(self.delivery_id and self.status and self.status not in TERMINAL_DELIVERY_STATUSES)


class WebhookEvent(SQLModel, table=True):
    __tablename__ = "webhook_events"

    id: str = Field(primary_key=True)    # provider event id
    type: str
    created_at: datetime = Field(default_factory=utcnow)
