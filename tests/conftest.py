import json
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from models import Merchant, Order, OrderItem, OrderStatus
from notifications import NotificationDispatcher
from payments import FakePaymentGateway
from settings import Settings
from eligibility import DeliveryRules
from uber import MockUberDirect

# Wednesday noon UTC
NOW = datetime(2024, 5, 15, 12, 0, tzinfo=timezone.utc)


class RecordingSender:
    """Stands in for the Resend/Twilio senders; optionally fails every call."""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.sent: list[tuple] = []

    def __call__(self, *args) -> None:
        self.sent.append(args)
        if self.fail:
            raise RuntimeError("provider down")


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite://",
        stripe_webhook_secret="whsec_test",
        app_url="https://shop.example.com",
        twilio_from="+15550000000",
        twilio_whatsapp_from="+15550000001",
    )


@pytest.fixture
def gateway():
    return FakePaymentGateway()


@pytest.fixture
def courier():
    return MockUberDirect()


@pytest.fixture
def rules():
    return DeliveryRules.build()


@pytest.fixture
def email_sender():
    return RecordingSender()


@pytest.fixture
def message_sender():
    return RecordingSender()


@pytest.fixture
def dispatcher(engine, settings, email_sender, message_sender):
    return NotificationDispatcher(engine, settings, email_sender=email_sender, message_sender=message_sender)


@pytest.fixture
def merchant(engine):
    with Session(engine) as session:
        merchant = Merchant(
            id="m_1",
            name="Chez Test",
            stripe_account_id="acct_123",
            commission_bps=1000,
            notify_email_enabled=True,
            notify_email="owner@example.com",
        )
        session.add(merchant)
        session.commit()
    return "m_1"


@pytest.fixture
def make_order(engine, merchant):
    """Insert an order directly, bypassing checkout."""

    def _make(status=OrderStatus.PENDING, intent_id="pi_1", amount=1299, order_id=None):
        with Session(engine) as session:
            order = Order(
                merchant_id=merchant,
                currency="eur",
                amount_total=amount,
                status=status.value,
                stripe_payment_intent_id=intent_id,
                items=[OrderItem(name="Burger", unit_amount=amount, quantity=1)],
            )
            if order_id:
                order.id = order_id
            session.add(order)
            session.commit()
            return order.id

    return _make


@pytest.fixture
def client(engine, settings, gateway, courier, rules, dispatcher):
    import main
    from database import get_engine
    from payments import reset_gateway, set_gateway
    from settings import get_settings
    from uber import reset_delivery_gateway, set_delivery_gateway

    set_gateway(gateway)
    set_delivery_gateway(courier)
    main.app.dependency_overrides[get_engine] = lambda: engine
    main.app.dependency_overrides[get_settings] = lambda: settings
    main.app.dependency_overrides[main.delivery_rules] = lambda: rules
    main.app.dependency_overrides[main.notification_dispatcher] = lambda: dispatcher
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()
    reset_gateway()
    reset_delivery_gateway()


def stripe_event(event_type, obj, event_id="evt_1", created=None):
    body = {
        "id": event_id,
        "type": event_type,
        "created": created if created is not None else int(NOW.timestamp()),
        "data": {"object": obj},
    }
    return json.dumps(body).encode("utf-8")


def load_order(engine, order_id):
    with Session(engine) as session:
        return session.get(Order, order_id)
