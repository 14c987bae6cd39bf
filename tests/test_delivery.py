import hashlib
import hmac
import json

import pytest
from sqlmodel import Session, select

import orders
from conftest import NOW, load_order
from eligibility import DeliveryRules, Point
from errors import Conflict, DeliveryGatewayError, InvalidRequest, NotFound
from models import Delivery, OrderStatus, WebhookEvent
from orders import (
    cancel_delivery,
    create_delivery,
    delivery_event_id,
    handle_delivery_webhook,
    quote_delivery,
    refresh_delivery_status,
)
from schemas import DeliveryCancelRequest, DeliveryCreateRequest, DeliveryQuoteRequest

PICKUP = {"address": "1 Rue de Rivoli, Paris", "phone": "+33100000000", "name": "Chez Test"}
DROPOFF = {"address": "10 Rue Oberkampf, Paris", "postalCode": "75011", "lat": 48.8647, "lng": 2.3748}
ITEMS = [{"title": "Burger", "quantity": 1, "price": 1299}]


def quote_request(**overrides):
    data = {"pickup": PICKUP, "dropoff": DROPOFF, "items": ITEMS}
    data.update(overrides)
    return DeliveryQuoteRequest.model_validate(data)


def create_request(order_id, **overrides):
    data = {"pickup": PICKUP, "dropoff": DROPOFF, "items": ITEMS, "orderId": order_id}
    data.update(overrides)
    return DeliveryCreateRequest.model_validate(data)


def delivery_for(engine, order_id):
    with Session(engine) as session:
        return session.exec(select(Delivery).where(Delivery.order_id == order_id)).first()


class FailingCourier:
    def quote(self, body, idempotency_key=None):
        raise DeliveryGatewayError(503, "upstream unavailable")

    create = quote

    def cancel(self, delivery_id, reason, idempotency_key=None):
        raise DeliveryGatewayError(404, "not found")

    def status(self, delivery_id):
        raise DeliveryGatewayError(500, None)


class TestQuote:
    def test_returns_quote_and_records_estimate(self, engine, courier, rules, make_order):
        order_id = make_order(status=OrderStatus.PAID)

        data = quote_delivery(engine, courier, rules, quote_request(orderId=order_id), "store-1", now=NOW)

        assert data["quote_id"].startswith("mock_quote_")
        delivery = delivery_for(engine, order_id)
        assert delivery.estimate_id == data["quote_id"]
        assert delivery.fee_total == data["total"]["amount"]

        body = courier.calls[0]["body"]
        assert body["external_store_id"] == "store-1"
        assert body["external_reference_id"] == order_id
        assert body["dropoff"]["location"] == {"latitude": 48.8647, "longitude": 2.3748}
        assert body["dropoff"]["postal_code"] == "75011"

    def test_same_quote_reuses_key(self, engine, courier, rules):
        first = quote_delivery(engine, courier, rules, quote_request(), "store-1", now=NOW)
        second = quote_delivery(engine, courier, rules, quote_request(), "store-1", now=NOW)
        assert first == second
        assert courier.calls[0]["idempotency_key"] == courier.calls[1]["idempotency_key"]

    def test_quote_without_order_does_not_write(self, engine, courier, rules):
        quote_delivery(engine, courier, rules, quote_request(), "store-1", now=NOW)
        with Session(engine) as session:
            assert session.exec(select(Delivery)).all() == []

    def test_outside_hours_is_rejected_before_calling_courier(self, engine, courier):
        # NOW is a Wednesday at 14:00 in Paris
        rules = DeliveryRules.build(hours="Mon-Fri 18:00-22:00")

        with pytest.raises(Conflict) as excinfo:
            quote_delivery(engine, courier, rules, quote_request(), "store-1", now=NOW)

        assert excinfo.value.reason == "schedule"
        assert excinfo.value.to_payload() == {
            "error": "Delivery is only available during: Mon-Fri 18:00-22:00.",
            "reason": "schedule",
            "fallback": "pickup",
        }
        assert courier.calls == []

    def test_postal_code_outside_allowlist(self, engine, courier):
        rules = DeliveryRules.build(postal_codes=["75001", "75002"])
        with pytest.raises(Conflict) as excinfo:
            quote_delivery(engine, courier, rules, quote_request(), "store-1", now=NOW)
        assert excinfo.value.reason == "postal_code"

    def test_distance_limit(self, engine, courier):
        rules = DeliveryRules.build(origin=Point(lat=45.764, lng=4.8357), max_distance_km=5)
        with pytest.raises(Conflict) as excinfo:
            quote_delivery(engine, courier, rules, quote_request(), "store-1", now=NOW)
        assert excinfo.value.reason == "distance"

    def test_upstream_error_propagates(self, engine, rules):
        with pytest.raises(DeliveryGatewayError) as excinfo:
            quote_delivery(engine, FailingCourier(), rules, quote_request(), "store-1", now=NOW)
        assert excinfo.value.status_code == 502
        assert excinfo.value.status == 503


class TestCreate:
    def test_creates_delivery_for_paid_order(self, engine, courier, rules, make_order):
        order_id = make_order(status=OrderStatus.PAID)

        data = create_delivery(engine, courier, rules, create_request(order_id, quoteId="q_1"), "store-1", now=NOW)

        assert data["status"] == "created"
        delivery = delivery_for(engine, order_id)
        assert delivery.delivery_id == data["id"]
        assert delivery.status == "created"
        assert delivery.tracking_url == data["tracking_url"]
        assert delivery.estimate_id == "q_1"
        assert delivery.fee_total == 599

        body = courier.calls[0]["body"]
        assert body["quote_id"] == "q_1"
        assert body["external_order_id"] == order_id

    def test_second_create_returns_existing_delivery(self, engine, courier, rules, make_order):
        order_id = make_order(status=OrderStatus.PAID)
        first = create_delivery(engine, courier, rules, create_request(order_id), "store-1", now=NOW)

        second = create_delivery(engine, courier, rules, create_request(order_id), "store-1", now=NOW)

        assert second["delivery_id"] == first["id"]
        assert second["status"] == "created"
        assert [c["method"] for c in courier.calls] == ["create"]

    def test_terminal_delivery_can_be_replaced(self, engine, courier, rules, make_order):
        order_id = make_order(status=OrderStatus.PAID)
        with Session(engine) as session:
            session.add(Delivery(order_id=order_id, delivery_id="del_old", status="canceled"))
            session.commit()

        data = create_delivery(engine, courier, rules, create_request(order_id), "store-1", now=NOW)

        assert delivery_for(engine, order_id).delivery_id == data["id"]
        assert data["id"] != "del_old"

    def test_store_id_resolved_only_for_dispatch(self, engine, courier, rules, make_order):
        lookups = []

        def store():
            lookups.append(True)
            return "store-9"

        unpaid = make_order(status=OrderStatus.PENDING)
        with pytest.raises(Conflict):
            create_delivery(engine, courier, rules, create_request(unpaid), store, now=NOW)
        assert lookups == []

        paid = make_order(status=OrderStatus.PAID)
        create_delivery(engine, courier, rules, create_request(paid), store, now=NOW)
        assert lookups == [True]
        assert courier.calls[0]["body"]["external_store_id"] == "store-9"

    def test_unpaid_order_is_rejected(self, engine, courier, rules, make_order):
        order_id = make_order(status=OrderStatus.PENDING)
        with pytest.raises(Conflict) as excinfo:
            create_delivery(engine, courier, rules, create_request(order_id), "store-1", now=NOW)
        assert excinfo.value.reason == "order_not_paid"
        assert courier.calls == []

    def test_unknown_order_is_not_found(self, engine, courier, rules):
        with pytest.raises(NotFound):
            create_delivery(engine, courier, rules, create_request("missing"), "store-1", now=NOW)

    def test_ineligible_order_is_rejected(self, engine, courier, make_order):
        order_id = make_order(status=OrderStatus.PAID)
        rules = DeliveryRules.build(postal_codes=["69001"])
        with pytest.raises(Conflict):
            create_delivery(engine, courier, rules, create_request(order_id), "store-1", now=NOW)
        assert delivery_for(engine, order_id) is None


class TestCancelAndStatus:
    def test_cancel_updates_delivery_and_order(self, engine, courier, rules, make_order):
        order_id = make_order(status=OrderStatus.PAID)
        created = create_delivery(engine, courier, rules, create_request(order_id), "store-1", now=NOW)

        data = cancel_delivery(engine, courier, DeliveryCancelRequest(deliveryId=created["id"]))

        assert data["status"] == "canceled"
        assert courier.calls[-1] == {"method": "cancel", "delivery_id": created["id"], "reason": "merchant_canceled"}
        assert delivery_for(engine, order_id).status == "canceled"
        assert load_order(engine, order_id).status == OrderStatus.CANCELED.value

    def test_cancel_error_propagates(self, engine):
        with pytest.raises(DeliveryGatewayError) as excinfo:
            cancel_delivery(engine, FailingCourier(), DeliveryCancelRequest(deliveryId="del_1", reason="customer"))
        assert excinfo.value.message == "Uber API 404: not found"

    def test_status_refresh_updates_record(self, engine, courier, make_order):
        order_id = make_order(status=OrderStatus.PAID)
        with Session(engine) as session:
            session.add(Delivery(order_id=order_id, delivery_id="del_remote", status="pending"))
            session.commit()

        data = refresh_delivery_status(engine, courier, "del_remote")

        assert data["status"] == "courier_assigned"
        delivery = delivery_for(engine, order_id)
        assert delivery.status == "courier_assigned"
        assert delivery.tracking_url == "https://mock.uber.com/track/del_remote"
        assert load_order(engine, order_id).status == OrderStatus.PAID.value


class TestDeliveryWebhook:
    @pytest.fixture
    def paid_with_delivery(self, engine, make_order):
        order_id = make_order(status=OrderStatus.PAID)
        with Session(engine) as session:
            session.add(Delivery(order_id=order_id, delivery_id="del_1", status="created"))
            session.commit()
        return order_id

    def post(self, engine, envelope, signature=None, secret=None):
        raw = json.dumps(envelope).encode("utf-8")
        return handle_delivery_webhook(engine, raw, signature, secret)

    def test_delivered_updates_record_without_changing_paid_order(self, engine, paid_with_delivery):
        envelope = {
            "event_id": "evt_d1",
            "kind": "event.delivery_status",
            "data": {"id": "del_1", "status": "delivered", "tracking_url": "https://t/1", "pickup_at": 1715774400000},
        }

        result = self.post(engine, envelope)

        assert result.order_id == paid_with_delivery
        delivery = delivery_for(engine, paid_with_delivery)
        assert delivery.status == "delivered"
        assert delivery.tracking_url == "https://t/1"
        assert delivery.pickup_at_ms == 1715774400000
        assert load_order(engine, paid_with_delivery).status == OrderStatus.PAID.value

    def test_failed_delivery_fails_order_and_alerts(self, engine, paid_with_delivery, monkeypatch):
        captured = []
        monkeypatch.setattr(orders, "capture_message", lambda message, **kw: captured.append(message))

        self.post(engine, {"event_id": "evt_f", "data": {"id": "del_1", "status": "FAILED"}})

        assert delivery_for(engine, paid_with_delivery).status == "failed"
        assert load_order(engine, paid_with_delivery).status == OrderStatus.FAILED.value
        assert captured == ["Uber delivery failed"]

    def test_canceled_delivery_cancels_order(self, engine, paid_with_delivery):
        self.post(engine, {"event_id": "evt_c", "resource": {"id": "del_1", "status": "canceled"}})
        assert load_order(engine, paid_with_delivery).status == OrderStatus.CANCELED.value

    def test_external_reference_creates_record(self, engine, make_order):
        order_id = make_order(status=OrderStatus.PAID)
        envelope = {
            "event_id": "evt_new",
            "data": {
                "delivery": {
                    "id": "del_9",
                    "status": "pickup",
                    "external_reference": order_id,
                    "fee": {"amount": 450, "currency_code": "eur"},
                }
            },
        }

        self.post(engine, envelope)

        delivery = delivery_for(engine, order_id)
        assert delivery.delivery_id == "del_9"
        assert delivery.status == "pickup"
        assert delivery.fee_total == 450
        assert delivery.currency == "eur"

    def test_late_event_for_replaced_delivery_is_ignored(self, engine, courier, rules, make_order):
        order_id = make_order(status=OrderStatus.PAID)
        with Session(engine) as session:
            session.add(Delivery(order_id=order_id, delivery_id="del_old", status="canceled"))
            session.commit()
        live = create_delivery(engine, courier, rules, create_request(order_id), "store-1", now=NOW)

        self.post(
            engine,
            {"event_id": "late", "data": {"id": "del_old", "status": "canceled", "external_reference_id": order_id}},
        )

        delivery = delivery_for(engine, order_id)
        assert delivery.delivery_id == live["id"]
        assert delivery.status == "created"
        assert load_order(engine, order_id).status == OrderStatus.PAID.value

    def test_envelope_reference_is_last_resort(self, engine, make_order):
        order_id = make_order(status=OrderStatus.PAID)
        self.post(engine, {"event_id": "evt_env", "external_reference_id": order_id, "data": {"id": "del_x", "status": "pickup"}})
        assert delivery_for(engine, order_id).delivery_id == "del_x"

    def test_duplicate_event_is_skipped(self, engine, paid_with_delivery):
        envelope = {"event_id": "evt_dup", "data": {"id": "del_1", "status": "pickup"}}
        self.post(engine, envelope)

        with Session(engine) as session:
            delivery = session.exec(select(Delivery).where(Delivery.delivery_id == "del_1")).one()
            delivery.status = "dropoff"
            session.add(delivery)
            session.commit()

        result = self.post(engine, envelope)

        assert result.duplicate is True
        assert delivery_for(engine, paid_with_delivery).status == "dropoff"

    def test_unknown_order_reference_is_tolerated(self, engine):
        result = self.post(engine, {"event_id": "evt_u", "data": {"id": "del_z", "status": "pickup", "external_reference": "ghost"}})
        assert result.received is True
        with Session(engine) as session:
            assert session.exec(select(Delivery)).all() == []
            assert session.get(WebhookEvent, "uber:evt_u") is not None

    def test_unreferenced_payload_is_acknowledged(self, engine):
        result = self.post(engine, {"kind": "ping"})
        assert result.received is True
        with Session(engine) as session:
            assert session.exec(select(WebhookEvent)).all() == []

    def test_signature_checked_when_secret_configured(self, engine, paid_with_delivery):
        envelope = {"event_id": "evt_s", "data": {"id": "del_1", "status": "dropoff"}}
        raw = json.dumps(envelope).encode("utf-8")
        good = hmac.new(b"uber-secret", raw, hashlib.sha256).hexdigest()

        with pytest.raises(InvalidRequest):
            handle_delivery_webhook(engine, raw, "sha256=" + "0" * 64, "uber-secret")

        handle_delivery_webhook(engine, raw, "sha256=" + good, "uber-secret")
        assert delivery_for(engine, paid_with_delivery).status == "dropoff"

    def test_invalid_json_is_rejected(self, engine):
        with pytest.raises(InvalidRequest):
            handle_delivery_webhook(engine, b"{not json", None, None)


class TestDeliveryEventId:
    def test_prefers_event_id(self):
        assert delivery_event_id({"event_id": "e1", "id": "x"}, b"{}") == "uber:e1"

    def test_envelope_id_names_event_when_delivery_nested(self):
        assert delivery_event_id({"id": "evt_9", "data": {"id": "del_1"}}, b"{}") == "uber:evt_9"

    def test_bare_delivery_falls_back_to_body_hash(self):
        raw = b'{"id": "del_1", "status": "pickup"}'
        expected = "uber:" + hashlib.sha256(raw).hexdigest()
        assert delivery_event_id({"id": "del_1", "status": "pickup"}, raw) == expected
