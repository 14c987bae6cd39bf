"""Order orchestration: checkout, payment webhooks, courier dispatch.

Three systems can fail independently here: the local database, Stripe and
Uber Direct. The rules that keep them consistent:

- external calls never run inside a database transaction;
- a webhook's ledger row and the order mutation it authorizes commit together,
  and a duplicate ledger row means the event was already handled;
- follow-up work (merchant notification, compensating deletes, alerts) runs
  through ``attempt`` and can never change what the caller is told.
"""

import hashlib
import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional, Union

import structlog
from pydantic import ValidationError
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

import idempotency
from eligibility import DeliveryRules, evaluate
from errors import Conflict, DeliveryGatewayError, GatewayError, InvalidRequest, NotFound, StorefrontError
from models import Delivery, Merchant, Order, OrderItem, OrderStatus, WebhookEvent, utcnow
from notifications import NotificationDispatcher
from observability import SideEffect, attempt, capture_exception, capture_message
from payments import PaymentGateway, WebhookVerificationError
from schemas import (
    ChargePayload,
    CheckoutRequest,
    DeliveryCancelRequest,
    DeliveryCreateRequest,
    DeliveryQuoteRequest,
    IntentPayload,
    validation_issues,
)
from settings import Settings
from uber import DeliveryGateway, DeliveryUpdate, InvalidSignature, delivery_payload, extract_delivery, verify_signature

logger = structlog.get_logger(__name__)

PROVIDER = "uber_direct"
BASIS_POINTS = 10_000

PAYMENT_SUCCEEDED = "payment_intent.succeeded"
PAYMENT_FAILED = "payment_intent.payment_failed"
PAYMENT_CANCELED = "payment_intent.canceled"
CHARGE_REFUNDED = "charge.refunded"
INTENT_EVENTS = (PAYMENT_SUCCEEDED, PAYMENT_FAILED, PAYMENT_CANCELED)

ANY_STATUS = frozenset(OrderStatus)
# Current statuses each trigger may move an order out of.
PAYMENT_SUCCEEDED_FROM = frozenset({OrderStatus.PENDING, OrderStatus.FAILED, OrderStatus.PAID})
PAYMENT_FAILED_FROM = frozenset({OrderStatus.PENDING, OrderStatus.FAILED})
PAYMENT_CANCELED_FROM = frozenset({OrderStatus.PENDING, OrderStatus.FAILED})
DELIVERY_OUTCOME_FROM = frozenset({OrderStatus.PAID})

DELIVERY_TO_ORDER_STATUS = {
    "delivered": OrderStatus.PAID,
    "canceled": OrderStatus.CANCELED,
    "failed": OrderStatus.FAILED,
}


@dataclass(frozen=True)
class CheckoutResult:
    order_id: str
    client_secret: str
    amount: int
    currency: str
    replayed: bool = False

    def to_payload(self) -> dict:
        return {
            "clientSecret": self.client_secret,
            "orderId": self.order_id,
            "amount": self.amount,
            "currency": self.currency,
        }


@dataclass(frozen=True)
class WebhookResult:
    received: bool = True
    duplicate: bool = False
    event_id: Optional[str] = None
    order_id: Optional[str] = None
    side_effects: tuple[SideEffect, ...] = ()

    def to_payload(self) -> dict:
        return {"received": self.received}


def application_fee(subtotal: int, commission_bps: int) -> int:
    return subtotal * commission_bps // BASIS_POINTS


def transition(order: Optional[Order], target: OrderStatus, allowed_from: frozenset, trigger: str) -> bool:
    """Move ``order`` to ``target`` if its current status allows it; otherwise log and skip."""
    if order is None:
        logger.warning("order_transition_no_order", target=target.value, trigger=trigger)
        return False
    if OrderStatus(order.status) not in allowed_from:
        logger.warning(
            "order_transition_skipped",
            order_id=order.id,
            current=order.status,
            target=target.value,
            trigger=trigger,
        )
        return False
    order.status = target.value
    return True


def record_event(session: Session, event_id: str, event_type: str) -> bool:
    """Insert the ledger row; False means the event id was already recorded."""
    session.add(WebhookEvent(id=event_id, type=event_type))
    try:
        session.flush()
    except IntegrityError:
        session.rollback()
        return False
    return True


# ---------------------------------------------------------------------------
# Checkout
# ---------------------------------------------------------------------------

def create_checkout(
    engine: Engine,
    gateway: PaymentGateway,
    request: CheckoutRequest,
    supplied_key: Optional[str] = None,
) -> CheckoutResult:
    amount_total = request.amount_total
    if amount_total <= 0:
        raise InvalidRequest("Invalid amount")

    key = idempotency.checkout_key(request.merchant_id, request.currency, amount_total, request.items)
    if supplied_key and supplied_key != key:
        raise InvalidRequest("Idempotency-Key does not match the request", reason="idempotency_mismatch")

    with Session(engine) as session:
        existing = _order_by_key(session, key)
        if existing is not None:
            return _replay(session, gateway, existing, request, amount_total)

        merchant = session.get(Merchant, request.merchant_id)
        if merchant is None or not merchant.stripe_account_id:
            raise Conflict("Merchant is not onboarded with Stripe", reason="merchant_not_onboarded")
        destination = merchant.stripe_account_id
        fee_amount = application_fee(request.subtotal, merchant.commission_bps)

        order = Order(
            merchant_id=merchant.id,
            currency=request.currency,
            amount_total=amount_total,
            idempotency_key=key,
            items=[OrderItem(name=it.name, unit_amount=it.unit_amount, quantity=it.quantity) for it in request.items],
        )
        if request.mode == "delivery":
            order.delivery = Delivery(provider=PROVIDER, fee_total=request.delivery_fee or None, currency=request.currency)
        order_id = order.id
        session.add(order)
        try:
            session.commit()
        except IntegrityError:
            # A concurrent request with the same key won the insert.
            session.rollback()
            existing = _order_by_key(session, key)
            if existing is None:
                raise
            logger.info("checkout_replay_after_race", order_id=existing.id)
            return _replay(session, gateway, existing, request, amount_total)

    metadata = {
        "orderId": order_id,
        "merchantId": request.merchant_id,
        "subtotalMinor": str(request.subtotal),
        "serviceFeeMinor": str(request.service_fee),
        "deliveryFeeMinor": str(request.delivery_fee),
        "tipMinor": str(request.tip),
    }
    if request.mode:
        metadata["fulfillmentMode"] = request.mode
    if request.extras and request.extras.note:
        metadata["note"] = request.extras.note

    try:
        intent = gateway.create_intent(
            amount=amount_total,
            currency=request.currency,
            metadata=metadata,
            application_fee_amount=fee_amount,
            destination_account=destination,
            idempotency_key=key,
            receipt_email=request.customer_email,
        )
    except Exception as e:
        attempt(
            "compensate",
            lambda: _delete_order(engine, order_id),
            tags={"handler": "checkout"},
            extra={"order_id": order_id},
        )
        logger.warning("checkout_intent_failed", order_id=order_id, error=str(e))
        if isinstance(e, GatewayError):
            raise
        raise GatewayError(str(e) or "Stripe error") from e

    with Session(engine) as session:
        order = session.get(Order, order_id)
        order.stripe_payment_intent_id = intent.id
        order.stripe_client_secret = intent.client_secret
        session.add(order)
        session.commit()

    logger.info("checkout_created", order_id=order_id, amount=amount_total, application_fee=fee_amount)
    return CheckoutResult(order_id=order_id, client_secret=intent.client_secret, amount=amount_total, currency=request.currency)


def _order_by_key(session: Session, key: str) -> Optional[Order]:
    return session.exec(select(Order).where(Order.idempotency_key == key)).first()


def _replay(session: Session, gateway: PaymentGateway, order: Order, request: CheckoutRequest, amount_total: int) -> CheckoutResult:
    if order.merchant_id != request.merchant_id or order.currency != request.currency or order.amount_total != amount_total:
        raise Conflict("Idempotent request does not match the original order", reason="idempotency_conflict")

    if order.stripe_client_secret:
        return CheckoutResult(order.id, order.stripe_client_secret, order.amount_total, order.currency, replayed=True)

    if not order.stripe_payment_intent_id:
        raise Conflict("A payment session is already being created for this order", reason="payment_in_progress")

    intent = gateway.retrieve_intent(order.stripe_payment_intent_id)
    if not intent.client_secret:
        raise GatewayError("Existing payment intent has no client secret")
    order.stripe_client_secret = intent.client_secret
    session.add(order)
    session.commit()
    return CheckoutResult(order.id, intent.client_secret, order.amount_total, order.currency, replayed=True)


def _delete_order(engine: Engine, order_id: str) -> None:
    with Session(engine) as session:
        order = session.get(Order, order_id)
        if order is not None:
            session.delete(order)
            session.commit()


# ---------------------------------------------------------------------------
# Payment webhook
# ---------------------------------------------------------------------------

def handle_payment_webhook(
    engine: Engine,
    gateway: PaymentGateway,
    dispatcher: Optional[NotificationDispatcher],
    payload: bytes,
    signature: Optional[str],
    settings: Settings,
    now: Optional[datetime] = None,
) -> WebhookResult:
    now = now or utcnow()
    tags = {"handler": "stripe-webhook"}

    if not signature:
        capture_message("Stripe webhook without signature", level="warning", tags=tags)
        raise InvalidRequest("Missing signature")
    if not gateway.webhook_secret:
        capture_message("Stripe webhook secret missing", level="error", tags=tags)
        raise StorefrontError("Server configuration incomplete")

    try:
        event = gateway.parse_webhook(payload, signature)
    except WebhookVerificationError as e:
        capture_exception(e, tags={**tags, "stage": "verify"}, extra={"raw_length": len(payload)})
        raise InvalidRequest(f"Webhook Error: {e}") from e

    alerts: list[tuple[str, dict, dict]] = []
    if event.created is not None:
        latency = now.timestamp() - event.created
        if latency > settings.webhook_latency_warning_seconds:
            alerts.append(
                (
                    "Stripe webhook latency exceeded threshold",
                    {**tags, "event_type": event.type},
                    {"event_id": event.id, "latency_ms": int(latency * 1000)},
                )
            )

    intent = charge = None
    try:
        if event.type in INTENT_EVENTS:
            intent = IntentPayload.model_validate(event.data_object)
        elif event.type == CHARGE_REFUNDED:
            charge = ChargePayload.model_validate(event.data_object)
    except ValidationError as e:
        issues = validation_issues(e.errors())
        capture_message(
            "Stripe webhook payload invalid",
            level="warning",
            tags={**tags, "stage": "validate", "event_type": event.type},
            extra={"issues": issues},
        )
        raise InvalidRequest("Invalid request", issues=issues) from e

    notify_order_id = None
    try:
        with Session(engine) as session:
            if not record_event(session, event.id, event.type):
                logger.info("webhook_duplicate", event_id=event.id, event_type=event.type)
                return WebhookResult(duplicate=True, event_id=event.id)

            if event.type == PAYMENT_SUCCEEDED and intent.order_id:
                order = session.get(Order, intent.order_id)
                if transition(order, OrderStatus.PAID, PAYMENT_SUCCEEDED_FROM, event.type):
                    if intent.settled_amount is not None:
                        order.amount_total = intent.settled_amount
                    order.stripe_payment_intent_id = intent.id
                    if order.notified_at is None:
                        notify_order_id = order.id

            elif event.type == PAYMENT_FAILED and intent.order_id:
                order = session.get(Order, intent.order_id)
                if transition(order, OrderStatus.FAILED, PAYMENT_FAILED_FROM, event.type):
                    order.stripe_payment_intent_id = intent.id
                alerts.append(
                    (
                        "Stripe payment failed",
                        {**tags, "order_id": intent.order_id},
                        {"payment_intent_id": intent.id, "reason": intent.failure_message},
                    )
                )

            elif event.type == PAYMENT_CANCELED and intent.order_id:
                order = session.get(Order, intent.order_id)
                if transition(order, OrderStatus.CANCELED, PAYMENT_CANCELED_FROM, event.type):
                    order.stripe_payment_intent_id = intent.id

            elif event.type == CHARGE_REFUNDED:
                refunded = session.exec(select(Order).where(Order.stripe_payment_intent_id == charge.intent_id)).all()
                for order in refunded:
                    transition(order, OrderStatus.CANCELED, ANY_STATUS, event.type)

            session.commit()
    except Exception as e:
        capture_exception(e, tags={**tags, "stage": "persist"}, extra={"event_id": event.id, "event_type": event.type})
        raise StorefrontError(str(e) or "Persistence failure") from e

    side_effects = []
    if notify_order_id:
        if dispatcher is not None:
            side_effects.append(
                attempt(
                    "notify",
                    lambda: dispatcher.notify_merchant(notify_order_id),
                    tags=tags,
                    extra={"order_id": notify_order_id},
                )
            )
        side_effects.append(
            attempt(
                "stamp_notified",
                lambda: _stamp_notified(engine, notify_order_id, now),
                tags=tags,
                extra={"order_id": notify_order_id},
            )
        )

    for message, alert_tags, extra in alerts:
        capture_message(message, level="warning", tags=alert_tags, extra=extra)

    order_id = intent.order_id if intent is not None else None
    logger.info("webhook_processed", event_id=event.id, event_type=event.type, order_id=order_id)
    return WebhookResult(event_id=event.id, order_id=order_id, side_effects=tuple(side_effects))


def _stamp_notified(engine: Engine, order_id: str, now: datetime) -> None:
    with Session(engine) as session:
        order = session.get(Order, order_id)
        if order is not None:
            order.notified_at = now
            session.add(order)
            session.commit()


# ---------------------------------------------------------------------------
# Merchant onboarding
# ---------------------------------------------------------------------------

def onboard_merchant(engine: Engine, gateway: PaymentGateway, merchant_id: str, settings: Settings) -> str:
    """Ensure the merchant has a connected account; return an onboarding link URL."""
    with Session(engine) as session:
        merchant = session.get(Merchant, merchant_id)
        if merchant is None:
            raise NotFound("Merchant not found")
        account_id = merchant.stripe_account_id
        if not account_id:
            account_id = gateway.create_connect_account(settings.stripe_connect_country)
            merchant.stripe_account_id = account_id
            session.add(merchant)
            session.commit()
            logger.info("merchant_account_created", merchant_id=merchant_id, account_id=account_id)

    admin_url = f"{settings.app_url}/admin"
    return gateway.create_onboarding_link(account_id, refresh_url=admin_url, return_url=admin_url)


# ---------------------------------------------------------------------------
# Delivery
# ---------------------------------------------------------------------------

def _check_eligibility(rules: DeliveryRules, request, now: datetime) -> None:
    result = evaluate(request.dropoff, now, rules)
    if not result.eligible:
        raise Conflict(
            result.message or "Delivery is unavailable for this address.",
            reason=result.reason,
            fallback=result.fallback or "pickup",
        )


def _manifest(request) -> dict:
    return {"items": [item.model_dump(exclude_none=True) for item in request.items]}


def _upsert_delivery(session: Session, order_id: str, **fields: Any) -> Delivery:
    delivery = session.exec(select(Delivery).where(Delivery.order_id == order_id)).first()
    if delivery is None:
        delivery = Delivery(order_id=order_id, provider=PROVIDER)
    for name, value in fields.items():
        if value is not None:
            setattr(delivery, name, value)
    delivery.updated_at = utcnow()
    session.add(delivery)
    return delivery


def _delivery_fields(update: DeliveryUpdate) -> dict:
    return {
        "status": update.status,
        "tracking_url": update.tracking_url,
        "estimate_id": update.quote_id,
        "fee_total": update.fee_total,
        "currency": update.currency,
        "pickup_at_ms": update.pickup_at_ms,
    }


def _delivery_response(delivery: Delivery, currency: str) -> dict:
    response = {
        "id": delivery.delivery_id,
        "delivery_id": delivery.delivery_id,
        "status": delivery.status,
        "tracking_url": delivery.tracking_url,
        "quote_id": delivery.estimate_id,
        "currency": delivery.currency or currency,
    }
    if delivery.fee_total is not None:
        response["total"] = {"amount": delivery.fee_total, "currency": delivery.currency or currency}
    return {k: v for k, v in response.items() if v is not None}


def quote_delivery(
    engine: Engine,
    gateway: DeliveryGateway,
    rules: DeliveryRules,
    request: DeliveryQuoteRequest,
    store_id: str,
    now: Optional[datetime] = None,
) -> Any:
    _check_eligibility(rules, request, now or utcnow())

    order_exists = False
    if request.order_id:
        with Session(engine) as session:
            order_exists = session.get(Order, request.order_id) is not None

    key = idempotency.derive(
        "uber-quote",
        {
            "storeId": store_id,
            "orderId": request.order_id,
            "dropoff": request.dropoff.essentials(),
            "items": idempotency.normalize_manifest_items(request.items),
        },
    )
    body = {
        "external_store_id": store_id,
        "pickup": request.pickup.to_provider(),
        "dropoff": request.dropoff.to_provider(),
        "manifest": _manifest(request),
    }
    if request.order_id:
        body["external_reference_id"] = request.order_id

    try:
        data = gateway.quote(body, idempotency_key=key)
    except DeliveryGatewayError as e:
        capture_exception(e, tags={"handler": "uber-quote"}, extra={"order_id": request.order_id})
        raise

    if isinstance(data, dict) and request.order_id and order_exists:
        update = extract_delivery(data)
        estimate_id = update.quote_id or data.get("id")
        if estimate_id or update.fee_total is not None:
            with Session(engine) as session:
                _upsert_delivery(
                    session,
                    request.order_id,
                    estimate_id=estimate_id,
                    fee_total=update.fee_total,
                    currency=update.currency,
                )
                session.commit()
    return data


def create_delivery(
    engine: Engine,
    gateway: DeliveryGateway,
    rules: DeliveryRules,
    request: DeliveryCreateRequest,
    store_id: Union[str, Callable[[], str]],
    now: Optional[datetime] = None,
) -> Any:
    """Dispatch a courier for a paid order.

    ``store_id`` may be a callable; it is only resolved once the order is
    known to be paid and without an active delivery.
    """
    with Session(engine) as session:
        order = session.get(Order, request.order_id)
        if order is None:
            raise NotFound("Order not found")
        if order.status != OrderStatus.PAID.value:
            raise Conflict("Order must be paid before delivery", reason="order_not_paid")
        if order.delivery is not None and order.delivery.is_active:
            logger.info("delivery_already_active", order_id=order.id, delivery_id=order.delivery.delivery_id)
            return _delivery_response(order.delivery, order.currency)
        order_id, currency = order.id, order.currency

    _check_eligibility(rules, request, now or utcnow())
    if callable(store_id):
        store_id = store_id()

    key = idempotency.derive(
        "uber-create",
        {
            "storeId": store_id,
            "orderId": order_id,
            "quoteId": request.quote_id,
            "dropoff": request.dropoff.essentials(),
            "items": idempotency.normalize_manifest_items(request.items),
        },
    )
    body = {
        "external_store_id": store_id,
        "pickup": request.pickup.to_provider(),
        "dropoff": request.dropoff.to_provider(),
        "manifest": _manifest(request),
        "external_reference_id": order_id,
        "external_order_id": order_id,
    }
    if request.quote_id:
        body["quote_id"] = request.quote_id

    try:
        data = gateway.create(body, idempotency_key=key)
    except DeliveryGatewayError as e:
        capture_exception(e, tags={"handler": "uber-create"}, extra={"order_id": order_id})
        raise

    update = extract_delivery(data if isinstance(data, dict) else {})
    with Session(engine) as session:
        _upsert_delivery(
            session,
            order_id,
            delivery_id=update.delivery_id,
            status=update.status,
            tracking_url=update.tracking_url,
            estimate_id=update.quote_id or request.quote_id,
            fee_total=update.fee_total,
            currency=update.currency or currency,
        )
        session.commit()

    logger.info("delivery_created", order_id=order_id, delivery_id=update.delivery_id, status=update.status)
    return data


def cancel_delivery(engine: Engine, gateway: DeliveryGateway, request: DeliveryCancelRequest) -> Any:
    reason = request.reason or "merchant_canceled"
    key = idempotency.derive("uber-cancel", {"deliveryId": request.delivery_id, "reason": reason})

    try:
        data = gateway.cancel(request.delivery_id, reason, idempotency_key=key)
    except DeliveryGatewayError as e:
        capture_exception(e, tags={"handler": "uber-cancel"}, extra={"delivery_id": request.delivery_id})
        raise

    update = extract_delivery(data) if isinstance(data, dict) else DeliveryUpdate()
    delivery_id = update.delivery_id or request.delivery_id
    status = update.status or "canceled"
    target = OrderStatus.FAILED if status == "failed" else OrderStatus.CANCELED

    with Session(engine) as session:
        for delivery in session.exec(select(Delivery).where(Delivery.delivery_id == delivery_id)).all():
            delivery.status = status
            delivery.updated_at = utcnow()
            session.add(delivery)
            transition(session.get(Order, delivery.order_id), target, DELIVERY_OUTCOME_FROM, "delivery.cancel")
        session.commit()

    return data if data else {"deliveryId": delivery_id, "status": "canceled"}


def refresh_delivery_status(engine: Engine, gateway: DeliveryGateway, delivery_id: str) -> Any:
    try:
        data = gateway.status(delivery_id)
    except DeliveryGatewayError as e:
        capture_exception(e, tags={"handler": "uber-status"}, extra={"delivery_id": delivery_id})
        raise

    if isinstance(data, dict):
        update = extract_delivery(data)
        with Session(engine) as session:
            for delivery in session.exec(select(Delivery).where(Delivery.delivery_id == delivery_id)).all():
                for name, value in (
                    ("status", update.status),
                    ("tracking_url", update.tracking_url),
                    ("fee_total", update.fee_total),
                    ("currency", update.currency),
                ):
                    if value is not None:
                        setattr(delivery, name, value)
                delivery.updated_at = utcnow()
                session.add(delivery)
            session.commit()
    return data


# ---------------------------------------------------------------------------
# Delivery webhook
# ---------------------------------------------------------------------------

def delivery_event_id(envelope: dict, raw_body: bytes) -> str:
    """Ledger id for a courier event.

    A top-level ``id`` only names the event when the delivery itself is nested
    under ``data``/``resource``; on a bare delivery object it is the delivery
    id, so such bodies are keyed by their content hash instead.
    """
    event_id = envelope.get("event_id")
    if not event_id and delivery_payload(envelope) is not envelope:
        event_id = envelope.get("id")
    if not event_id:
        event_id = hashlib.sha256(raw_body).hexdigest()
    return f"uber:{event_id}"


def _is_superseded(session: Session, order_id: str, delivery_id: Optional[str]) -> bool:
    """True when the order already tracks a different courier delivery."""
    if not delivery_id:
        return False
    current = session.exec(select(Delivery).where(Delivery.order_id == order_id)).first()
    return current is not None and current.delivery_id is not None and current.delivery_id != delivery_id


def handle_delivery_webhook(
    engine: Engine,
    raw_body: bytes,
    signature: Optional[str],
    secret: Optional[str],
) -> WebhookResult:
    tags = {"handler": "uber-webhook"}

    if secret and signature:
        try:
            verify_signature(raw_body, signature, secret)
        except InvalidSignature as e:
            capture_exception(e, tags={**tags, "stage": "verify"})
            raise InvalidRequest(str(e)) from e

    try:
        envelope = json.loads(raw_body) if raw_body else {}
    except ValueError as e:
        capture_exception(e, tags={**tags, "stage": "parse"})
        raise InvalidRequest("Invalid JSON payload") from e
    if not isinstance(envelope, dict):
        raise InvalidRequest("Invalid JSON payload")

    update = extract_delivery(envelope)
    if not update.delivery_id and not update.order_ref and not update.envelope_order_ref:
        logger.info("delivery_webhook_unreferenced")
        return WebhookResult()

    event_id = delivery_event_id(envelope, raw_body)
    event_type = envelope.get("kind") or envelope.get("event_type") or "delivery.update"
    fields = _delivery_fields(update)
    order_id = update.order_ref

    try:
        with Session(engine) as session:
            if not record_event(session, event_id, event_type):
                logger.info("webhook_duplicate", event_id=event_id, event_type=event_type)
                return WebhookResult(duplicate=True, event_id=event_id)

            if not order_id and update.delivery_id:
                known = session.exec(select(Delivery).where(Delivery.delivery_id == update.delivery_id)).first()
                if known is not None:
                    order_id = known.order_id
            if not order_id:
                order_id = update.envelope_order_ref

            if update.delivery_id:
                for delivery in session.exec(select(Delivery).where(Delivery.delivery_id == update.delivery_id)).all():
                    for name, value in fields.items():
                        if value is not None:
                            setattr(delivery, name, value)
                    delivery.updated_at = utcnow()
                    session.add(delivery)

            if order_id:
                order = session.get(Order, order_id)
                if order is None:
                    logger.warning("delivery_webhook_unknown_order", order_id=order_id, delivery_id=update.delivery_id)
                elif _is_superseded(session, order_id, update.delivery_id):
                    logger.info(
                        "delivery_webhook_superseded",
                        order_id=order_id,
                        delivery_id=update.delivery_id,
                        status=update.status,
                    )
                else:
                    _upsert_delivery(session, order_id, delivery_id=update.delivery_id, **fields)
                    target = DELIVERY_TO_ORDER_STATUS.get(update.status or "")
                    if target is not None:
                        transition(order, target, DELIVERY_OUTCOME_FROM, f"delivery.{update.status}")

            session.commit()
    except Exception as e:
        capture_exception(
            e,
            tags={**tags, "stage": "persist"},
            extra={"delivery_id": update.delivery_id, "order_id": order_id, "status": update.status},
        )
        raise StorefrontError(str(e) or "Persistence failure") from e

    if update.status in ("failed", "canceled"):
        capture_message(
            f"Uber delivery {update.status}",
            level="warning",
            tags={**tags, "status": update.status},
            extra={"delivery_id": update.delivery_id, "order_id": order_id, "quote_id": update.quote_id},
        )
    return WebhookResult(event_id=event_id, order_id=order_id)
