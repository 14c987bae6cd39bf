from typing import Optional

import structlog
from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.engine import Engine
from starlette.concurrency import run_in_threadpool

import orders
from database import get_engine, init_db
from eligibility import DeliveryRules
from errors import InvalidRequest, StorefrontError
from notifications import NotificationDispatcher
from observability import configure_logging
from payments import PaymentGateway, get_gateway
from schemas import (
    CheckoutRequest,
    ConnectOnboardRequest,
    DeliveryCancelRequest,
    DeliveryCreateRequest,
    DeliveryQuoteRequest,
    validation_issues,
)
from settings import Settings, get_settings
from uber import DeliveryGateway, get_delivery_gateway

logger = structlog.get_logger(__name__)

configure_logging(get_settings().log_level, get_settings().log_json)

app = FastAPI(title="storefront")


@app.on_event("startup")
def on_startup():
    init_db()
    logger.info("storefront_started")


@app.exception_handler(StorefrontError)
async def storefront_error_handler(request: Request, exc: StorefrontError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={"error": "invalid request", "issues": validation_issues(exc.errors())},
    )


# Dependencies. Gateways resolve to the process-wide adapters; the rest are swapped through app.dependency_overrides in tests.

def payment_gateway() -> PaymentGateway:
    return get_gateway()


def delivery_gateway() -> DeliveryGateway:
    return get_delivery_gateway()


def delivery_rules(settings: Settings = Depends(get_settings)) -> DeliveryRules:
    return DeliveryRules.from_settings(settings)


def notification_dispatcher(
    engine: Engine = Depends(get_engine),
    settings: Settings = Depends(get_settings),
) -> NotificationDispatcher:
    return NotificationDispatcher(engine, settings)


def store_id(settings: Settings = Depends(get_settings)) -> str:
    try:
        return settings.require_uber_store_id()
    except RuntimeError as e:
        raise StorefrontError(str(e), reason="config") from e


@app.get("/health")
def health():
    return {"status": "ok"}


@app.post("/checkout")
def checkout(
    body: CheckoutRequest,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    engine: Engine = Depends(get_engine),
    gateway: PaymentGateway = Depends(payment_gateway),
):
    result = orders.create_checkout(engine, gateway, body, idempotency_key)
    return result.to_payload()


@app.post("/webhooks/stripe")
async def webhook_stripe(
    request: Request,
    engine: Engine = Depends(get_engine),
    gateway: PaymentGateway = Depends(payment_gateway),
    dispatcher: NotificationDispatcher = Depends(notification_dispatcher),
    settings: Settings = Depends(get_settings),
):
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")

    result = await run_in_threadpool(
        orders.handle_payment_webhook, engine, gateway, dispatcher, payload, sig_header, settings
    )
    return result.to_payload()


@app.post("/connect/onboard")
def connect_onboard(
    body: ConnectOnboardRequest,
    engine: Engine = Depends(get_engine),
    gateway: PaymentGateway = Depends(payment_gateway),
    settings: Settings = Depends(get_settings),
):
    url = orders.onboard_merchant(engine, gateway, body.merchant_id, settings)
    return {"url": url}


@app.post("/uber/quote")
def uber_quote(
    body: DeliveryQuoteRequest,
    engine: Engine = Depends(get_engine),
    gateway: DeliveryGateway = Depends(delivery_gateway),
    rules: DeliveryRules = Depends(delivery_rules),
    store: str = Depends(store_id),
):
    return orders.quote_delivery(engine, gateway, rules, body, store)


@app.post("/uber/create")
def uber_create(
    body: DeliveryCreateRequest,
    engine: Engine = Depends(get_engine),
    gateway: DeliveryGateway = Depends(delivery_gateway),
    rules: DeliveryRules = Depends(delivery_rules),
    settings: Settings = Depends(get_settings),
):
    return orders.create_delivery(engine, gateway, rules, body, lambda: store_id(settings))


@app.post("/uber/cancel")
def uber_cancel(
    body: DeliveryCancelRequest,
    engine: Engine = Depends(get_engine),
    gateway: DeliveryGateway = Depends(delivery_gateway),
):
    return orders.cancel_delivery(engine, gateway, body)


@app.get("/uber/status")
def uber_status(
    delivery_id: Optional[str] = Query(default=None, alias="deliveryId"),
    engine: Engine = Depends(get_engine),
    gateway: DeliveryGateway = Depends(delivery_gateway),
):
    if not delivery_id:
        raise InvalidRequest("deliveryId required")
    return orders.refresh_delivery_status(engine, gateway, delivery_id)


@app.post("/uber/webhook")
async def webhook_uber(
    request: Request,
    engine: Engine = Depends(get_engine),
    settings: Settings = Depends(get_settings),
):
    payload = await request.body()
    sig_header = request.headers.get("x-uber-signature") or request.headers.get("uber-signature")

    result = await run_in_threadpool(
        orders.handle_delivery_webhook, engine, payload, sig_header, settings.uber_webhook_secret
    )
    return result.to_payload()
