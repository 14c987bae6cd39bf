"""Payment gateway port and adapters.

``StripeGateway`` talks to Stripe through the official SDK;
``FakePaymentGateway`` is an in-memory stand-in for development and tests.
``get_gateway()`` / ``set_gateway()`` select the process-wide adapter.
"""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional
from uuid import uuid4

import stripe
import structlog

from errors import GatewayError
from settings import Settings, get_settings

logger = structlog.get_logger(__name__)


class WebhookVerificationError(Exception):
    """The webhook body could not be verified or parsed."""


@dataclass(frozen=True)
class PaymentIntentResult:
    id: str
    client_secret: Optional[str]
    status: Optional[str] = None


@dataclass(frozen=True)
class PaymentEvent:
    id: str
    type: str
    created: Optional[int] = None
    data_object: dict = field(default_factory=dict)

    @classmethod
    def from_json(cls, data: dict) -> "PaymentEvent":
        if not isinstance(data, dict) or not data.get("id") or not data.get("type"):
            raise WebhookVerificationError("Invalid payload")
        obj = (data.get("data") or {}).get("object") or {}
        created = data.get("created")
        return cls(
            id=data["id"],
            type=data["type"],
            created=created if isinstance(created, int) else None,
            data_object=obj if isinstance(obj, dict) else {},
        )


class PaymentGateway(ABC):
    webhook_secret: Optional[str] = None

    @abstractmethod
    def create_intent(
        self,
        amount: int,
        currency: str,
        metadata: dict,
        application_fee_amount: int,
        destination_account: str,
        idempotency_key: str,
        receipt_email: Optional[str] = None,
    ) -> PaymentIntentResult:
        """Create a payment intent with a destination transfer to the merchant."""
        ...

    @abstractmethod
    def retrieve_intent(self, intent_id: str) -> PaymentIntentResult:
        ...

    @abstractmethod
    def parse_webhook(self, payload: bytes, signature: str) -> PaymentEvent:
        """Verify the signature and parse the event; raises WebhookVerificationError."""
        ...

    @abstractmethod
    def create_connect_account(self, country: str) -> str:
        ...

    @abstractmethod
    def create_onboarding_link(self, account_id: str, refresh_url: str, return_url: str) -> str:
        ...


def _gateway_error(exc: "stripe.StripeError") -> GatewayError:
    message = getattr(exc, "user_message", None) or str(exc) or "Stripe error"
    return GatewayError(message, status=getattr(exc, "http_status", None), body=getattr(exc, "http_body", None))


class StripeGateway(PaymentGateway):
    def __init__(self, api_key: Optional[str], webhook_secret: Optional[str]) -> None:
        if not api_key:
            logger.warning("stripe_secret_key_missing")
        stripe.api_key = api_key or "sk_test_placeholder"
        self.webhook_secret = webhook_secret

    def create_intent(
        self,
        amount,
        currency,
        metadata,
        application_fee_amount,
        destination_account,
        idempotency_key,
        receipt_email=None,
    ):
        params = {
            "amount": amount,
            "currency": currency,
            "automatic_payment_methods": {"enabled": True},
            "metadata": metadata,
            "application_fee_amount": application_fee_amount,
            "transfer_data": {"destination": destination_account},
        }
        if receipt_email:
            params["receipt_email"] = receipt_email
        try:
            intent = stripe.PaymentIntent.create(idempotency_key=idempotency_key, **params)
        except stripe.StripeError as e:
            raise _gateway_error(e) from e

        if not intent.client_secret:
            raise GatewayError("Payment intent has no client secret")
        return PaymentIntentResult(id=intent.id, client_secret=intent.client_secret, status=intent.status)

    def retrieve_intent(self, intent_id):
        try:
            intent = stripe.PaymentIntent.retrieve(intent_id)
        except stripe.StripeError as e:
            raise _gateway_error(e) from e
        return PaymentIntentResult(id=intent.id, client_secret=intent.client_secret, status=intent.status)

    def parse_webhook(self, payload, signature):
        try:
            stripe.Webhook.construct_event(payload=payload, sig_header=signature, secret=self.webhook_secret)
        except ValueError as e:
            raise WebhookVerificationError("Invalid payload") from e
        except stripe.SignatureVerificationError as e:
            raise WebhookVerificationError(f"Invalid signature: {e}") from e
        return PaymentEvent.from_json(json.loads(payload))

    def create_connect_account(self, country):
        try:
            account = stripe.Account.create(
                type="express",
                country=country,
                capabilities={
                    "card_payments": {"requested": True},
                    "transfers": {"requested": True},
                },
                business_type="individual",
            )
        except stripe.StripeError as e:
            raise _gateway_error(e) from e
        return account.id

    def create_onboarding_link(self, account_id, refresh_url, return_url):
        try:
            link = stripe.AccountLink.create(
                account=account_id,
                refresh_url=refresh_url,
                return_url=return_url,
                type="account_onboarding",
            )
        except stripe.StripeError as e:
            raise _gateway_error(e) from e
        return link.url


class FakePaymentGateway(PaymentGateway):
    """Configurable fake gateway; intents are deduplicated by idempotency key like Stripe's."""

    def __init__(self, signature: str = "test-signature") -> None:
        self.signature = signature
        self.webhook_secret = "whsec_test"
        self.should_succeed: bool = True
        self.failure_reason: str = "Card declined"
        self.calls: list[dict] = []
        self.intents: dict[str, PaymentIntentResult] = {}
        self._by_key: dict[str, str] = {}

    def configure(self, should_succeed: bool, failure_reason: str = "Card declined") -> None:
        self.should_succeed = should_succeed
        self.failure_reason = failure_reason

    def create_intent(
        self,
        amount,
        currency,
        metadata,
        application_fee_amount,
        destination_account,
        idempotency_key,
        receipt_email=None,
    ):
        self.calls.append(
            {
                "method": "create_intent",
                "amount": amount,
                "currency": currency,
                "metadata": dict(metadata),
                "application_fee_amount": application_fee_amount,
                "destination_account": destination_account,
                "idempotency_key": idempotency_key,
                "receipt_email": receipt_email,
            }
        )
        if not self.should_succeed:
            raise GatewayError(self.failure_reason, status=402)

        if idempotency_key in self._by_key:
            return self.intents[self._by_key[idempotency_key]]

        intent_id = f"pi_fake_{uuid4().hex[:12]}"
        intent = PaymentIntentResult(
            id=intent_id,
            client_secret=f"{intent_id}_secret_{uuid4().hex[:8]}",
            status="requires_payment_method",
        )
        self.intents[intent_id] = intent
        self._by_key[idempotency_key] = intent_id
        return intent

    def retrieve_intent(self, intent_id):
        self.calls.append({"method": "retrieve_intent", "intent_id": intent_id})
        if intent_id not in self.intents:
            raise GatewayError(f"No such payment_intent: '{intent_id}'", status=404)
        return self.intents[intent_id]

    def parse_webhook(self, payload, signature):
        if signature != self.signature:
            raise WebhookVerificationError("Invalid signature")
        try:
            data = json.loads(payload)
        except ValueError as e:
            raise WebhookVerificationError("Invalid payload") from e
        return PaymentEvent.from_json(data)

    def create_connect_account(self, country):
        self.calls.append({"method": "create_connect_account", "country": country})
        return f"acct_fake_{uuid4().hex[:12]}"

    def create_onboarding_link(self, account_id, refresh_url, return_url):
        self.calls.append(
            {
                "method": "create_onboarding_link",
                "account_id": account_id,
                "refresh_url": refresh_url,
                "return_url": return_url,
            }
        )
        return f"https://connect.stripe.test/setup/{account_id}"


_current_gateway: Optional[PaymentGateway] = None


def get_gateway(settings: Optional[Settings] = None) -> PaymentGateway:
    """Return the active gateway, building a StripeGateway from settings on first use."""
    global _current_gateway
    if _current_gateway is None:
        settings = settings or get_settings()
        _current_gateway = StripeGateway(settings.stripe_secret_key, settings.stripe_webhook_secret)
    return _current_gateway


def set_gateway(gateway: PaymentGateway) -> None:
    global _current_gateway
    _current_gateway = gateway


def reset_gateway() -> None:
    global _current_gateway
    _current_gateway = None
