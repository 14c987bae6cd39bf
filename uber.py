"""Uber Direct courier API client.

``UberDirectClient`` authenticates with OAuth2 client credentials, keeps the
bearer token in a ``TokenCache`` and retries 429/5xx responses a bounded
number of times. Without credentials the app runs against ``MockUberDirect``,
an in-process stand-in that dedupes by idempotency key like the real API.
"""

import hashlib
import hmac
import json
import math
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Callable, Optional
from urllib.parse import quote as url_quote
from uuid import uuid4

import requests
import structlog

from errors import DeliveryGatewayError
from settings import Settings, get_settings

logger = structlog.get_logger(__name__)

TOKEN_MARGIN_SECONDS = 30
DEFAULT_TOKEN_TTL_SECONDS = 3600
DEFAULT_SCOPE = "delivery"

BACKOFF_BASE_SECONDS = 0.2
BACKOFF_CAP_SECONDS = 5.0
RETRY_AFTER_CAP_SECONDS = 10.0


class InvalidSignature(Exception):
    pass


class DeliveryGateway(ABC):
    @abstractmethod
    def quote(self, body: dict, idempotency_key: Optional[str] = None) -> Any:
        ...

    @abstractmethod
    def create(self, body: dict, idempotency_key: Optional[str] = None) -> Any:
        ...

    @abstractmethod
    def cancel(self, delivery_id: str, reason: str, idempotency_key: Optional[str] = None) -> Any:
        ...

    @abstractmethod
    def status(self, delivery_id: str) -> Any:
        ...


class TokenCache:
    """In-memory bearer token, reused until ``TOKEN_MARGIN_SECONDS`` before expiry."""

    def __init__(self, margin: float = TOKEN_MARGIN_SECONDS) -> None:
        self.margin = margin
        self.value: Optional[str] = None
        self.expires_at: float = 0.0

    def get(self, now: float) -> Optional[str]:
        if self.value and now < self.expires_at - self.margin:
            return self.value
        return None

    def store(self, token: str, expires_in: float, now: float) -> str:
        self.value = f"Bearer {token}"
        self.expires_at = now + expires_in
        return self.value


def should_retry(status: int) -> bool:
    return status == 429 or 500 <= status < 600


def compute_retry_delay(retry_after: Optional[str], attempt: int, now: float) -> float:
    """Seconds to wait before retry number ``attempt + 1``."""
    if retry_after:
        try:
            seconds = float(retry_after)
        except ValueError:
            seconds = None
        if seconds is not None and math.isfinite(seconds):
            return min(max(seconds, 0.0), RETRY_AFTER_CAP_SECONDS)
        try:
            when = parsedate_to_datetime(retry_after)
        except (TypeError, ValueError):
            when = None
        if when is not None:
            if when.tzinfo is None:
                when = when.replace(tzinfo=timezone.utc)
            diff = when.timestamp() - now
            if diff > 0:
                return min(diff, RETRY_AFTER_CAP_SECONDS)
    return min(BACKOFF_BASE_SECONDS * 2**attempt, BACKOFF_CAP_SECONDS)


class UberDirectClient(DeliveryGateway):
    def __init__(
        self,
        client_id: str,
        client_secret: str,
        api_base: str = "https://api.uber.com",
        auth_base: str = "https://login.uber.com",
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
        token_cache: Optional[TokenCache] = None,
        timeout: float = 10,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.api_base = api_base.rstrip("/")
        self.auth_base = auth_base.rstrip("/")
        self.session = session or requests.Session()
        self.sleep = sleep
        self.clock = clock
        self.token_cache = token_cache or TokenCache()
        self.timeout = timeout

    def fetch_token(self) -> tuple[str, float]:
        try:
            response = self.session.post(
                f"{self.auth_base}/oauth/v2/token",
                data={
                    "grant_type": "client_credentials",
                    "scope": DEFAULT_SCOPE,
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                },
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise DeliveryGatewayError(None, str(e), message=f"Uber OAuth request failed: {e}") from e

        if not response.ok:
            raise DeliveryGatewayError(
                response.status_code, response.text, message=f"Uber OAuth {response.status_code}: {response.text}"
            )
        try:
            data = response.json()
        except ValueError as e:
            raise DeliveryGatewayError(
                response.status_code, response.text, message="Uber OAuth response is not JSON"
            ) from e
        if not isinstance(data, dict) or not data.get("access_token"):
            raise DeliveryGatewayError(response.status_code, response.text, message="Uber OAuth response has no access_token")
        return data["access_token"], float(data.get("expires_in") or DEFAULT_TOKEN_TTL_SECONDS)

    def auth_header(self) -> str:
        cached = self.token_cache.get(self.clock())
        if cached:
            return cached
        token, expires_in = self.fetch_token()
        return self.token_cache.store(token, expires_in, self.clock())

    def request(
        self,
        method: str,
        path: str,
        body: Optional[dict] = None,
        idempotency_key: Optional[str] = None,
        retries: int = 2,
    ) -> Any:
        url = f"{self.api_base}{path}"
        headers = {"Authorization": self.auth_header()}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key

        max_attempts = max(1, retries + 1)
        for attempt in range(max_attempts):
            try:
                response = self.session.request(method, url, headers=headers, json=body, timeout=self.timeout)
            except requests.RequestException as e:
                raise DeliveryGatewayError(None, str(e), message=f"Uber API request failed: {e}") from e

            text = response.text
            if response.ok:
                if not text:
                    return None
                try:
                    return json.loads(text)
                except ValueError:
                    return text

            if attempt < max_attempts - 1 and should_retry(response.status_code):
                delay = compute_retry_delay(response.headers.get("Retry-After"), attempt, self.clock())
                logger.warning(
                    "uber_request_retry",
                    method=method,
                    path=path,
                    status=response.status_code,
                    attempt=attempt + 1,
                    delay=delay,
                )
                self.sleep(delay)
                continue

            raise DeliveryGatewayError(response.status_code, text)

    def quote(self, body, idempotency_key=None):
        return self.request("POST", "/v2/deliveries/quotes", body, idempotency_key=idempotency_key, retries=2)

    def create(self, body, idempotency_key=None):
        return self.request("POST", "/v2/deliveries", body, idempotency_key=idempotency_key, retries=2)

    def cancel(self, delivery_id, reason, idempotency_key=None):
        return self.request(
            "POST",
            f"/v2/deliveries/{url_quote(delivery_id, safe='')}/cancel",
            {"reason": reason},
            idempotency_key=idempotency_key,
            retries=1,
        )

    def status(self, delivery_id):
        return self.request("GET", f"/v2/deliveries/{url_quote(delivery_id, safe='')}")


class MockUberDirect(DeliveryGateway):
    """Offline courier used when no Uber credentials are configured."""

    def __init__(self) -> None:
        self.calls: list[dict] = []
        self.quotes_by_key: dict[str, dict] = {}
        self.deliveries_by_key: dict[str, dict] = {}
        self.deliveries_by_id: dict[str, dict] = {}

    def quote(self, body, idempotency_key=None):
        self.calls.append({"method": "quote", "body": body, "idempotency_key": idempotency_key})
        if idempotency_key and idempotency_key in self.quotes_by_key:
            return self.quotes_by_key[idempotency_key]

        items = ((body or {}).get("manifest") or {}).get("items") or []
        per_item = sum(_number(item.get("price")) for item in items if isinstance(item, dict))
        base = 299
        response = {
            "quote_id": f"mock_quote_{uuid4().hex[:8]}",
            "total": {"amount": max(base, base + round(per_item * 0.05)), "currency": (body or {}).get("currency", "EUR")},
        }
        if idempotency_key:
            self.quotes_by_key[idempotency_key] = response
        return response

    def create(self, body, idempotency_key=None):
        self.calls.append({"method": "create", "body": body, "idempotency_key": idempotency_key})
        if idempotency_key and idempotency_key in self.deliveries_by_key:
            return self.deliveries_by_key[idempotency_key]

        delivery_id = f"mock_delivery_{uuid4().hex[:8]}"
        currency = (body or {}).get("currency", "EUR")
        tracking_url = f"https://mock.uber.com/track/{delivery_id}"
        response = {
            "id": delivery_id,
            "status": "created",
            "tracking_url": tracking_url,
            "tracking": {"url": tracking_url},
            "quote_id": (body or {}).get("quote_id") or f"mock_quote_{delivery_id[-6:]}",
            "total": {"amount": 599, "currency": currency},
            "currency": currency,
        }
        if idempotency_key:
            self.deliveries_by_key[idempotency_key] = response
        self.deliveries_by_id[delivery_id] = response
        return response

    def cancel(self, delivery_id, reason, idempotency_key=None):
        self.calls.append({"method": "cancel", "delivery_id": delivery_id, "reason": reason})
        existing = self.deliveries_by_id.get(delivery_id)
        if existing:
            existing["status"] = "canceled"
            return existing
        response = {
            "id": delivery_id,
            "status": "canceled",
            "tracking_url": f"https://mock.uber.com/track/{delivery_id}",
        }
        self.deliveries_by_id[delivery_id] = response
        if idempotency_key:
            self.deliveries_by_key[idempotency_key] = response
        return response

    def status(self, delivery_id):
        self.calls.append({"method": "status", "delivery_id": delivery_id})
        existing = self.deliveries_by_id.get(delivery_id)
        if existing:
            return existing
        return {
            "id": delivery_id,
            "status": "courier_assigned",
            "tracking_url": f"https://mock.uber.com/track/{delivery_id}",
        }


def verify_signature(raw_body: bytes | str, signature: str, secret: str) -> None:
    """HMAC-SHA256 of the raw body, hex encoded, optionally prefixed with ``sha256=``."""
    if isinstance(raw_body, str):
        raw_body = raw_body.encode("utf-8")
    cleaned = signature[len("sha256="):] if signature.startswith("sha256=") else signature
    expected = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).digest()
    try:
        provided = bytes.fromhex(cleaned)
    except ValueError as e:
        raise InvalidSignature("Invalid Uber signature") from e
    if len(provided) != len(expected) or not hmac.compare_digest(expected, provided):
        raise InvalidSignature("Invalid Uber signature")


def normalize_status(status: Optional[str]) -> Optional[str]:
    if not status:
        return None
    return status.lower()


@dataclass(frozen=True)
class DeliveryUpdate:
    delivery_id: Optional[str] = None
    status: Optional[str] = None
    tracking_url: Optional[str] = None
    quote_id: Optional[str] = None
    fee_total: Optional[int] = None
    currency: Optional[str] = None
    pickup_at_ms: Optional[int] = None
    order_ref: Optional[str] = None            # reference carried on the delivery object
    envelope_order_ref: Optional[str] = None   # reference carried on the outer envelope


def delivery_payload(envelope: dict) -> dict:
    data = envelope.get("data")
    candidates = []
    if isinstance(data, dict):
        candidates.append(data.get("delivery") if "delivery" in data else data)
    candidates.append(envelope.get("resource"))
    for candidate in candidates:
        if isinstance(candidate, dict) and candidate:
            return candidate
    return envelope


def extract_delivery(envelope: dict) -> DeliveryUpdate:
    """Normalize the several webhook envelope shapes into one ``DeliveryUpdate``."""
    payload = delivery_payload(envelope)
    meta = envelope.get("meta") if isinstance(envelope.get("meta"), dict) else {}
    tracking = payload.get("tracking") if isinstance(payload.get("tracking"), dict) else {}
    total = payload.get("total") if isinstance(payload.get("total"), dict) else {}
    fee = payload.get("fee") if isinstance(payload.get("fee"), dict) else {}

    fee_amount = _first(total.get("amount"), fee.get("amount"), accept=_is_number)
    return DeliveryUpdate(
        delivery_id=_first(payload.get("delivery_id"), payload.get("id"), envelope.get("delivery_id"), meta.get("resource_id")),
        status=normalize_status(_first(payload.get("status"), envelope.get("status"))),
        tracking_url=_first(payload.get("tracking_url"), tracking.get("url")),
        quote_id=_first(payload.get("quote_id"), envelope.get("quote_id")),
        fee_total=int(round(fee_amount)) if fee_amount is not None else None,
        currency=_first(total.get("currency"), fee.get("currency_code"), payload.get("currency")),
        pickup_at_ms=parse_pickup_ms(payload),
        order_ref=_first(
            payload.get("external_reference"),
            payload.get("external_reference_id"),
            payload.get("external_order_id"),
        ),
        envelope_order_ref=_first(envelope.get("external_reference_id")),
    )


def parse_pickup_ms(payload: dict) -> Optional[int]:
    candidate = _first(payload.get("pickup_at_ms"), payload.get("pickup_at"), payload.get("pickup_time"))
    if candidate is None:
        return None
    if _is_number(candidate):
        return int(round(candidate)) if math.isfinite(candidate) else None
    if isinstance(candidate, str):
        try:
            number = float(candidate)
        except ValueError:
            number = None
        if number is not None and math.isfinite(number):
            return int(round(number))
        try:
            parsed = datetime.fromisoformat(candidate.replace("Z", "+00:00"))
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return int(parsed.timestamp() * 1000)
    return None


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _number(value: Any) -> float:
    return float(value) if _is_number(value) else 0.0


def _first(*values: Any, accept: Callable[[Any], bool] = bool) -> Any:
    for value in values:
        if accept(value):
            return value
    return None


_current_gateway: Optional[DeliveryGateway] = None


def get_delivery_gateway(settings: Optional[Settings] = None) -> DeliveryGateway:
    global _current_gateway
    if _current_gateway is None:
        settings = settings or get_settings()
        if settings.has_uber_credentials:
            _current_gateway = UberDirectClient(
                settings.uber_client_id,
                settings.uber_client_secret,
                api_base=settings.uber_api_base,
                auth_base=settings.uber_auth_base,
            )
        else:
            logger.info("uber_mock_mode", reason="UBER_CLIENT_ID/UBER_CLIENT_SECRET not set")
            _current_gateway = MockUberDirect()
    return _current_gateway


def set_delivery_gateway(gateway: DeliveryGateway) -> None:
    global _current_gateway
    _current_gateway = gateway


def reset_delivery_gateway() -> None:
    global _current_gateway
    _current_gateway = None
