"""Deterministic idempotency keys.

A key is the SHA-256 of ``"<prefix>:<canonical json>"``. Canonical JSON
sorts object keys and uses compact separators, and callers sort their
line-item arrays with the helpers below first, so two requests that only
differ in key or item order collapse to the same key.
"""

import hashlib
import json
from typing import Any, Iterable, Mapping


def canonical_json(payload: Any) -> str:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def derive(prefix: str, payload: Any) -> str:
    data = f"{prefix}:{canonical_json(payload)}"
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


def normalize_checkout_items(items: Iterable[Any]) -> list[dict]:
    """Sort checkout lines by (name, unit amount, quantity)."""
    normalized = [
        {
            "name": _get(item, "name"),
            "unitAmount": _get(item, "unit_amount", "unitAmount"),
            "quantity": _get(item, "quantity"),
        }
        for item in items
    ]
    return sorted(normalized, key=lambda it: (it["name"], it["unitAmount"], it["quantity"]))


def normalize_manifest_items(items: Iterable[Any]) -> list[dict]:
    """Sort courier manifest lines by (title, price, quantity); missing price sorts as 0."""
    normalized = [
        {
            "title": _get(item, "title"),
            "quantity": _get(item, "quantity"),
            "price": _get(item, "price"),
            "weight": _get(item, "weight"),
        }
        for item in items
    ]
    return sorted(normalized, key=lambda it: (it["title"], it["price"] or 0, it["quantity"]))


def checkout_key(merchant_id: str, currency: str, amount_total: int, items: Iterable[Any]) -> str:
    return derive(
        "checkout",
        {
            "merchantId": merchant_id,
            "currency": currency,
            "amountTotal": amount_total,
            "items": normalize_checkout_items(items),
        },
    )


def _get(item: Any, *names: str) -> Any:
    for name in names:
        if isinstance(item, Mapping):
            if name in item:
                return item[name]
        elif hasattr(item, name):
            return getattr(item, name)
    return None
