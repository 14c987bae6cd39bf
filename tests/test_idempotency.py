import hashlib

from idempotency import canonical_json, checkout_key, derive, normalize_checkout_items, normalize_manifest_items


class TestCanonicalJson:
    def test_keys_sorted_and_compact(self):
        assert canonical_json({"b": 1, "a": {"d": [1, 2], "c": None}}) == '{"a":{"c":null,"d":[1,2]},"b":1}'

    def test_derive_is_sha256_of_prefixed_json(self):
        expected = hashlib.sha256(b'checkout:{"a":1}').hexdigest()
        assert derive("checkout", {"a": 1}) == expected

    def test_prefix_separates_namespaces(self):
        assert derive("uber-quote", {"a": 1}) != derive("uber-create", {"a": 1})


class TestItemNormalization:
    def test_checkout_items_sorted(self):
        items = [
            {"name": "Fries", "unitAmount": 300, "quantity": 1},
            {"name": "Burger", "unitAmount": 1299, "quantity": 2},
            {"name": "Burger", "unitAmount": 1299, "quantity": 1},
        ]
        assert normalize_checkout_items(items) == [
            {"name": "Burger", "unitAmount": 1299, "quantity": 1},
            {"name": "Burger", "unitAmount": 1299, "quantity": 2},
            {"name": "Fries", "unitAmount": 300, "quantity": 1},
        ]

    def test_manifest_items_missing_price_sorts_first(self):
        items = [{"title": "Soup", "quantity": 1, "price": 500}, {"title": "Soup", "quantity": 1}]
        normalized = normalize_manifest_items(items)
        assert normalized[0] == {"title": "Soup", "quantity": 1, "price": None, "weight": None}

    def test_checkout_key_ignores_item_order(self):
        a = [{"name": "A", "unitAmount": 100, "quantity": 1}, {"name": "B", "unitAmount": 200, "quantity": 1}]
        assert checkout_key("m", "eur", 300, a) == checkout_key("m", "eur", 300, list(reversed(a)))

    def test_checkout_key_depends_on_amount_and_merchant(self):
        items = [{"name": "A", "unitAmount": 100, "quantity": 1}]
        base = checkout_key("m", "eur", 100, items)
        assert checkout_key("m", "eur", 150, items) != base
        assert checkout_key("other", "eur", 100, items) != base
        assert checkout_key("m", "usd", 100, items) != base
