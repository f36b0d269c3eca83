"""Tests for canonical JSON, payload hashing and the storable form."""

from decimal import Decimal

from capital_kernel.utils.hashing import (
    canonicalize_json,
    hash_payload,
    hash_results,
    to_storable,
)


class TestCanonicalJson:
    def test_decimal_scale_ignored_for_hashing(self):
        assert hash_payload({"v": Decimal("1.50")}) == hash_payload({"v": Decimal("1.5000")})

    def test_never_exponent_notation(self):
        assert canonicalize_json({"v": Decimal("1000.00")}) == '{"v":"1000"}'
        assert canonicalize_json({"v": Decimal("1E+3")}) == '{"v":"1000"}'

    def test_keys_sorted(self):
        assert canonicalize_json({"b": 1, "a": 2}) == '{"a":2,"b":1}'


class TestStorable:
    def test_decimal_scale_kept(self):
        stored = to_storable({"total": Decimal("1000.00"), "rows": [Decimal("0.0000")]})
        assert stored == {"total": "1000.00", "rows": ["0.0000"]}

    def test_large_exponent_expanded(self):
        assert to_storable({"v": Decimal("1E+3")}) == {"v": "1000"}


class TestHashResults:
    def test_order_independent(self):
        rows = [
            {"asset_id": "b", "recommended_amount": "2.0000"},
            {"asset_id": "a", "recommended_amount": "1.0000"},
        ]
        assert hash_results(rows) == hash_results(list(reversed(rows)))
