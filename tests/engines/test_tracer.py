"""Tests for the engine invocation tracer."""

from decimal import Decimal

import pytest

from capital_engines.tracer import compute_input_fingerprint, traced_engine


@traced_engine("split", "0.1", fingerprint_fields=("weights", "total"))
def _split(weights, total):
    if total < 0:
        raise ValueError("negative total")
    return {key: total * weight for key, weight in weights.items()}


def _traces(captured_logs):
    return [r for r in captured_logs() if r["message"] == "CAPITAL_ENGINE_TRACE"]


class TestFingerprint:
    def test_decimal_scale_ignored(self):
        a = compute_input_fingerprint(("total",), {"total": Decimal("1.50")})
        b = compute_input_fingerprint(("total",), {"total": Decimal("1.5000")})
        assert a == b

    def test_mapping_order_ignored(self):
        a = compute_input_fingerprint(("w",), {"w": {"x": 1, "y": 2}})
        b = compute_input_fingerprint(("w",), {"w": {"y": 2, "x": 1}})
        assert a == b

    def test_sequence_order_matters(self):
        a = compute_input_fingerprint(("w",), {"w": [1, 2]})
        b = compute_input_fingerprint(("w",), {"w": [2, 1]})
        assert a != b

    def test_missing_field_is_null(self):
        assert compute_input_fingerprint(("gone",), {}) == compute_input_fingerprint(
            ("gone",), {"gone": None}
        )


class TestTracedEngine:
    def test_positional_and_keyword_calls_agree(self, captured_logs):
        weights = {"a": Decimal("0.5"), "b": Decimal("0.5")}
        _split(weights, Decimal("10"))
        _split(total=Decimal("10.00"), weights=weights)

        first, second = _traces(captured_logs)
        assert first["input_fingerprint"] == second["input_fingerprint"]
        assert first["engine_version"] == "0.1"
        assert first["outcome"] == "ok"

    def test_failure_traced_and_reraised(self, captured_logs):
        with pytest.raises(ValueError, match="negative total"):
            _split({"a": Decimal("1")}, Decimal("-1"))

        (trace,) = _traces(captured_logs)
        assert trace["outcome"] == "failed"
        assert trace["engine_name"] == "split"

    def test_no_fields_no_fingerprint(self, captured_logs):
        @traced_engine("noop", "1")
        def noop():
            return None

        noop()
        (trace,) = _traces(captured_logs)
        assert trace["input_fingerprint"] == ""
