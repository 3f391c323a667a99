"""Tests for shared helpers and deterministic idempotency keys."""

from datetime import datetime, timezone

import pytest
from hypothesis import given
from hypothesis import strategies as st

from oli_workers.idempotency import backfill_sample_key, idempotency_key, ledger_run_id
from oli_workers.utils import (
    add_days,
    day_range,
    is_day_key,
    is_finite_number,
    parse_iso_datetime,
    safe_number,
    stable_hash,
    stable_json,
    to_iso,
)


class TestNumbers:
    def test_booleans_are_not_numbers(self):
        assert is_finite_number(True) is False

    def test_nan_and_inf_are_not_finite(self):
        assert is_finite_number(float("nan")) is False
        assert is_finite_number(float("inf")) is False

    def test_safe_number_never_coerces(self):
        assert safe_number("12") is None
        assert safe_number(None) is None
        assert safe_number(0) == 0


class TestDays:
    def test_is_day_key_is_strict(self):
        assert is_day_key("2026-03-10")
        assert not is_day_key("2026-3-10")
        assert not is_day_key("2026-02-30")
        assert not is_day_key(None)

    def test_add_days_crosses_month(self):
        assert add_days("2026-02-28", 1) == "2026-03-01"
        assert add_days("2026-03-01", -1) == "2026-02-28"

    def test_day_range_inclusive(self):
        assert day_range("2026-03-08", "2026-03-10") == ["2026-03-08", "2026-03-09", "2026-03-10"]

    def test_day_range_empty_when_reversed(self):
        assert day_range("2026-03-10", "2026-03-09") == []


class TestTimestamps:
    def test_parse_requires_time_component(self):
        assert parse_iso_datetime("2026-03-10") is None
        assert parse_iso_datetime("not a date") is None

    def test_parse_z_suffix_is_utc(self):
        parsed = parse_iso_datetime("2026-03-10T10:00:00Z")
        assert parsed == datetime(2026, 3, 10, 10, 0, tzinfo=timezone.utc)

    def test_to_iso_millisecond_z(self):
        ts = datetime(2026, 3, 10, 10, 0, 1, 234567, tzinfo=timezone.utc)
        assert to_iso(ts) == "2026-03-10T10:00:01.234Z"


class TestStableJson:
    def test_key_order_does_not_matter(self):
        assert stable_json({"b": 1, "a": [2, 1]}) == stable_json({"a": [2, 1], "b": 1})
        assert stable_hash({"b": 1, "a": 2}) == stable_hash({"a": 2, "b": 1})

    def test_array_order_matters(self):
        assert stable_hash([1, 2]) != stable_hash([2, 1])

    def test_nan_rejected(self):
        with pytest.raises(ValueError):
            stable_json({"x": float("nan")})


class TestIdempotencyKey:
    def test_deterministic(self):
        kwargs = dict(provider="oura", device_id="ring-1", kind="sleep", day="2026-03-10", start_iso="2026-03-09T23:00:00Z")
        assert idempotency_key(**kwargs) == idempotency_key(**kwargs)

    def test_provider_and_kind_case_insensitive(self):
        a = idempotency_key(provider="Oura", device_id="d", kind="SLEEP", day="2026-03-10")
        b = idempotency_key(provider="oura", device_id="d", kind="sleep", day="2026-03-10")
        assert a == b

    def test_start_distinguishes_sessions(self):
        a = idempotency_key(provider="oura", device_id="d", kind="sleep", day="2026-03-10", start_iso="2026-03-10T01:00:00Z")
        b = idempotency_key(provider="oura", device_id="d", kind="sleep", day="2026-03-10", start_iso="2026-03-10T13:00:00Z")
        assert a != b

    @given(device=st.text(min_size=1, max_size=20), day=st.dates().map(lambda d: d.isoformat()))
    def test_key_is_hex_and_path_safe(self, device, day):
        key = idempotency_key(provider="p", device_id=device, kind="steps", day=day)
        assert len(key) == 64
        assert "/" not in key

    def test_backfill_sample_key_uses_group_id(self):
        base = dict(provider="withings", user_id="u", kind="weight", measured_at_iso="2026-03-10T07:00:00Z")
        assert backfill_sample_key(**base) == backfill_sample_key(**base)
        assert backfill_sample_key(**base, group_id=1) != backfill_sample_key(**base, group_id=2)

    def test_ledger_run_id_prefix_and_determinism(self):
        run_id = ledger_run_id("run", "seed")
        assert run_id.startswith("run_")
        assert run_id == ledger_run_id("run", "seed")
        assert run_id != ledger_run_id("run", "other")
