"""Tests for the clock abstraction."""

from datetime import datetime, timedelta, timezone

import pytest

from capital_kernel.domain.clock import DEFAULT_TEST_TIME, DeterministicClock, SystemClock


class TestDeterministicClock:
    """Time only moves when the test moves it."""

    def test_fixed_until_moved(self):
        clock = DeterministicClock()
        assert clock.now() == DEFAULT_TEST_TIME
        assert clock.now() == clock.now()

    def test_advance_and_tick(self):
        clock = DeterministicClock()

        assert clock.advance(milliseconds=250) == DEFAULT_TEST_TIME + timedelta(milliseconds=250)
        assert clock.tick() == DEFAULT_TEST_TIME + timedelta(seconds=1, milliseconds=250)

    def test_set_time(self):
        clock = DeterministicClock()
        later = datetime(2025, 6, 30, 9, 0, tzinfo=timezone.utc)

        clock.set_time(later)

        assert clock.now() == later

    def test_naive_datetime_rejected(self):
        with pytest.raises(ValueError):
            DeterministicClock(datetime(2024, 1, 1))
        with pytest.raises(ValueError):
            DeterministicClock().set_time(datetime(2024, 1, 1))


class TestMonotonicMs:
    """Durations measured on a clock."""

    def test_elapsed_milliseconds(self):
        clock = DeterministicClock()
        started = clock.now()

        clock.advance(seconds=2, milliseconds=5)

        assert clock.monotonic_ms(started) == 2005

    def test_never_negative(self):
        clock = DeterministicClock()
        started = clock.advance(seconds=10)

        clock.set_time(DEFAULT_TEST_TIME)

        assert clock.monotonic_ms(started) == 0

    def test_system_clock_is_utc(self):
        assert SystemClock().now().tzinfo == timezone.utc
