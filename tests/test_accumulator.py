"""Tests for the accumulator module."""

import pytest

from local_chat.accumulator import StreamAccumulator


class TestAppend:
    def test_appends_and_counts(self, clock) -> None:
        acc = StreamAccumulator(clock=clock)
        acc.append("Hel")
        acc.append("lo")
        assert acc.text == "Hello"
        assert acc.token_count == 2


class TestTiming:
    def test_elapsed_uses_clock(self, clock) -> None:
        clock.now = 10.0
        acc = StreamAccumulator(clock=clock)
        clock.now = 10.4
        assert acc.elapsed_seconds() == pytest.approx(0.4)

    def test_tokens_per_second(self, clock) -> None:
        acc = StreamAccumulator(clock=clock)
        for _ in range(12):
            acc.append("t")
        clock.now = 0.4
        assert acc.tokens_per_second() == pytest.approx(30.0)

    def test_zero_elapsed_gives_zero_rate(self, clock) -> None:
        acc = StreamAccumulator(clock=clock)
        acc.append("t")
        assert acc.tokens_per_second() == 0.0

    def test_explicit_elapsed(self, clock) -> None:
        acc = StreamAccumulator(clock=clock)
        acc.append("a")
        acc.append("b")
        assert acc.tokens_per_second(elapsed=0.5) == pytest.approx(4.0)

    def test_default_clock_is_monotonic(self) -> None:
        acc = StreamAccumulator()
        assert acc.elapsed_seconds() >= 0.0
