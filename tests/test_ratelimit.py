"""
Tests for the token bucket.
"""

import pytest

from custody_worker.ratelimit import TokenBucket


class _Clock:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class TestTokenBucket:
    def test_burst_then_empty(self) -> None:
        clock = _Clock()
        bucket = TokenBucket(capacity=3, fill_rate=1, clock=clock, sleep=clock.sleep)

        assert [bucket.try_consume() for _ in range(4)] == [True, True, True, False]

    def test_refills_over_time(self) -> None:
        clock = _Clock()
        bucket = TokenBucket(capacity=2, fill_rate=0.5, clock=clock, sleep=clock.sleep)
        bucket.try_consume(2)

        clock.now = 2.0

        assert bucket.tokens == pytest.approx(1.0)
        assert bucket.try_consume()
        assert not bucket.try_consume()

    def test_never_exceeds_capacity(self) -> None:
        clock = _Clock()
        bucket = TokenBucket(capacity=2, fill_rate=10, clock=clock, sleep=clock.sleep)

        clock.now = 100.0

        assert bucket.tokens == 2.0

    def test_acquire_waits_for_tokens(self) -> None:
        clock = _Clock()
        bucket = TokenBucket(capacity=1, fill_rate=4, clock=clock, sleep=clock.sleep)

        assert bucket.acquire() == 0.0
        waited = bucket.acquire()

        assert waited == pytest.approx(0.25)
        assert clock.sleeps == [pytest.approx(0.25)]

    def test_acquire_more_than_capacity(self) -> None:
        bucket = TokenBucket(capacity=1, fill_rate=1)

        with pytest.raises(ValueError):
            bucket.acquire(2)

    def test_invalid_parameters(self) -> None:
        with pytest.raises(ValueError):
            TokenBucket(capacity=0, fill_rate=1)
        with pytest.raises(ValueError):
            TokenBucket(capacity=1, fill_rate=0)


def test_spacing_allows_one_event_per_interval() -> None:
    clock = _Clock()
    spacing = TokenBucket.spacing(5.0, clock=clock, sleep=clock.sleep)

    for _ in range(3):
        spacing.acquire()

    assert clock.now == pytest.approx(10.0)
    assert spacing.name == "spacing"
