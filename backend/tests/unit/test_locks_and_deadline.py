"""Tests for per-key locks and stage deadlines."""

import threading

import pytest

from services.exceptions import SyncTimeoutError
from utils.deadline import Deadline
from utils.locks import KeyedLocks


class TestKeyedLocks:
    def test_try_acquire_is_exclusive_per_key(self):
        locks = KeyedLocks()

        assert locks.try_acquire("c1") is True
        assert locks.try_acquire("c1") is False
        assert locks.try_acquire("c2") is True
        assert locks.is_locked("c1")

        locks.release("c1")
        assert not locks.is_locked("c1")
        assert locks.try_acquire("c1") is True

    def test_hold_blocks_other_threads(self):
        locks = KeyedLocks()
        acquired = []

        with locks.hold("c1"):
            worker = threading.Thread(target=lambda: acquired.append(locks.try_acquire("c1")))
            worker.start()
            worker.join(timeout=5)

        assert acquired == [False]
        assert not locks.is_locked("c1")


class FakeMonotonic:
    def __init__(self):
        self.value = 100.0

    def __call__(self):
        return self.value


class TestDeadline:
    def test_remaining_counts_down(self):
        clock = FakeMonotonic()
        deadline = Deadline("fetching", 30, clock=clock)

        clock.value += 10
        assert deadline.remaining() == pytest.approx(20)
        assert not deadline.expired
        deadline.check()

    def test_expired_raises_with_stage(self):
        clock = FakeMonotonic()
        deadline = Deadline("reconciling", 5, clock=clock)
        clock.value += 6

        assert deadline.remaining() == 0.0
        with pytest.raises(SyncTimeoutError, match="reconciling exceeded its 5s deadline") as exc:
            deadline.check()
        assert exc.value.stage == "reconciling"
