"""Tests for the keyed per-job lock table."""

import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from coordinator.jobs.locks import KeyedLockTable, LockTimeout


class TestKeyedLockTable:
    def test_hold_and_release(self):
        locks = KeyedLockTable()
        with locks.hold("job-1"):
            assert locks.is_locked("job-1")
            assert len(locks) == 1
        assert not locks.is_locked("job-1")
        assert len(locks) == 0

    def test_timeout_when_held_elsewhere(self):
        locks = KeyedLockTable()
        held = threading.Event()
        release = threading.Event()

        def holder():
            with locks.hold("job-1"):
                held.set()
                release.wait(5)

        thread = threading.Thread(target=holder)
        thread.start()
        try:
            held.wait(5)
            with pytest.raises(LockTimeout) as exc_info:
                with locks.hold("job-1", timeout=0.05):
                    pass
            assert exc_info.value.key == "job-1"
        finally:
            release.set()
            thread.join()
        assert len(locks) == 0

    def test_different_keys_do_not_block(self):
        locks = KeyedLockTable()
        with locks.hold("job-1"):
            with locks.hold("job-2", timeout=0.05):
                assert locks.is_locked("job-2")

    def test_same_key_is_serialized(self):
        locks = KeyedLockTable()
        active = []
        overlaps = []

        def critical(_):
            with locks.hold("job-1"):
                active.append(1)
                if len(active) > 1:
                    overlaps.append(1)
                time.sleep(0.005)
                active.pop()

        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(critical, range(32)))

        assert overlaps == []
        assert len(locks) == 0

    def test_released_on_exception(self):
        locks = KeyedLockTable()
        with pytest.raises(RuntimeError):
            with locks.hold("job-1"):
                raise RuntimeError("boom")
        assert not locks.is_locked("job-1")
        with locks.hold("job-1", timeout=0.05):
            pass
