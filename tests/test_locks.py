import threading

import pytest
from redis.exceptions import LockError

from clinic_scheduling.core.exceptions import Conflict
from clinic_scheduling.core.locks import LocalLockManager, RedisLockManager, resource_keys


class FakeRedisLock:
    def __init__(self, client, name, acquirable=True, expired=False):
        self.client = client
        self.name = name
        self.acquirable = acquirable
        self.expired = expired

    def acquire(self):
        if self.acquirable:
            self.client.log.append(("acquire", self.name))
        return self.acquirable

    def release(self):
        if self.expired:
            raise LockError("Cannot release an unlocked lock")
        self.client.log.append(("release", self.name))


class FakeRedis:
    """Stands in for a redis connection; only ``lock()`` is used."""

    def __init__(self, busy=(), expired=()):
        self.busy = set(busy)
        self.expired = set(expired)
        self.log = []

    def lock(self, name, timeout=None, blocking_timeout=None):
        return FakeRedisLock(self, name, acquirable=name not in self.busy, expired=name in self.expired)


class TestResourceKeys:

    def test_staff_keys_carry_the_clinic(self):
        assert resource_keys(3, patient_id=12, staff_id=7, room_id=2) == ["patient:12", "staff:3:7", "room:2"]

    def test_missing_resources_are_skipped(self):
        assert resource_keys(3, patient_id=12) == ["patient:12"]


class TestLocalLockManager:

    def test_times_out_with_conflict(self):
        locks = LocalLockManager(timeout=0.05)
        holding = threading.Event()
        done = threading.Event()

        def hold():
            with locks.hold(["room:1"]):
                holding.set()
                done.wait(5)

        thread = threading.Thread(target=hold)
        thread.start()
        holding.wait(5)
        try:
            with pytest.raises(Conflict):
                with locks.hold(["patient:1", "room:1"]):
                    pass
            # Keys taken before the timeout were released
            with locks.hold(["patient:1"]):
                pass
        finally:
            done.set()
            thread.join()

    def test_disjoint_keys_do_not_wait(self):
        locks = LocalLockManager(timeout=0.05)
        with locks.hold(["room:1"]):
            with locks.hold(["room:2"]):
                pass

    def test_duplicate_keys_are_taken_once(self):
        locks = LocalLockManager(timeout=0.05)
        with locks.hold(["room:1", "room:1"]):
            pass

    def test_unheld_keys_are_evicted(self):
        locks = LocalLockManager(timeout=0.05)
        with locks.hold(["patient:1", "room:1"]):
            assert set(locks._locks) == {"patient:1", "room:1"}
        assert locks._locks == {}

    def test_key_stays_while_another_caller_holds_it(self):
        locks = LocalLockManager(timeout=0.05)
        holding = threading.Event()
        done = threading.Event()

        def hold():
            with locks.hold(["room:1"]):
                holding.set()
                done.wait(5)

        thread = threading.Thread(target=hold)
        thread.start()
        holding.wait(5)
        try:
            with pytest.raises(Conflict):
                with locks.hold(["room:1"]):
                    pass
            # The timed-out waiter gave up its claim; the holder keeps the entry
            assert list(locks._locks) == ["room:1"]
            assert locks._locks["room:1"][1] == 1
        finally:
            done.set()
            thread.join()
        assert locks._locks == {}


class TestRedisLockManager:

    def test_acquires_in_sorted_order_and_releases_in_reverse(self):
        client = FakeRedis()
        with RedisLockManager(client, timeout=1).hold(["staff:1:4", "patient:9", "room:2"]):
            pass

        assert client.log == [
            ("acquire", "scheduling-lock:patient:9"),
            ("acquire", "scheduling-lock:room:2"),
            ("acquire", "scheduling-lock:staff:1:4"),
            ("release", "scheduling-lock:staff:1:4"),
            ("release", "scheduling-lock:room:2"),
            ("release", "scheduling-lock:patient:9"),
        ]

    def test_busy_key_raises_conflict(self):
        client = FakeRedis(busy={"scheduling-lock:room:2"})
        with pytest.raises(Conflict):
            with RedisLockManager(client, timeout=1).hold(["patient:9", "room:2"]):
                pass
        assert ("release", "scheduling-lock:patient:9") in client.log

    def test_expired_lock_is_logged_not_raised(self, caplog):
        client = FakeRedis(expired={"scheduling-lock:room:2"})
        with RedisLockManager(client, timeout=1).hold(["room:2"]):
            pass
        assert "expired before release" in caplog.text
