"""Tests for g8r.core.locks.LockManager."""

import threading
import time

from g8r.core.locks import LockManager, duty_lock_key, source_lock_key


class TestLockKeys:
    def test_key_formats(self):
        assert duty_lock_key("site-bucket", "aws-prod") == "duty:site-bucket@aws-prod"
        assert source_lock_key("stack", "websites") == "stack:websites"


class TestLockManager:
    """Exclusive, TTL-bounded locks in the state store."""

    def test_acquire_and_release(self, locks):
        assert locks.acquire("duty:a@r", holder="one")
        assert locks.is_locked("duty:a@r")
        assert locks.get_holder("duty:a@r") == "one"

        assert locks.release("duty:a@r", holder="one")
        assert not locks.is_locked("duty:a@r")

    def test_second_holder_is_refused(self, locks):
        assert locks.acquire("duty:a@r", holder="one")
        assert not locks.acquire("duty:a@r", holder="two")
        assert not locks.release("duty:a@r", holder="two")
        assert locks.get_holder("duty:a@r") == "one"

    def test_same_holder_refreshes(self, locks):
        assert locks.acquire("stack:websites", holder="one")
        assert locks.acquire("stack:websites", holder="one")
        assert len(locks.list_active()) == 1

    def test_expired_lock_can_be_taken(self, locks):
        assert locks.acquire("duty:a@r", holder="one", ttl_seconds=1)
        time.sleep(1.1)
        assert not locks.is_locked("duty:a@r")
        assert locks.acquire("duty:a@r", holder="two")
        assert locks.get_holder("duty:a@r") == "two"

    def test_cleanup_expired(self, locks):
        locks.acquire("duty:a@r", holder="one", ttl_seconds=1)
        locks.acquire("duty:b@r", holder="one", ttl_seconds=60)
        time.sleep(1.1)
        assert locks.cleanup_expired() == 1
        assert [lock["lock_key"] for lock in locks.list_active()] == ["duty:b@r"]

    def test_tokens_are_unique_per_acquisition(self, store):
        manager = LockManager(store.session_factory, instance_id="scheduler-1")
        first, second = manager.new_token(), manager.new_token()
        assert first != second
        assert first.startswith("scheduler-1:")

    def test_only_one_thread_wins(self, locks):
        """Concurrent acquirers of one key: exactly one succeeds."""
        barrier = threading.Barrier(8)
        winners = []

        def contend(i):
            barrier.wait()
            if locks.acquire("duty:race@r", holder=f"t{i}"):
                winners.append(i)

        threads = [threading.Thread(target=contend, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(winners) == 1
