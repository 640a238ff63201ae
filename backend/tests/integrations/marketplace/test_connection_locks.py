import threading

from redis.exceptions import LockError, RedisError

from marketplace_hub.core.config import settings
from marketplace_hub.integrations.marketplace import ConnectionLocks


class FakeRedisLock:
    def __init__(self, acquired=True, acquire_error=None, release_error=None):
        self.acquired = acquired
        self.acquire_error = acquire_error
        self.release_error = release_error
        self.released = False

    def acquire(self):
        if self.acquire_error:
            raise self.acquire_error
        return self.acquired

    def release(self):
        if self.release_error:
            raise self.release_error
        self.released = True


class FakeRedisClient:
    def __init__(self, lock):
        self._lock = lock
        self.requests = []

    def lock(self, key, timeout=None, blocking_timeout=None):
        self.requests.append((key, timeout, blocking_timeout))
        return self._lock


# ---------- 进程内 ----------
def test_local_lock_is_exclusive_per_connection():
    locks = ConnectionLocks(wait_sec=0)
    with locks.hold(1) as first:
        assert first
        with locks.hold(1) as again:
            assert not again
        with locks.hold(2) as other:
            assert other
    with locks.hold(1) as after_release:
        assert after_release


def test_local_lock_blocks_other_threads():
    locks = ConnectionLocks(wait_sec=0)
    seen = []

    def worker():
        with locks.hold(7) as acquired:
            seen.append(acquired)

    with locks.hold(7):
        t = threading.Thread(target=worker)
        t.start()
        t.join()
    assert seen == [False]


def test_without_redis_every_manager_shares_process_locks(monkeypatch):
    monkeypatch.setattr(settings, "REDIS_URL", None)
    a, b = ConnectionLocks.from_settings(), ConnectionLocks.from_settings()
    assert a is b
    assert not a.distributed


# ---------- Redis ----------
def test_redis_lock_uses_ttl_and_wait():
    lock = FakeRedisLock()
    client = FakeRedisClient(lock)
    locks = ConnectionLocks(client, ttl_sec=60, wait_sec=2, key_prefix="sync")

    with locks.hold(42) as acquired:
        assert acquired

    assert locks.distributed
    assert client.requests == [(f"sync:{settings.ENVIRONMENT}:42", 60, 2)]
    assert lock.released


def test_redis_lock_busy_or_broken_yields_false():
    for lock in (FakeRedisLock(acquired=False), FakeRedisLock(acquire_error=RedisError("down"))):
        with ConnectionLocks(FakeRedisClient(lock), wait_sec=0).hold(1) as acquired:
            assert not acquired
        assert not lock.released


def test_redis_lock_expired_before_release_is_tolerated():
    lock = FakeRedisLock(release_error=LockError("not owned"))
    with ConnectionLocks(FakeRedisClient(lock)).hold(1) as acquired:
        assert acquired
