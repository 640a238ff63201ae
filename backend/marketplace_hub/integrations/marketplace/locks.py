"""
同一 marketplace 连接的互斥（sync / token refresh 串行化）
  - 配了 REDIS_URL：redis-py 的 Lock（带 TTL，worker 崩了也会自动过期），多进程/多机共享
  - 没配：进程内 threading.Lock（单进程开发/测试）
  - hold() 拿不到锁不抛异常，yield False，由调用方决定怎么报告
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Dict, Iterator, Optional

import redis
from redis.exceptions import LockError, RedisError

from marketplace_hub.core.config import settings

logger = logging.getLogger(__name__)


class ConnectionLocks:

    def __init__(
        self,
        client: Optional["redis.Redis"] = None,
        *,
        ttl_sec: Optional[int] = None,
        wait_sec: Optional[float] = None,
        key_prefix: Optional[str] = None,
    ) -> None:
        self._client = client
        self.ttl_sec = ttl_sec if ttl_sec is not None else settings.SYNC_LOCK_TTL_SEC
        self.wait_sec = wait_sec if wait_sec is not None else settings.SYNC_LOCK_WAIT_SEC
        self.key_prefix = key_prefix or settings.SYNC_LOCK_KEY_PREFIX
        self._local: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()


    @classmethod
    def from_settings(cls) -> "ConnectionLocks":
        url = settings.REDIS_URL
        if not url:
            # 进程内锁：全进程共用一份
            return _process_locks()
        return cls(redis.from_url(url, decode_responses=True))


    @property
    def distributed(self) -> bool:
        return self._client is not None

    def key_for(self, connection_id) -> str:
        return f"{self.key_prefix}:{settings.ENVIRONMENT}:{connection_id}"


    @contextmanager
    def hold(self, connection_id) -> Iterator[bool]:
        key = self.key_for(connection_id)
        if self._client is not None:
            with self._hold_redis(key) as acquired:
                yield acquired
        else:
            with self._hold_local(key) as acquired:
                yield acquired


    @contextmanager
    def _hold_redis(self, key: str) -> Iterator[bool]:
        lock = self._client.lock(key, timeout=self.ttl_sec, blocking_timeout=self.wait_sec)
        try:
            acquired = bool(lock.acquire())
        except RedisError:
            logger.exception("marketplace.lock.redis_error key=%s", key)
            acquired = False
        try:
            yield acquired
        finally:
            if acquired:
                try:
                    lock.release()
                except LockError:
                    # TTL 已过期被别人拿走；本次操作已完成，只记录
                    logger.warning("marketplace.lock.release_lost key=%s ttl=%s", key, self.ttl_sec)


    @contextmanager
    def _hold_local(self, key: str) -> Iterator[bool]:
        with self._guard:
            lock = self._local.setdefault(key, threading.Lock())
        acquired = lock.acquire(timeout=self.wait_sec) if self.wait_sec > 0 else lock.acquire(blocking=False)
        try:
            yield acquired
        finally:
            if acquired:
                lock.release()


_PROCESS_LOCKS: Optional[ConnectionLocks] = None
_PROCESS_LOCKS_GUARD = threading.Lock()


def _process_locks() -> ConnectionLocks:
    global _PROCESS_LOCKS
    with _PROCESS_LOCKS_GUARD:
        if _PROCESS_LOCKS is None:
            _PROCESS_LOCKS = ConnectionLocks()
        return _PROCESS_LOCKS
