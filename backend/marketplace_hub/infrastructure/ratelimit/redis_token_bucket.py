# marketplace_hub/infrastructure/ratelimit/redis_token_bucket.py
from __future__ import annotations
import logging
import time
from typing import Callable, Optional, Tuple

import redis
from redis.exceptions import NoScriptError

logger = logging.getLogger(__name__)


"""
按连接的出站令牌桶（多进程/多机共享），单位：rpm。
    key: {prefix}:{env}:{platform}:{connection_id}

    Lua 原子步骤：
      1) 用 Redis 服务器时间计算补桶
      2) tokens >= 1 则消耗 1 个，allowed=1；否则返回需要等待的毫秒数
      3) 写回 tokens/ts 并设置 TTL（空闲自动清理）
"""
class RedisTokenBucketLimiter:

    LUA_SCRIPT = """
    local key = KEYS[1]
    local capacity = tonumber(ARGV[1])
    local refill_per_ms = tonumber(ARGV[2])
    local ttl_ms = tonumber(ARGV[3])

    local t = redis.call('TIME')
    local now = tonumber(t[1]) * 1000 + math.floor(tonumber(t[2]) / 1000)

    local data = redis.call('HMGET', key, 'tokens', 'ts')
    local tokens = tonumber(data[1])
    local ts = tonumber(data[2])

    if tokens == nil or ts == nil then
        tokens = capacity
        ts = now
    else
        local delta = math.max(0, now - ts)
        tokens = math.min(capacity, tokens + delta * refill_per_ms)
        ts = now
    end

    local allowed = 0
    local wait_ms = 0
    if tokens >= 1 then
        tokens = tokens - 1
        allowed = 1
    else
        wait_ms = math.max(0, math.ceil((1 - tokens) / refill_per_ms))
    end

    redis.call('HSET', key, 'tokens', tokens, 'ts', ts)
    if ttl_ms > 0 then
      redis.call('PEXPIRE', key, ttl_ms)
    end
    return {allowed, tostring(tokens), wait_ms}
    """


    def __init__(self, client, key: str, max_rpm: int, burst: int = 5,
                 ttl_ms: int = 120000, max_wait_ms: Optional[int] = 5000):
        self.r = client
        self.key = key
        self.capacity = max(1, int(burst))
        self.refill_per_ms = float(max_rpm) / 60_000.0
        self.ttl_ms = int(ttl_ms)
        self.max_wait_ms = max_wait_ms
        self._sha = self.r.script_load(self.LUA_SCRIPT)


    @classmethod
    def from_settings(cls, *, platform: str, connection_id) -> Optional["RedisTokenBucketLimiter"]:
        """开关关着或没配 Redis 就返回 None（不限流，三元组只做观测）。"""
        from marketplace_hub.core.config import settings

        if not settings.MARKETPLACE_THROTTLE_ENABLED:
            return None
        if not settings.REDIS_URL:
            logger.warning("marketplace.throttle.disabled reason=no_redis_url platform=%s", platform)
            return None

        client = redis.from_url(settings.REDIS_URL, decode_responses=True)
        key = f"{settings.MARKETPLACE_THROTTLE_KEY_PREFIX}:{settings.ENVIRONMENT}:{platform}:{connection_id}"
        return cls(
            client=client,
            key=key,
            max_rpm=settings.MARKETPLACE_THROTTLE_MAX_RPM,
            burst=settings.MARKETPLACE_THROTTLE_BURST,
            max_wait_ms=settings.MARKETPLACE_THROTTLE_MAX_WAIT_MS,
        )


    def _eval(self) -> Tuple[bool, int]:
        args = (self.capacity, self.refill_per_ms, self.ttl_ms)
        try:
            res = self.r.evalsha(self._sha, 1, self.key, *args)
        except NoScriptError:
            # Redis 重启后脚本缓存丢了，重载再试一次
            self._sha = self.r.script_load(self.LUA_SCRIPT)
            res = self.r.evalsha(self._sha, 1, self.key, *args)
        allowed = int(res[0]) == 1
        wait_ms = 0 if allowed else max(0, int(float(res[2])))
        if (self.max_wait_ms is not None) and (wait_ms > self.max_wait_ms):
            wait_ms = self.max_wait_ms
        return allowed, wait_ms


    def acquire_once(self) -> Tuple[bool, int]:
        """尝试消费 1 个令牌；返回 (allowed, wait_ms)。"""
        return self._eval()


    def acquire(self, sleep: Callable[[float], None] = time.sleep, max_attempts: int = 5) -> bool:
        """阻塞直到拿到令牌（最多 max_attempts 次）；拿不到也放行，由平台 429 兜底。"""
        for _ in range(max_attempts):
            allowed, wait_ms = self.acquire_once()
            if allowed:
                return True
            sleep(wait_ms / 1000.0)
        logger.warning("marketplace.throttle.exhausted key=%s attempts=%s", self.key, max_attempts)
        return False
