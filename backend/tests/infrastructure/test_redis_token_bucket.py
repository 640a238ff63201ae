import pytest
from redis.exceptions import NoScriptError

from marketplace_hub.core.config import settings
from marketplace_hub.infrastructure.ratelimit import RedisTokenBucketLimiter


class FakeRedis:
    """只实现 limiter 用到的 script_load / evalsha；evalsha 按队列返回预设结果。"""

    def __init__(self, replies):
        self.replies = list(replies)
        self.loaded = 0
        self.calls = []

    def script_load(self, script):
        self.loaded += 1
        return f"sha{self.loaded}"

    def evalsha(self, sha, numkeys, key, *args):
        self.calls.append((sha, key, args))
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


def test_acquire_waits_until_allowed():
    client = FakeRedis([[0, "0.2", 400], [1, "0", 0]])
    limiter = RedisTokenBucketLimiter(client, "rl:test", max_rpm=120, burst=2)
    slept = []

    assert limiter.acquire(sleep=slept.append) is True
    assert slept == [0.4]
    _, key, args = client.calls[0]
    assert key == "rl:test"
    assert args == (2, 120 / 60_000.0, 120000)


def test_wait_is_capped_and_exhaustion_lets_request_through():
    client = FakeRedis([[0, "0", 60000]] * 3)
    limiter = RedisTokenBucketLimiter(client, "rl:test", max_rpm=1, max_wait_ms=500)
    slept = []

    assert limiter.acquire(sleep=slept.append, max_attempts=3) is False
    assert slept == [0.5, 0.5, 0.5]


def test_script_is_reloaded_after_redis_restart():
    client = FakeRedis([NoScriptError("NOSCRIPT"), [1, "4", 0]])
    limiter = RedisTokenBucketLimiter(client, "rl:test", max_rpm=60)

    assert limiter.acquire_once() == (True, 0)
    assert client.loaded == 2
    assert client.calls[-1][0] == "sha2"


@pytest.mark.parametrize("enabled, url", [(False, "redis://localhost:6379/0"), (True, None)])
def test_from_settings_is_off_unless_enabled_with_redis(monkeypatch, enabled, url):
    monkeypatch.setattr(settings, "MARKETPLACE_THROTTLE_ENABLED", enabled)
    monkeypatch.setattr(settings, "REDIS_URL", url)
    assert RedisTokenBucketLimiter.from_settings(platform="shopify", connection_id=1) is None
