"""
  Rate limit infrastructure utilities.
  Expose the public limiter(s) here so callers can do:
     from marketplace_hub.infrastructure.ratelimit import RedisTokenBucketLimiter
"""
from .redis_token_bucket import RedisTokenBucketLimiter

__all__ = ["RedisTokenBucketLimiter"]
