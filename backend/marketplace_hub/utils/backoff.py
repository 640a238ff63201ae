from __future__ import annotations
import random
from typing import Optional


def calc_backoff_seconds(attempt: int, base_ms: int = 200, max_seconds: float = 10.0,
                         retry_after: Optional[str] = None) -> float:
    """
    指数退避 + 少量抖动：第 1 次重试 base，之后翻倍，直到 max_seconds。
    平台给了 Retry-After（秒）就以它为准。
    """
    if retry_after:
        try:
            return min(max_seconds, max(0.0, float(retry_after)))
        except (TypeError, ValueError):
            pass
    attempt = max(1, attempt)
    delay = (base_ms / 1000.0) * (2 ** (attempt - 1))
    return min(max_seconds, delay + random.uniform(0, base_ms / 1000.0))
