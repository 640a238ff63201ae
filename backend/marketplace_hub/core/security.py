"""
入站回调签名校验（HMAC-SHA256）
  - Webhook：对原始 body 计算 base64 摘要，与 Header 比较
  - OAuth 回调：对排序后的 query（去掉 hmac/signature）计算 hex 摘要
  - 一律用 hmac.compare_digest 做常量时间比较
"""

from __future__ import annotations
import base64
import hashlib
import hmac
from typing import Mapping, Optional


def compute_hmac_base64(secret: str, raw_body: bytes) -> str:
    digest = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode()


def compute_hmac_hex(secret: str, message: str) -> str:
    return hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()


def verify_hmac_base64(secret: Optional[str], raw_body: bytes, provided: Optional[str]) -> bool:
    # 没配 secret 视为校验失败，不能放行
    if not secret or not provided:
        return False
    expected = compute_hmac_base64(secret, raw_body)
    return hmac.compare_digest(provided.strip().encode("utf-8"), expected.encode("utf-8"))


def verify_query_hmac(secret: Optional[str], params: Mapping[str, str]) -> bool:
    """Shopify OAuth / App Proxy 风格：hmac 参数 = hex(HMAC(secret, "k1=v1&k2=v2"))。"""
    provided = params.get("hmac")
    if not secret or not provided:
        return False
    message = "&".join(
        f"{k}={v}" for k, v in sorted(params.items()) if k not in ("hmac", "signature")
    )
    expected = compute_hmac_hex(secret, message)
    return hmac.compare_digest(str(provided).lower().encode("utf-8"), expected.encode("utf-8"))
