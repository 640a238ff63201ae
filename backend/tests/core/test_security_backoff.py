import base64
import hashlib
import hmac

import pytest

from marketplace_hub.core.config import secret_value
from marketplace_hub.core.security import (
    compute_hmac_base64, compute_hmac_hex, verify_hmac_base64, verify_query_hmac,
)
from marketplace_hub.utils.backoff import calc_backoff_seconds


# ---------- HMAC ----------
def test_compute_hmac_base64_matches_stdlib():
    raw = b'{"shop_domain":"demo.myshopify.com"}'
    expected = base64.b64encode(hmac.new(b"s3cr3t", raw, hashlib.sha256).digest()).decode()
    assert compute_hmac_base64("s3cr3t", raw) == expected


def test_verify_hmac_base64():
    raw = b"{}"
    good = compute_hmac_base64("s3cr3t", raw)
    assert verify_hmac_base64("s3cr3t", raw, good)
    assert verify_hmac_base64("s3cr3t", raw, f"  {good}\n")
    assert not verify_hmac_base64("s3cr3t", b"{ }", good)
    assert not verify_hmac_base64("other", raw, good)
    # 没配 secret 或没带签名都不放行
    assert not verify_hmac_base64(None, raw, good)
    assert not verify_hmac_base64("s3cr3t", raw, None)


def test_verify_query_hmac_ignores_signature_fields():
    params = {"shop": "demo.myshopify.com", "timestamp": "1700000000", "code": "abc"}
    digest = compute_hmac_hex("s3cr3t", "code=abc&shop=demo.myshopify.com&timestamp=1700000000")
    assert verify_query_hmac("s3cr3t", {**params, "hmac": digest, "signature": "x"})
    assert verify_query_hmac("s3cr3t", {**params, "hmac": digest.upper()})
    assert not verify_query_hmac("s3cr3t", {**params, "hmac": "0" * 64})
    assert not verify_query_hmac("s3cr3t", params)


def test_secret_value_unwraps_secretstr():
    from pydantic import SecretStr

    assert secret_value(SecretStr("x")) == "x"
    assert secret_value("plain") == "plain"
    assert secret_value(None) is None


# ---------- backoff ----------
def test_backoff_prefers_retry_after():
    assert calc_backoff_seconds(1, 200, retry_after="2") == 2.0
    assert calc_backoff_seconds(1, 200, retry_after="120") == 10.0
    # 非数字的 Retry-After（HTTP 日期）退回指数退避
    assert calc_backoff_seconds(1, 0, retry_after="Wed, 21 Oct 2015 07:28:00 GMT") == 0.0


@pytest.mark.parametrize("attempt, low, high", [(1, 0.2, 0.4), (2, 0.4, 0.6), (3, 0.8, 1.0), (10, 10.0, 10.0)])
def test_backoff_doubles_with_jitter_and_caps(attempt, low, high):
    delay = calc_backoff_seconds(attempt, 200)
    assert low <= delay <= high
