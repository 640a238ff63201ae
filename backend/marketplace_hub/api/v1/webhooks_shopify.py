# Shopify 入站 webhook：GDPR 强制主题 + app/uninstalled

from __future__ import annotations
import json
import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from sqlalchemy.orm import Session

from marketplace_hub.core.config import secret_value, settings
from marketplace_hub.core.security import verify_hmac_base64
from marketplace_hub.db.session import get_db
from marketplace_hub.integrations.marketplace import Platform
from marketplace_hub.repository.marketplace_repo import deactivate_by_shop_domain

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks/shopify", tags=["webhooks.shopify"])


# =============== 公共：HMAC 校验（Shopify Webhook 签名） ===============
def _verify_hmac_or_401(provided_hmac_b64: str, raw_body: bytes) -> None:
    if not provided_hmac_b64:  # 缺失即 401
        raise HTTPException(status_code=401, detail="Missing HMAC")

    secret = secret_value(settings.SHOPIFY_WEBHOOK_SECRET)
    if not verify_hmac_base64(secret, raw_body, provided_hmac_b64):
        raise HTTPException(status_code=401, detail="Invalid HMAC")


def _json_or_400(raw: bytes) -> dict:
    try:
        payload = json.loads(raw.decode("utf-8") or "{}")
    except (UnicodeDecodeError, ValueError):
        raise HTTPException(status_code=400, detail="Invalid JSON payload")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Invalid JSON payload")
    return payload


def _shop_domain(payload: dict, header_value: str) -> str:
    # body 里的 shop_domain 优先，Header 兜底
    shop = (payload.get("shop_domain") or header_value or "").strip().lower()
    if not shop:
        raise HTTPException(status_code=400, detail="Missing shop domain")
    return shop


def _deactivate(db: Session, shop: str, topic: str) -> dict:
    count = deactivate_by_shop_domain(db, Platform.SHOPIFY.value, shop)
    logger.info("webhook.shopify.deactivated topic=%s shop=%s connections=%s", topic, shop, count)
    return {"ok": True, "deactivated": count}



'''
shop/redact：店铺卸载 48 小时后 Shopify 推送
   body 示例：{ "shop_id": 954889, "shop_domain": "xxx.myshopify.com" }
   → 该店铺所有 Shopify 连接置为 inactive
'''
@router.post("/gdpr/shop-redact")
async def shop_redact(
    request: Request,
    x_shopify_hmac_sha256: str = Header(default=""),
    x_shopify_shop_domain: str = Header(default=""),
    db: Session = Depends(get_db),
):
    # 先做 HMAC 校验，再解析 body
    raw = await request.body()
    _verify_hmac_or_401(x_shopify_hmac_sha256, raw)
    payload = _json_or_400(raw)
    return _deactivate(db, _shop_domain(payload, x_shopify_shop_domain), "shop/redact")


@router.post("/app/uninstalled")
async def app_uninstalled(
    request: Request,
    x_shopify_hmac_sha256: str = Header(default=""),
    x_shopify_shop_domain: str = Header(default=""),
    db: Session = Depends(get_db),
):
    raw = await request.body()
    _verify_hmac_or_401(x_shopify_hmac_sha256, raw)
    payload = _json_or_400(raw)
    # app/uninstalled 的 body 是 shop 对象：domain / myshopify_domain
    shop = payload.get("myshopify_domain") or payload.get("shop_domain") or x_shopify_shop_domain
    return _deactivate(db, _shop_domain({"shop_domain": shop}, ""), "app/uninstalled")


# 本服务不保存顾客数据：校验通过即确认
@router.post("/gdpr/customers-redact")
async def customers_redact(request: Request, x_shopify_hmac_sha256: str = Header(default="")):
    raw = await request.body()
    _verify_hmac_or_401(x_shopify_hmac_sha256, raw)
    return {"ok": True}


@router.post("/gdpr/customers-data-request")
async def customers_data_request(request: Request, x_shopify_hmac_sha256: str = Header(default="")):
    raw = await request.body()
    _verify_hmac_or_401(x_shopify_hmac_sha256, raw)
    return {"ok": True}
