# marketplace 连接上线：Shopify OAuth 安装 / 回调，WooCommerce REST key 校验
#   - 新连接一律先落 pending，授权 + 探活通过后才 active

from __future__ import annotations
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from marketplace_hub.core.config import secret_value, settings
from marketplace_hub.core.security import verify_query_hmac
from marketplace_hub.db.model.marketplace import CONNECTION_STATUS_PENDING, StoreMarketplace
from marketplace_hub.db.session import get_db
from marketplace_hub.integrations.marketplace import Platform, PlatformConnectorManager
from marketplace_hub.integrations.marketplace.connectors.shopify import normalize_shop_domain
from marketplace_hub.repository.marketplace_repo import SqlMarketplaceStore, get_connection, list_connections

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/marketplaces", tags=["marketplaces.connect"])


class ShopifyConnectRequest(BaseModel):
    store_id: int = Field(..., ge=1)
    shop: str = Field(..., min_length=1, max_length=255)
    redirect_uri: Optional[str] = None


class WooCommerceConnectRequest(BaseModel):
    store_id: int = Field(..., ge=1)
    site_url: str = Field(..., min_length=1, max_length=255)
    consumer_key: str = Field(..., min_length=1)
    consumer_secret: str = Field(..., min_length=1)
    name: Optional[str] = None


def _find_or_create(db: Session, store_id: int, platform: Platform, shop_domain: str, **fields: Any) -> StoreMarketplace:
    """同一租户 + 平台 + 店铺只有一行；重新授权复用旧行。"""
    for conn in list_connections(db, platform=platform.value, shop_domain=shop_domain):
        if conn.store_id == store_id:
            for k, v in fields.items():
                setattr(conn, k, v)
            return conn
    values: Dict[str, Any] = {"status": CONNECTION_STATUS_PENDING, "credentials": {}, "settings": {}, **fields}
    conn = StoreMarketplace(store_id=store_id, platform=platform.value, shop_domain=shop_domain, **values)
    db.add(conn)
    return conn


# =============== Shopify：安装链接 ===============
@router.post("/shopify/connect")
def shopify_connect(body: ShopifyConnectRequest, db: Session = Depends(get_db)) -> Dict[str, Any]:
    shop = normalize_shop_domain(body.shop)
    redirect_uri = body.redirect_uri or settings.SHOPIFY_REDIRECT_URI
    if not settings.SHOPIFY_API_KEY or not redirect_uri:
        raise HTTPException(status_code=503, detail="Shopify app credentials are not configured")

    conn = _find_or_create(db, body.store_id, Platform.SHOPIFY, shop, name=shop)
    store = SqlMarketplaceStore(db)
    store.save_connection(conn)

    manager = PlatformConnectorManager(store)
    url = manager.get_connector(Platform.SHOPIFY).initialize(conn).authorize_url(str(conn.id), redirect_uri)
    logger.info("marketplace.connect.shopify.start connection=%s shop=%s status=%s", conn.id, shop, conn.status)
    return {"connection_id": conn.id, "status": conn.status, "authorize_url": url}


'''
Shopify OAuth 回调：
   ?code=...&hmac=...&shop=xxx.myshopify.com&state=<connection id>&timestamp=...
   → 校验 query 签名 → code 换 token → 探活 → active
'''
@router.get("/shopify/callback")
def shopify_callback(request: Request, db: Session = Depends(get_db)) -> Dict[str, Any]:
    params = dict(request.query_params)
    if not verify_query_hmac(secret_value(settings.SHOPIFY_API_SECRET), params):
        raise HTTPException(status_code=401, detail="Invalid HMAC")

    code = params.get("code")
    shop = normalize_shop_domain(params.get("shop"))
    state = params.get("state") or ""
    if not code or not shop or not state.isdigit():
        raise HTTPException(status_code=400, detail="Missing code, shop or state")

    conn = get_connection(db, int(state))
    if conn is None or conn.platform != Platform.SHOPIFY.value or normalize_shop_domain(conn.shop_domain) != shop:
        raise HTTPException(status_code=404, detail=f"no pending Shopify connection for {shop}")

    manager = PlatformConnectorManager(SqlMarketplaceStore(db))
    result = manager.activate_connection(conn, authorize=lambda c: c.exchange_code(code))
    if not result["ok"]:
        logger.warning("marketplace.connect.shopify.failed connection=%s shop=%s error=%s",
                       conn.id, shop, result["error"])
        raise HTTPException(status_code=502, detail=result["error"])
    return result


# =============== WooCommerce：REST API key ===============
@router.post("/woocommerce/connect")
def woocommerce_connect(body: WooCommerceConnectRequest, db: Session = Depends(get_db)) -> Dict[str, Any]:
    site_url = body.site_url.strip().rstrip("/")
    if not site_url.startswith(("http://", "https://")):
        site_url = "https://" + site_url
    shop_domain = site_url.split("://", 1)[1].lower()

    conn = _find_or_create(
        db, body.store_id, Platform.WOOCOMMERCE, shop_domain,
        name=body.name or shop_domain,
        credentials={
            "site_url": site_url,
            "consumer_key": body.consumer_key,
            "consumer_secret": body.consumer_secret,
        },
    )
    store = SqlMarketplaceStore(db)
    store.save_connection(conn)

    manager = PlatformConnectorManager(store)
    result = manager.activate_connection(conn)
    if not result["ok"]:
        raise HTTPException(status_code=400, detail=result["error"])
    return result
