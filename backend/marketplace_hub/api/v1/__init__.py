from fastapi import APIRouter

from .routes_health import router as health_router
from .marketplaces import router as marketplaces_router
from .marketplace_connect import router as marketplace_connect_router
from .webhooks_shopify import router as webhooks_router


api_v1 = APIRouter()
api_v1.include_router(health_router)
api_v1.include_router(marketplaces_router)
api_v1.include_router(marketplace_connect_router)     # 连接上线（Shopify OAuth 回调是 GET，靠 query HMAC 鉴权）
api_v1.include_router(webhooks_router)     # 第三方服务器回调，靠 HMAC 鉴权
