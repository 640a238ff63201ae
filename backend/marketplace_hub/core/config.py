# 环境变量和配置
# pydantic‑settings 读取 .env = core/config.py

from typing import Optional
from pydantic import SecretStr, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# 本机直接跑 uvicorn / celery 时（不走 Docker），才会用到 model_config.env_file=".env"：
# 此时它会读取 backend/.env

class Settings(BaseSettings):

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_prefix="",
        case_sensitive=False,
    )

    # ========= project config =========
    PROJECT_NAME: str = "Marketplace Connector Hub"
    ENVIRONMENT: str = "dev"
    API_PREFIX: str = "/api/v1"
    BACKEND_CORS_ORIGINS: str = Field("http://localhost:5173", alias="BACKEND_CORS_ORIGINS")   # 逗号分隔
    LOG_LEVEL: str = Field("INFO", alias="LOG_LEVEL")


    # ========= Database / Redis =========
    DATABASE_URL: str = Field(
        default="postgresql+psycopg://mh_user:mh_pass@db:5432/marketplace_hub",
        alias="DATABASE_URL",
    )
    DATABASE_POOL_SIZE: int = Field(10, ge=1, alias="DATABASE_POOL_SIZE")
    DATABASE_MAX_OVERFLOW: int = Field(20, ge=0, alias="DATABASE_MAX_OVERFLOW")
    # 配了就用 Redis 分布式锁 / 令牌桶；不配则退回进程内锁
    REDIS_URL: Optional[str] = Field(None, alias="REDIS_URL")


    # ========= celery config =========
    CELERY_BROKER_URL: Optional[str] = None
    CELERY_RESULT_BACKEND: Optional[str] = None
    CELERY_TIMEZONE: str = "UTC"
    SYNC_TASKS_INLINE: bool = Field(default=True, alias="SYNC_TASKS_INLINE")


    # ========= 通用 HTTP 层（所有 connector 共用）=========
    MARKETPLACE_HTTP_TIMEOUT: int = Field(30, ge=1, alias="MARKETPLACE_HTTP_TIMEOUT")
    MARKETPLACE_HTTP_RETRIES: int = Field(2, ge=0, le=10, alias="MARKETPLACE_HTTP_RETRIES")
    MARKETPLACE_HTTP_BACKOFF_MS: int = Field(200, ge=0, alias="MARKETPLACE_HTTP_BACKOFF_MS")
    MARKETPLACE_DEFAULT_PAGE_SIZE: int = Field(250, ge=1, alias="MARKETPLACE_DEFAULT_PAGE_SIZE")
    MARKETPLACE_TOKEN_REFRESH_SKEW_SEC: int = Field(300, ge=0, alias="MARKETPLACE_TOKEN_REFRESH_SKEW_SEC")

    # 可选：按连接的出站令牌桶（默认关闭，限流三元组只做观测）
    MARKETPLACE_THROTTLE_ENABLED: bool = Field(False, alias="MARKETPLACE_THROTTLE_ENABLED")
    MARKETPLACE_THROTTLE_MAX_RPM: int = Field(120, ge=1, alias="MARKETPLACE_THROTTLE_MAX_RPM")
    MARKETPLACE_THROTTLE_BURST: int = Field(10, ge=1, alias="MARKETPLACE_THROTTLE_BURST")
    MARKETPLACE_THROTTLE_MAX_WAIT_MS: int = Field(5000, ge=0, alias="MARKETPLACE_THROTTLE_MAX_WAIT_MS")
    MARKETPLACE_THROTTLE_KEY_PREFIX: str = Field("marketplace:rl", alias="MARKETPLACE_THROTTLE_KEY_PREFIX")


    # ========= 同一连接的互斥（sync / token refresh）=========
    SYNC_LOCK_TTL_SEC: int = Field(15 * 60, ge=1, alias="SYNC_LOCK_TTL_SEC")
    SYNC_LOCK_WAIT_SEC: float = Field(5.0, ge=0, alias="SYNC_LOCK_WAIT_SEC")
    SYNC_LOCK_KEY_PREFIX: str = Field("marketplace:sync", alias="SYNC_LOCK_KEY_PREFIX")


    # ========= Shopify =========
    SHOPIFY_API_VERSION: str = Field("2024-01", alias="SHOPIFY_API_VERSION")
    SHOPIFY_MAX_PAGE_SIZE: int = Field(250, alias="SHOPIFY_MAX_PAGE_SIZE")
    SHOPIFY_API_KEY: Optional[str] = Field(None, alias="SHOPIFY_API_KEY")                      # OAuth client_id
    SHOPIFY_API_SECRET: Optional[SecretStr] = Field(None, alias="SHOPIFY_API_SECRET")          # OAuth client_secret + 回调 query 签名
    SHOPIFY_SCOPES: str = Field(
        "read_products,write_products,read_orders,write_orders,read_inventory,write_inventory,read_locations",
        alias="SHOPIFY_SCOPES",
    )
    SHOPIFY_REDIRECT_URI: Optional[str] = Field(None, alias="SHOPIFY_REDIRECT_URI")            # 指向 /marketplaces/shopify/callback
    SHOPIFY_WEBHOOK_SECRET: Optional[SecretStr] = Field(None, alias="SHOPIFY_WEBHOOK_SECRET")  # webhook body 签名


    # ========= Amazon SP-API =========
    AMAZON_LWA_TOKEN_URL: str = Field("https://api.amazon.com/auth/o2/token", alias="AMAZON_LWA_TOKEN_URL")
    AMAZON_LWA_CLIENT_ID: Optional[str] = Field(None, alias="AMAZON_LWA_CLIENT_ID")
    AMAZON_LWA_CLIENT_SECRET: Optional[SecretStr] = Field(None, alias="AMAZON_LWA_CLIENT_SECRET")
    AMAZON_DEFAULT_REGION: str = Field("na", alias="AMAZON_DEFAULT_REGION")
    AMAZON_DEFAULT_MARKETPLACE_ID: str = Field("ATVPDKIKX0DER", alias="AMAZON_DEFAULT_MARKETPLACE_ID")
    AMAZON_ORDER_LOOKBACK_DAYS: int = Field(30, ge=1, alias="AMAZON_ORDER_LOOKBACK_DAYS")


    # ========= Walmart =========
    WALMART_BASE_URL: str = Field("https://marketplace.walmartapis.com/v3", alias="WALMART_BASE_URL")
    WALMART_SERVICE_NAME: str = Field("Walmart Marketplace", alias="WALMART_SERVICE_NAME")
    WALMART_TOKEN_TTL_SEC: int = Field(900, ge=60, alias="WALMART_TOKEN_TTL_SEC")     # 响应没带 expires_in 时的兜底


    # ========= BigCommerce =========
    BIGCOMMERCE_BASE_URL: str = Field("https://api.bigcommerce.com/stores", alias="BIGCOMMERCE_BASE_URL")


    # ========= eBay =========
    EBAY_SANDBOX: bool = Field(False, alias="EBAY_SANDBOX")
    EBAY_CLIENT_ID: Optional[str] = Field(None, alias="EBAY_CLIENT_ID")
    EBAY_CLIENT_SECRET: Optional[SecretStr] = Field(None, alias="EBAY_CLIENT_SECRET")
    EBAY_MARKETPLACE_ID: str = Field("EBAY_US", alias="EBAY_MARKETPLACE_ID")
    EBAY_CATEGORY_TREE_ID: str = Field("0", alias="EBAY_CATEGORY_TREE_ID")
    EBAY_OAUTH_SCOPES: str = Field(
        "https://api.ebay.com/oauth/api_scope/sell.inventory "
        "https://api.ebay.com/oauth/api_scope/sell.fulfillment "
        "https://api.ebay.com/oauth/api_scope/sell.account",
        alias="EBAY_OAUTH_SCOPES",
    )


    # ========= Etsy =========
    ETSY_BASE_URL: str = Field("https://openapi.etsy.com/v3", alias="ETSY_BASE_URL")
    ETSY_TOKEN_URL: str = Field("https://api.etsy.com/v3/public/oauth/token", alias="ETSY_TOKEN_URL")
    ETSY_KEYSTRING: Optional[str] = Field(None, alias="ETSY_KEYSTRING")


    @property
    def ebay_api_base(self) -> str:
        return "https://api.sandbox.ebay.com" if self.EBAY_SANDBOX else "https://api.ebay.com"


def secret_value(value) -> Optional[str]:
    """SecretStr / str / None 统一取明文。"""
    if value is None:
        return None
    if hasattr(value, "get_secret_value"):
        return value.get_secret_value()
    return str(value)


settings = Settings()  # 只从环境读取（含 .env）
