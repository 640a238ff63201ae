"""
对外统一入口（Public Surface）：
- 从这里 import 需要的类/函数，内部实现可自由演进。
"""

from .platform import Platform, PlatformCapabilities

from .dto import (
    ADJUSTMENT_ADJUST, ADJUSTMENT_SET,
    ORDER_STATUS_CANCELLED, ORDER_STATUS_COMPLETED, ORDER_STATUS_PENDING,
    ORDER_STATUS_PROCESSING, ORDER_STATUS_REFUNDED,
    InventoryUpdate, Page, PlatformOrder, PlatformProduct, RateLimitStatus,
)

from .result import ApiResult

from .errors import (
    MarketplaceError, ConnectorNotInitializedError, ConnectorConfigError,
    UnsupportedPlatformError, ConnectionInactiveError,
)

from .connectors import (
    BasePlatformConnector,
    AmazonConnector, BigCommerceConnector, EbayConnector,
    EtsyConnector, ShopifyConnector, WalmartConnector, WooCommerceConnector,
)

from .locks import ConnectionLocks
from .manager import DEFAULT_CONNECTORS, PlatformConnectorManager, SyncReport


__all__ = [
    "Platform", "PlatformCapabilities",
    "ADJUSTMENT_ADJUST", "ADJUSTMENT_SET",
    "ORDER_STATUS_CANCELLED", "ORDER_STATUS_COMPLETED", "ORDER_STATUS_PENDING",
    "ORDER_STATUS_PROCESSING", "ORDER_STATUS_REFUNDED",
    "InventoryUpdate", "Page", "PlatformOrder", "PlatformProduct", "RateLimitStatus",
    "ApiResult",
    "MarketplaceError", "ConnectorNotInitializedError", "ConnectorConfigError",
    "UnsupportedPlatformError", "ConnectionInactiveError",
    "BasePlatformConnector",
    "AmazonConnector", "BigCommerceConnector", "EbayConnector",
    "EtsyConnector", "ShopifyConnector", "WalmartConnector", "WooCommerceConnector",
    "ConnectionLocks",
    "DEFAULT_CONNECTORS", "PlatformConnectorManager", "SyncReport",
]
