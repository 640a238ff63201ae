"""
各平台 connector（同一个契约：BasePlatformConnector）
  - 只做“平台原始 payload ↔ 标准 DTO”的转换和 HTTP 调用
  - 不碰数据库；持久化由 Manager 负责
"""

from .base import BasePlatformConnector
from .amazon import AmazonConnector
from .bigcommerce import BigCommerceConnector
from .ebay import EbayConnector
from .etsy import EtsyConnector
from .shopify import ShopifyConnector
from .walmart import WalmartConnector
from .woocommerce import WooCommerceConnector


__all__ = [
    "BasePlatformConnector",
    "AmazonConnector", "BigCommerceConnector", "EbayConnector",
    "EtsyConnector", "ShopifyConnector", "WalmartConnector", "WooCommerceConnector",
]
