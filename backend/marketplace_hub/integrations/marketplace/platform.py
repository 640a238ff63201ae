"""
平台枚举 + 能力标记
  - 能力标记决定某个连接上哪些同步操作有意义（库存同步 / 订单同步）
  - connector 必须与自己平台的标记一致：标记为不支持的操作直接拒绝
"""

from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Union

from .errors import UnsupportedPlatformError


@dataclass(frozen=True)
class PlatformCapabilities:
    label: str
    requires_oauth: bool
    is_marketplace: bool
    is_storefront: bool
    supports_inventory_sync: bool
    supports_order_sync: bool


class Platform(str, Enum):
    SHOPIFY = "shopify"
    EBAY = "ebay"
    AMAZON = "amazon"
    ETSY = "etsy"
    WALMART = "walmart"
    WOOCOMMERCE = "woocommerce"
    BIGCOMMERCE = "bigcommerce"
    PAPERFORM = "paperform"

    @classmethod
    def coerce(cls, value: Union["Platform", str, None]) -> "Platform":
        if isinstance(value, cls):
            return value
        key = (value or "").strip().lower()
        for member in cls:
            if member.value == key:
                return member
        raise UnsupportedPlatformError(f"unknown platform: {value!r}")

    @property
    def capabilities(self) -> PlatformCapabilities:
        return _CAPABILITIES[self]

    @property
    def label(self) -> str:
        return self.capabilities.label

    @property
    def requires_oauth(self) -> bool:
        return self.capabilities.requires_oauth

    @property
    def is_marketplace(self) -> bool:
        return self.capabilities.is_marketplace

    @property
    def is_storefront(self) -> bool:
        return self.capabilities.is_storefront

    @property
    def supports_inventory_sync(self) -> bool:
        return self.capabilities.supports_inventory_sync

    @property
    def supports_order_sync(self) -> bool:
        return self.capabilities.supports_order_sync

    def to_dict(self) -> Dict[str, Any]:
        caps = self.capabilities
        return {
            "platform": self.value,
            "label": caps.label,
            "requires_oauth": caps.requires_oauth,
            "is_marketplace": caps.is_marketplace,
            "is_storefront": caps.is_storefront,
            "supports_inventory_sync": caps.supports_inventory_sync,
            "supports_order_sync": caps.supports_order_sync,
        }


# Walmart 走 client-credentials 的 OAuth2，token 15 分钟过期，也算 OAuth
# Paperform 只是表单收款：只有“订单”（提交记录），没有库存
_CAPABILITIES: Dict[Platform, PlatformCapabilities] = {
    Platform.SHOPIFY: PlatformCapabilities("Shopify", True, False, True, True, True),
    Platform.EBAY: PlatformCapabilities("eBay", True, True, False, True, True),
    Platform.AMAZON: PlatformCapabilities("Amazon", True, True, False, True, True),
    Platform.ETSY: PlatformCapabilities("Etsy", True, True, False, True, True),
    Platform.WALMART: PlatformCapabilities("Walmart", True, True, False, True, True),
    Platform.WOOCOMMERCE: PlatformCapabilities("WooCommerce", False, False, True, True, True),
    Platform.BIGCOMMERCE: PlatformCapabilities("BigCommerce", True, False, True, True, True),
    Platform.PAPERFORM: PlatformCapabilities("Paperform", False, False, False, False, True),
}
