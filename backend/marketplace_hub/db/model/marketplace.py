from __future__ import annotations
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    DateTime, ForeignKey, Index, Integer, Numeric, String, Text, UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from marketplace_hub.db.base import Base, JSONType, TimestampMixin
from marketplace_hub.utils.clock import now_utc


CONNECTION_STATUS_PENDING = "pending"
CONNECTION_STATUS_ACTIVE = "active"
CONNECTION_STATUS_INACTIVE = "inactive"


"""
  店铺 ↔ 外部平台 的连接记录（凭证/状态/上次同步时间）
    - 一个租户(store) 在一个平台上的一个店铺身份 对应一行
    - 状态机：pending → active → inactive（撤销授权 / shop redact webhook / 手动停用）
    - connector 只持有非拥有引用；只有授权流程、token 刷新和 record_sync() 会改它
"""
class StoreMarketplace(TimestampMixin, Base):

    __tablename__ = "store_marketplaces"
    __table_args__ = (
        UniqueConstraint("store_id", "platform", "shop_domain", "external_store_id",
                         name="uq_store_marketplaces_identity"),
        Index("ix_store_marketplaces_platform_shop", "platform", "shop_domain"),
    )

    id:       Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    store_id: Mapped[int] = mapped_column(Integer, index=True, nullable=False)      # 租户
    platform: Mapped[str] = mapped_column(String(32), nullable=False)               # Platform.value
    name:     Mapped[Optional[str]] = mapped_column(String(255))

    shop_domain:       Mapped[Optional[str]] = mapped_column(String(255))           # shopify: xxx.myshopify.com
    external_store_id: Mapped[Optional[str]] = mapped_column(String(255))           # seller id / store hash / shop id

    # 凭证
    access_token:     Mapped[Optional[str]] = mapped_column(Text)
    refresh_token:    Mapped[Optional[str]] = mapped_column(Text)
    token_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    credentials:      Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)   # client_id/secret/keystring...
    settings:         Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)   # region/marketplace_id/location_id...

    status:       Mapped[str] = mapped_column(String(16), nullable=False, default=CONNECTION_STATUS_PENDING)
    last_sync_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))


    @property
    def is_active(self) -> bool:
        return self.status == CONNECTION_STATUS_ACTIVE

    def credential(self, key: str, default: Any = None) -> Any:
        return (self.credentials or {}).get(key, default)

    def setting(self, key: str, default: Any = None) -> Any:
        return (self.settings or {}).get(key, default)

    def record_sync(self, at: Optional[datetime] = None) -> None:
        self.last_sync_at = at or now_utc()

    def update_tokens(self, access_token: str, expires_in: Optional[int] = None,
                      refresh_token: Optional[str] = None) -> None:
        self.access_token = access_token
        if refresh_token:
            self.refresh_token = refresh_token
        self.token_expires_at = now_utc() + timedelta(seconds=int(expires_in)) if expires_in else None

    def activate(self) -> None:
        self.status = CONNECTION_STATUS_ACTIVE

    def deactivate(self) -> None:
        self.status = CONNECTION_STATUS_INACTIVE

    def __repr__(self) -> str:  # 不打印凭证
        return f"<StoreMarketplace id={self.id} platform={self.platform} shop={self.shop_domain} status={self.status}>"



"""
  平台 listing 的本地镜像（按 store_marketplace_id + external_listing_id upsert）
"""
class PlatformListing(TimestampMixin, Base):

    __tablename__ = "platform_listings"
    __table_args__ = (
        UniqueConstraint("store_marketplace_id", "external_listing_id", name="uq_platform_listings_connection_external"),
    )

    id:                   Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    store_marketplace_id: Mapped[int] = mapped_column(ForeignKey("store_marketplaces.id", ondelete="CASCADE"), index=True, nullable=False)
    external_listing_id:  Mapped[str] = mapped_column(String(255), nullable=False)

    title: Mapped[Optional[str]] = mapped_column(String(512))
    sku:   Mapped[Optional[str]] = mapped_column(String(255), index=True)

    platform_price:    Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2))
    platform_quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    platform_data:     Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)   # PlatformProduct.to_dict() 快照
    status:            Mapped[str] = mapped_column(String(16), nullable=False, default="active")         # active / inactive
    last_synced_at:    Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))



"""
  平台订单的本地镜像（按 store_marketplace_id + external_order_id upsert）
"""
class PlatformOrderRecord(TimestampMixin, Base):

    __tablename__ = "platform_orders"
    __table_args__ = (
        UniqueConstraint("store_marketplace_id", "external_order_id", name="uq_platform_orders_connection_external"),
    )

    id:                   Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    store_marketplace_id: Mapped[int] = mapped_column(ForeignKey("store_marketplaces.id", ondelete="CASCADE"), index=True, nullable=False)
    external_order_id:    Mapped[str] = mapped_column(String(255), nullable=False)
    order_number:         Mapped[Optional[str]] = mapped_column(String(255))

    status:             Mapped[str] = mapped_column(String(32), nullable=False, default="pending")
    fulfillment_status: Mapped[Optional[str]] = mapped_column(String(32))
    payment_status:     Mapped[Optional[str]] = mapped_column(String(32))

    total:         Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    subtotal:      Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    shipping_cost: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    tax:           Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    discount:      Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    currency:      Mapped[str] = mapped_column(String(8), nullable=False, default="USD")

    customer_data:    Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    shipping_address: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    billing_address:  Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    line_items:       Mapped[List[Dict[str, Any]]] = mapped_column(JSONType, nullable=False, default=list)
    platform_data:    Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)

    ordered_at:     Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    last_synced_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
