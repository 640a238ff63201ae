"""
Connector Manager
  - 静态注册表：Platform → connector 工厂（register_connector 可覆盖/扩展）
  - get_connector_for_marketplace(): 只接受 status == active 的连接
  - activate_connection(): 授权 + 探活通过才把连接置为 active
  - sync_products / sync_orders:
      1) 同一连接加锁（sync / 探活 / token 刷新串行）
      2) 需要时刷新 token，刷新过就持久化
      3) 拉一页 → 逐条校验 + upsert（单条失败、转换失败都只计数，不中断）
      4) record_sync() 恰好一次 → 持久化连接
  - 整页被拒（连接停用 / 平台不支持 / 锁被占 / 拉页失败）返回带 error 的报告，不记 sync
  - 任何情况下都返回 SyncReport，不向调用方抛异常
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol, Union

import requests

from marketplace_hub.core.config import settings
from marketplace_hub.utils.clock import now_utc
from marketplace_hub.utils.serialization import to_jsonable

from .connectors import (
    AmazonConnector, BasePlatformConnector, BigCommerceConnector, EbayConnector,
    EtsyConnector, ShopifyConnector, WalmartConnector, WooCommerceConnector,
)
from .dto import Page, PlatformOrder, PlatformProduct
from .errors import ConnectionInactiveError, MarketplaceError, UnsupportedPlatformError
from .locks import ConnectionLocks
from .platform import Platform

logger = logging.getLogger(__name__)


ConnectorFactory = Callable[..., BasePlatformConnector]

# Paperform 暂无 connector
DEFAULT_CONNECTORS: Dict[Platform, ConnectorFactory] = {
    Platform.SHOPIFY: ShopifyConnector,
    Platform.AMAZON: AmazonConnector,
    Platform.WALMART: WalmartConnector,
    Platform.BIGCOMMERCE: BigCommerceConnector,
    Platform.EBAY: EbayConnector,
    Platform.ETSY: EtsyConnector,
    Platform.WOOCOMMERCE: WooCommerceConnector,
}


class MarketplaceStore(Protocol):
    """Manager 用到的持久化接口（SqlMarketplaceStore 是 SQL 实现）。"""

    def upsert_listing(self, connection, external_id: str, values: Dict[str, Any]) -> None: ...

    def upsert_order(self, connection, external_id: str, values: Dict[str, Any]) -> None: ...

    def save_connection(self, connection) -> None: ...


@dataclass
class SyncReport:
    synced: int = 0
    errors: int = 0
    results: List[Dict[str, Any]] = field(default_factory=list)
    next_cursor: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def rejected(cls, error: str) -> "SyncReport":
        return cls(error=error)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "synced": self.synced,
            "errors": self.errors,
            "results": [dict(r) for r in self.results],
            "next_cursor": self.next_cursor,
            "error": self.error,
        }


# ---------- record → local mirror values ----------
def listing_values(product: PlatformProduct) -> Dict[str, Any]:
    if not product.external_id:
        raise ValueError("product has no external_id")
    if product.price is None:
        raise ValueError(f"product {product.external_id} has no price")
    return {
        "title": product.title[:512],
        "sku": product.sku,
        "platform_price": product.price,
        "platform_quantity": max(0, product.quantity),
        "platform_data": to_jsonable(product.to_dict()),
        "status": "active" if product.is_active else "inactive",
        "last_synced_at": now_utc(),
    }


def order_values(order: PlatformOrder) -> Dict[str, Any]:
    if not order.external_id:
        raise ValueError("order has no external_id")
    return {
        "order_number": order.order_number,
        "status": order.status,
        "fulfillment_status": order.fulfillment_status,
        "payment_status": order.payment_status,
        "total": order.total,
        "subtotal": order.subtotal,
        "shipping_cost": order.shipping_cost,
        "tax": order.tax,
        "discount": order.discount,
        "currency": order.currency,
        "customer_data": to_jsonable(order.customer),
        "shipping_address": to_jsonable(order.shipping_address),
        "billing_address": to_jsonable(order.billing_address),
        "line_items": to_jsonable(order.line_items),
        "platform_data": to_jsonable(order.to_dict()),
        "ordered_at": order.ordered_at,
        "last_synced_at": now_utc(),
    }


class PlatformConnectorManager:

    def __init__(
        self,
        store: MarketplaceStore,
        *,
        locks: Optional[ConnectionLocks] = None,
        session: Optional[requests.Session] = None,
        registry: Optional[Dict[Platform, ConnectorFactory]] = None,
    ) -> None:
        self.store = store
        self.locks = locks or ConnectionLocks.from_settings()
        self._session = session
        self._registry: Dict[Platform, ConnectorFactory] = dict(DEFAULT_CONNECTORS if registry is None else registry)


    # ---------- Registry ----------
    def register_connector(self, platform: Union[Platform, str], factory: ConnectorFactory) -> None:
        platform = Platform.coerce(platform)
        self._registry[platform] = factory
        logger.info("marketplace.registry.register platform=%s factory=%s",
                    platform.value, getattr(factory, "__name__", repr(factory)))

    def has_connector(self, platform: Union[Platform, str]) -> bool:
        try:
            return Platform.coerce(platform) in self._registry
        except UnsupportedPlatformError:
            return False

    def get_available_platforms(self) -> List[Platform]:
        return [p for p in Platform if p in self._registry]

    def get_connector(self, platform: Union[Platform, str]) -> BasePlatformConnector:
        """新建一个未初始化的 connector。"""
        platform = Platform.coerce(platform)
        factory = self._registry.get(platform)
        if factory is None:
            raise UnsupportedPlatformError(f"no connector registered for {platform.label}")
        return factory(session=self._session)

    def get_connector_for_marketplace(self, connection) -> BasePlatformConnector:
        if not connection.is_active:
            raise ConnectionInactiveError(
                f"connection {connection.id} is {connection.status!r}; only active connections can be used"
            )
        return self.get_connector(connection.platform).initialize(connection)


    # ---------- Connection check ----------
    def test_connection(self, connection) -> bool:
        return self.check_connection(connection)["ok"]

    def check_connection(self, connection) -> Dict[str, Any]:
        """
        探活 + 探活后观测到的限流三元组；不抛异常。
        探活里可能刷新 token（过期 / 401 重放），所以和 sync 一样先拿连接锁。
        """
        conn_id = getattr(connection, "id", None)
        try:
            connector = self.get_connector_for_marketplace(connection)
        except Exception as e:
            logger.warning("marketplace.test_connection.unresolved connection=%s platform=%s error=%s",
                           conn_id, getattr(connection, "platform", None), e)
            return {"connection_id": conn_id, "ok": False, "error": str(e), "rate_limit": None}

        with self.locks.hold(conn_id) as acquired:
            if not acquired:
                logger.warning("marketplace.test_connection.busy connection=%s", conn_id)
                return {"connection_id": conn_id, "ok": False, "error": _busy_message(conn_id), "rate_limit": None}
            ok = connector.test_connection()
            self._persist_refreshed_tokens(connector, connection)

        error = None if ok else connector.get_last_error()
        logger.info("marketplace.test_connection connection=%s platform=%s ok=%s error=%s",
                    conn_id, connection.platform, ok, error)
        return {
            "connection_id": conn_id,
            "ok": ok,
            "error": error,
            "rate_limit": to_jsonable(connector.get_rate_limit_status().to_dict()),
        }


    # ---------- Activation ----------
    def activate_connection(
        self,
        connection,
        *,
        authorize: Optional[Callable[[BasePlatformConnector], bool]] = None,
    ) -> Dict[str, Any]:
        """
        pending / inactive → active：
          可选的授权步骤（比如 OAuth code 换 token）→ 探活 → activate() → 持久化。
        任一步失败状态不变（拿到的新 token 仍然保存），返回 ok=False。
        """
        conn_id = getattr(connection, "id", None)
        try:
            connector = self.get_connector(connection.platform).initialize(connection)
        except MarketplaceError as e:
            logger.warning("marketplace.activate.unresolved connection=%s platform=%s error=%s",
                           conn_id, getattr(connection, "platform", None), e)
            return {"connection_id": conn_id, "ok": False, "error": str(e), "status": connection.status}

        with self.locks.hold(conn_id) as acquired:
            if not acquired:
                logger.warning("marketplace.activate.busy connection=%s", conn_id)
                return {"connection_id": conn_id, "ok": False, "error": _busy_message(conn_id),
                        "status": connection.status}

            ok = authorize(connector) if authorize is not None else True
            if ok:
                ok = connector.test_connection()
            if ok:
                connection.activate()
            if ok or connector.tokens_refreshed:
                self.store.save_connection(connection)

        error = None if ok else (connector.get_last_error() or "connection check failed")
        logger.info("marketplace.activate connection=%s platform=%s ok=%s status=%s error=%s",
                    conn_id, connection.platform, ok, connection.status, error)
        return {"connection_id": conn_id, "ok": ok, "error": error, "status": connection.status}


    # ---------- Sync ----------
    def sync_products(self, connection, limit: Optional[int] = None, cursor: Optional[str] = None) -> SyncReport:
        limit = limit or settings.MARKETPLACE_DEFAULT_PAGE_SIZE
        return self._run_sync(
            connection,
            kind="products",
            fetch=lambda c: c.get_products(limit=limit, cursor=cursor),
            upsert=lambda item: self.store.upsert_listing(connection, item.external_id, listing_values(item)),
            describe=lambda item: {"title": item.title},
        )

    def sync_orders(self, connection, since=None, limit: Optional[int] = None,
                    cursor: Optional[str] = None) -> SyncReport:
        limit = limit or settings.MARKETPLACE_DEFAULT_PAGE_SIZE
        return self._run_sync(
            connection,
            kind="orders",
            fetch=lambda c: c.get_orders(since=since, limit=limit, cursor=cursor),
            upsert=lambda item: self.store.upsert_order(connection, item.external_id, order_values(item)),
            describe=lambda item: {"order_number": item.order_number},
        )

    def _run_sync(self, connection, *, kind: str, fetch: Callable[[BasePlatformConnector], Page],
                  upsert: Callable[[Any], None], describe: Callable[[Any], Dict[str, Any]]) -> SyncReport:
        conn_id = getattr(connection, "id", None)
        try:
            connector = self.get_connector_for_marketplace(connection)
        except MarketplaceError as e:
            logger.warning("marketplace.sync.rejected kind=%s connection=%s reason=%s", kind, conn_id, e)
            return SyncReport.rejected(str(e))

        with self.locks.hold(conn_id) as acquired:
            if not acquired:
                logger.warning("marketplace.sync.busy kind=%s connection=%s", kind, conn_id)
                return SyncReport.rejected(_busy_message(conn_id))

            if not connector.refresh_tokens_if_needed():
                self._persist_refreshed_tokens(connector, connection)
                return SyncReport.rejected(connector.get_last_error() or "token refresh failed")

            try:
                page = fetch(connector)
            except Exception as e:
                logger.exception("marketplace.sync.fetch_crashed kind=%s connection=%s", kind, conn_id)
                page = Page.failed(f"unexpected error while fetching {kind}: {e}")
            # 401 重放时也可能刷新过 token
            self._persist_refreshed_tokens(connector, connection)
            if not page.ok:
                logger.warning("marketplace.sync.page_failed kind=%s connection=%s error=%s", kind, conn_id, page.error)
                return SyncReport.rejected(page.error or "page fetch failed")

            report = SyncReport(next_cursor=page.next_cursor)
            for item in page:
                ref = {"external_id": getattr(item, "external_id", None), **describe(item)}
                try:
                    upsert(item)
                except Exception as e:
                    report.errors += 1
                    report.results.append({**ref, "status": "error", "error": str(e)})
                    logger.warning("marketplace.sync.record_failed kind=%s connection=%s external_id=%s error=%s",
                                   kind, conn_id, ref["external_id"], e)
                    continue
                report.synced += 1
                report.results.append({**ref, "status": "synced"})

            # 转换阶段就被拒的原始记录（null / 结构不对）
            for bad in page.rejected:
                report.errors += 1
                report.results.append({"external_id": bad.get("external_id"), "status": "error", "error": bad.get("error")})

            connection.record_sync()
            try:
                self.store.save_connection(connection)
            except Exception as e:
                logger.exception("marketplace.sync.save_connection_failed connection=%s", conn_id)
                report.error = f"failed to persist connection: {e}"

        logger.info("marketplace.sync.done kind=%s connection=%s platform=%s synced=%s errors=%s next=%s",
                    kind, conn_id, connection.platform, report.synced, report.errors, bool(report.next_cursor))
        return report

    def _persist_refreshed_tokens(self, connector: BasePlatformConnector, connection) -> None:
        if not connector.tokens_refreshed:
            return
        connector.tokens_refreshed = False
        try:
            self.store.save_connection(connection)
        except Exception:
            logger.exception("marketplace.token.persist_failed connection=%s", getattr(connection, "id", None))


def _busy_message(conn_id) -> str:
    return f"another sync or token refresh is running for connection {conn_id}"
