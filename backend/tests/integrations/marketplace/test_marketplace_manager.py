from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from marketplace_hub.db.model.marketplace import PlatformListing, PlatformOrderRecord
from marketplace_hub.integrations.marketplace import (
    AmazonConnector, ConnectionInactiveError, ConnectionLocks, Platform, PlatformConnectorManager,
    ShopifyConnector, UnsupportedPlatformError,
)
from marketplace_hub.repository.marketplace_repo import SqlMarketplaceStore
from marketplace_hub.utils.clock import now_utc


SHOP = "demo.myshopify.com"


class MemoryStore:
    """Manager 的持久化端口：内存版，可指定某些 external_id 写入失败。"""

    def __init__(self, fail_ids=()):
        self.listings = {}
        self.orders = {}
        self.saved = 0
        self.fail_ids = set(fail_ids)

    def upsert_listing(self, connection, external_id, values):
        if external_id in self.fail_ids:
            raise RuntimeError("db write failed")
        self.listings[(connection.id, external_id)] = values

    def upsert_order(self, connection, external_id, values):
        if external_id in self.fail_ids:
            raise RuntimeError("db write failed")
        self.orders[(connection.id, external_id)] = values

    def save_connection(self, connection):
        self.saved += 1


def _product(pid, price="19.99"):
    variant = {"id": pid * 10, "sku": f"SKU-{pid}", "inventory_quantity": 4}
    if price is not None:
        variant["price"] = price
    return {"id": pid, "title": f"Product {pid}", "variants": [variant]}


@pytest.fixture()
def shop_conn(make_connection):
    return make_connection("shopify", shop_domain=SHOP, access_token="shpat_test")


@pytest.fixture()
def built():
    return []


@pytest.fixture()
def manager_for(fake_http, built):
    """manager_for(store) → 用 fake_http 的 manager；built 里能拿到本次创建的 connector。"""

    def _shopify(session=None):
        connector = ShopifyConnector(session=session, sleep=lambda s: None)
        built.append(connector)
        return connector

    def _make(store, **kwargs):
        kwargs.setdefault("locks", ConnectionLocks(wait_sec=0))
        kwargs.setdefault("registry", {Platform.SHOPIFY: _shopify})
        return PlatformConnectorManager(store, session=fake_http, **kwargs)

    return _make


# ---------- registry ----------
def test_default_registry_covers_seven_platforms():
    manager = PlatformConnectorManager(MemoryStore(), locks=ConnectionLocks(wait_sec=0))
    assert manager.get_available_platforms() == [
        Platform.SHOPIFY, Platform.EBAY, Platform.AMAZON, Platform.ETSY, Platform.WALMART,
        Platform.WOOCOMMERCE, Platform.BIGCOMMERCE,
    ]
    assert manager.has_connector("woocommerce")
    assert not manager.has_connector("paperform")
    assert not manager.has_connector("myspace")
    assert isinstance(manager.get_connector("SHOPIFY"), ShopifyConnector)

    with pytest.raises(UnsupportedPlatformError):
        manager.get_connector(Platform.PAPERFORM)


def test_register_connector_extends_registry():
    manager = PlatformConnectorManager(MemoryStore(), locks=ConnectionLocks(wait_sec=0))
    manager.register_connector("paperform", ShopifyConnector)
    assert manager.has_connector(Platform.PAPERFORM)

    # 注册只影响这个 manager 实例
    other = PlatformConnectorManager(MemoryStore(), locks=ConnectionLocks(wait_sec=0))
    assert not other.has_connector(Platform.PAPERFORM)


def test_only_active_connections_resolve(make_connection):
    manager = PlatformConnectorManager(MemoryStore(), locks=ConnectionLocks(wait_sec=0))
    conn = make_connection("shopify", shop_domain=SHOP, access_token="t", status="inactive")

    with pytest.raises(ConnectionInactiveError):
        manager.get_connector_for_marketplace(conn)

    conn.status = "active"
    connector = manager.get_connector_for_marketplace(conn)
    assert connector.initialized and connector.connection is conn


# ---------- sync ----------
def test_sync_products_isolates_bad_records(manager_for, built, shop_conn, fake_http, monkeypatch):
    fake_http.add("GET", "/products.json", {"products": [_product(1), _product(2, price=None), _product(3)]},
                  headers={"X-Shopify-Shop-Api-Call-Limit": "10/100"})
    store = MemoryStore()
    recorded = []
    original = shop_conn.record_sync
    monkeypatch.setattr(shop_conn, "record_sync", lambda at=None: (recorded.append(at), original(at)))

    report = manager_for(store).sync_products(shop_conn, limit=50)

    assert report.ok
    assert (report.synced, report.errors) == (2, 1)
    failed = [r for r in report.results if r["status"] == "error"]
    assert failed[0]["external_id"] == "2"
    assert "no price" in failed[0]["error"]
    assert set(store.listings) == {(shop_conn.id, "1"), (shop_conn.id, "3")}
    assert store.listings[(shop_conn.id, "1")]["platform_price"] == Decimal("19.99")

    assert len(recorded) == 1
    assert shop_conn.last_sync_at is not None
    assert store.saved == 1

    rate = built[0].get_rate_limit_status()
    assert (rate.remaining, rate.limit) == (90, 100)


def test_sync_store_failure_names_the_record(manager_for, shop_conn, fake_http):
    fake_http.add("GET", "/products.json", {"products": [_product(1), _product(2)]})
    store = MemoryStore(fail_ids={"1"})

    report = manager_for(store).sync_products(shop_conn)

    assert (report.synced, report.errors) == (1, 1)
    assert report.results[0] == {"external_id": "1", "title": "Product 1", "status": "error", "error": "db write failed"}
    assert report.results[1] == {"external_id": "2", "title": "Product 2", "status": "synced"}
    assert shop_conn.last_sync_at is not None


def test_sync_orders_passes_cursor_and_counts_missing_ids(manager_for, shop_conn, fake_http):
    fake_http.add("GET", "/orders.json", {"orders": [{"id": 5001, "total_price": "10.00"}, {"total_price": "1"}]},
                  headers={"Link": f'<https://{SHOP}/admin/api/2024-01/orders.json?page_info=p2>; rel="next"'})
    store = MemoryStore()

    report = manager_for(store).sync_orders(shop_conn, limit=2, cursor="p1")

    assert (report.synced, report.errors) == (1, 1)
    assert report.next_cursor == "p2"
    assert fake_http.last()["params"] == {"limit": 2, "page_info": "p1"}
    assert store.orders[(shop_conn.id, "5001")]["total"] == Decimal("10.00")


def test_sync_counts_null_record_and_keeps_the_rest(manager_for, shop_conn, fake_http):
    fake_http.add("GET", "/products.json", {"products": [_product(1), None, _product(3)]})
    store = MemoryStore()

    report = manager_for(store).sync_products(shop_conn)

    assert report.ok
    assert (report.synced, report.errors) == (2, 1)
    assert set(store.listings) == {(shop_conn.id, "1"), (shop_conn.id, "3")}
    rejected = [r for r in report.results if r["status"] == "error"]
    assert rejected[0]["external_id"] is None
    assert "not an object" in rejected[0]["error"]
    assert shop_conn.last_sync_at is not None and store.saved == 1


def test_sync_orders_results_carry_order_number(manager_for, shop_conn, fake_http):
    fake_http.add("GET", "/orders.json", {"orders": [{"id": 5001, "name": "#1001", "total_price": "10.00"}]})

    report = manager_for(MemoryStore()).sync_orders(shop_conn)

    assert report.results == [{"external_id": "5001", "order_number": "#1001", "status": "synced"}]


def test_inactive_connection_is_rejected_without_http(manager_for, make_connection, fake_http):
    conn = make_connection("shopify", shop_domain=SHOP, access_token="t", status="inactive")
    store = MemoryStore()

    report = manager_for(store).sync_products(conn)

    assert not report.ok
    assert "only active connections" in report.error
    assert fake_http.calls == []
    assert conn.last_sync_at is None and store.saved == 0


def test_platform_without_connector_is_rejected(manager_for, make_connection):
    report = manager_for(MemoryStore()).sync_orders(make_connection("paperform"))
    assert not report.ok and "no connector registered" in report.error


def test_busy_connection_is_rejected(manager_for, shop_conn, fake_http):
    locks = ConnectionLocks(wait_sec=0)
    manager = manager_for(MemoryStore(), locks=locks)

    with locks.hold(shop_conn.id) as acquired:
        assert acquired
        report = manager.sync_products(shop_conn)

    assert not report.ok
    assert "another sync" in report.error
    assert fake_http.calls == []
    assert shop_conn.last_sync_at is None


def test_failed_page_is_rejected_and_not_recorded(manager_for, shop_conn, fake_http):
    fake_http.add("GET", "/products.json", {"errors": "Not Found"}, status=404)
    store = MemoryStore()

    report = manager_for(store).sync_products(shop_conn)

    assert not report.ok and report.error.startswith("HTTP 404")
    assert shop_conn.last_sync_at is None and store.saved == 0


# ---------- connection check ----------
def test_check_connection_reports_rate_limit(manager_for, shop_conn, fake_http):
    fake_http.add("GET", "/shop.json", {"shop": {"id": 1}}, headers={"X-Shopify-Shop-Api-Call-Limit": "5/40"})

    result = manager_for(MemoryStore()).check_connection(shop_conn)

    assert result["ok"] is True and result["error"] is None
    assert (result["rate_limit"]["remaining"], result["rate_limit"]["limit"]) == (35, 40)


def test_check_connection_never_raises(manager_for, make_connection):
    manager = manager_for(MemoryStore())
    inactive = make_connection("shopify", shop_domain=SHOP, status="inactive")
    assert manager.test_connection(inactive) is False

    result = manager.check_connection(make_connection("amazon"))
    assert result["ok"] is False and result["rate_limit"] is None


@pytest.fixture()
def amazon_conn(make_connection):
    return make_connection(
        "amazon", external_store_id="SELLER1", access_token="Atza|stale", refresh_token="Atzr|r1",
        token_expires_at=now_utc() + timedelta(hours=1),
        credentials={"client_id": "cid", "client_secret": "csecret"},
    )


@pytest.fixture()
def amazon_manager(fake_http):
    def _make(store, locks):
        registry = {Platform.AMAZON: lambda session=None: AmazonConnector(session=session, sleep=lambda s: None)}
        return PlatformConnectorManager(store, session=fake_http, locks=locks, registry=registry)
    return _make


def test_check_connection_waits_for_running_sync(amazon_manager, amazon_conn, fake_http):
    # 401 会触发 LWA 刷新；连接被占时一次请求都不能发
    fake_http.add("GET", "/sellers/v1/marketplaceParticipations", {"errors": []}, status=401, repeat=True)
    fake_http.add("POST", "/auth/o2/token", {"access_token": "Atza|new", "expires_in": 3600}, repeat=True)
    locks = ConnectionLocks(wait_sec=0)
    store = MemoryStore()

    with locks.hold(amazon_conn.id) as acquired:
        assert acquired
        result = amazon_manager(store, locks).check_connection(amazon_conn)

    assert result["ok"] is False
    assert "another sync or token refresh" in result["error"]
    assert fake_http.calls_to("/auth/o2/token") == []
    assert fake_http.calls == []
    assert amazon_conn.access_token == "Atza|stale" and store.saved == 0


def test_check_connection_persists_token_refreshed_on_401(amazon_manager, amazon_conn, fake_http):
    fake_http.add("GET", "/sellers/v1/marketplaceParticipations", {"errors": []}, status=401)
    fake_http.add("POST", "/auth/o2/token", {"access_token": "Atza|new", "expires_in": 3600})
    fake_http.add("GET", "/sellers/v1/marketplaceParticipations", {"payload": [{"marketplace": {"id": "X"}}]},
                  headers={"x-amzn-RateLimit-Limit": "0.1"})
    store = MemoryStore()

    result = amazon_manager(store, ConnectionLocks(wait_sec=0)).check_connection(amazon_conn)

    assert result["ok"] is True
    assert len(fake_http.calls_to("/auth/o2/token", "POST")) == 1
    assert amazon_conn.access_token == "Atza|new"
    assert store.saved == 1
    # SP-API 只公布速率，剩余额度未知
    assert result["rate_limit"]["remaining"] is None


# ---------- activation ----------
def test_activate_connection_goes_live_after_check(manager_for, make_connection, fake_http):
    conn = make_connection("shopify", shop_domain=SHOP, access_token="shpat_test", status="pending")
    fake_http.add("GET", "/shop.json", {"shop": {"id": 1}})
    store = MemoryStore()

    result = manager_for(store).activate_connection(conn)

    assert result == {"connection_id": conn.id, "ok": True, "error": None, "status": "active"}
    assert conn.is_active and store.saved == 1


def test_activate_connection_keeps_pending_when_authorize_fails(manager_for, make_connection, fake_http):
    conn = make_connection("shopify", shop_domain=SHOP, status="pending")
    store = MemoryStore()

    def _deny(connector):
        connector._error("code already used")
        return False

    result = manager_for(store).activate_connection(conn, authorize=_deny)

    assert result["ok"] is False and result["error"] == "code already used"
    assert conn.status == "pending" and store.saved == 0
    assert fake_http.calls == []


# ---------- SQL store ----------
def test_sql_store_upsert_is_idempotent(manager_for, db_session, make_connection, fake_http):
    conn = make_connection("shopify", db=db_session, shop_domain=SHOP, access_token="shpat_test")
    fake_http.add("GET", "/products.json", {"products": [_product(1), _product(2)]})
    fake_http.add("GET", "/products.json", {"products": [_product(1, price="25.00"), _product(2)]})
    manager = manager_for(SqlMarketplaceStore(db_session))

    assert manager.sync_products(conn).synced == 2
    assert manager.sync_products(conn).synced == 2

    count = db_session.execute(select(func.count()).select_from(PlatformListing)).scalar_one()
    assert count == 2
    row = db_session.execute(
        select(PlatformListing).where(PlatformListing.external_listing_id == "1")
    ).scalar_one()
    db_session.refresh(row)
    assert row.platform_price == Decimal("25.00")
    assert row.sku == "SKU-1"
    assert row.platform_data["price"] == "25.00"

    db_session.refresh(conn)
    assert conn.last_sync_at is not None


def test_sql_store_mirrors_orders(manager_for, db_session, make_connection, fake_http):
    conn = make_connection("shopify", db=db_session, shop_domain=SHOP, access_token="shpat_test")
    fake_http.add("GET", "/orders.json", {"orders": [{
        "id": 5001, "name": "#1001", "total_price": "12.00", "subtotal_price": "10.00", "total_tax": "2.00",
        "currency": "AUD", "created_at": "2024-01-01T00:00:00Z",
        "line_items": [{"id": 1, "sku": "SKU-1", "quantity": 2, "price": "5.00"}],
    }]})

    report = manager_for(SqlMarketplaceStore(db_session)).sync_orders(conn)

    assert report.synced == 1
    row = db_session.execute(select(PlatformOrderRecord)).scalar_one()
    assert row.store_marketplace_id == conn.id
    assert row.external_order_id == "5001"
    assert row.total == Decimal("12.00")
    assert row.currency == "AUD"
    assert row.line_items[0]["price"] == "5.00"
